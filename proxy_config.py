"""
Stream proxy configuration
Every value can be overridden with a STREAM_PROXY_<NAME> environment variable.
"""
import os


def _env(name, default, cast=str):
    value = os.environ.get(f"STREAM_PROXY_{name}")
    if value is None or value == '':
        return default
    if cast is bool:
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return cast(value)


# --- Server ---
HOST = _env('HOST', '0.0.0.0')
PORT = _env('PORT', 5000, int)
RELAY_PATH = _env('RELAY_PATH', '/stream-proxy')
LEGACY_RELAY_PATH = '/api/stream-proxy'

# --- Logging ---
LOG_LEVEL = _env('LOG_LEVEL', 'INFO')
LOG_FILE = _env('LOG_FILE', '')

# --- Upstream fetching ---
DEFAULT_TIMEOUT = _env('TIMEOUT', 30.0, float)
HEAD_TIMEOUT = _env('HEAD_TIMEOUT', 10.0, float)
CHUNK_SIZE = 8192
DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

# When false the upstream body is read to completion after the client has
# gone away, holding a worker thread for the rest of the transfer (a whole
# movie for an aborted open-ended range request).
CANCEL_UPSTREAM_ON_DISCONNECT = _env('CANCEL_UPSTREAM_ON_DISCONNECT', True, bool)

# --- Rate limiting (seconds) ---
RATE_LIMIT_CONFIG = {
    'window_seconds': _env('RATE_WINDOW', 60.0, float),
    'max_requests': _env('RATE_MAX_REQUESTS', 100, int),
    'block_seconds': _env('RATE_BLOCK', 300.0, float),
    'sweep_interval': _env('RATE_SWEEP_INTERVAL', 300.0, float),
}

# --- Retry / backoff (seconds) ---
RETRY_CONFIG = {
    'max_retries': _env('MAX_RETRIES', 3, int),
    'base_delay': _env('BASE_DELAY', 1.0, float),
    'max_delay': _env('MAX_DELAY', 10.0, float),
    'backoff_factor': _env('BACKOFF_FACTOR', 2.0, float),
    # fraction of the computed delay added at random; 0 disables jitter
    'jitter': _env('BACKOFF_JITTER', 0.0, float),
}

# --- Request validation ---
MIN_USER_AGENT_LENGTH = _env('MIN_USER_AGENT_LENGTH', 10, int)
BOT_PATTERNS = [
    r'bot',
    r'crawler',
    r'spider',
    r'scraper',
    r'curl/',
    r'wget',
    r'python-requests',
    r'python-urllib',
]
