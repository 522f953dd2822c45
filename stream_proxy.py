#!/usr/bin/env python3
"""
STREAM PROXY - HLS / video relay for browser players
Fetches playlists, segments and subtitles on behalf of the browser, falls
back through header strategies when upstream blocks us, and rewrites
playlists so every nested resource comes back through this relay.
"""
import re
from urllib.parse import urlsplit

from flask import Flask, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

import proxy_config
from header_strategies import strategies
from manifest_rewriter import RewriteContext
from proxy_errors import ProxyError, RateLimitError, ValidationError
from proxy_logging import configure_logging, new_request_id, request_logger, short
from rate_limiter import RateLimiter
from resilient_fetch import ResilientFetcher
from response_composer import compose, finalize, preflight_response

BOT_REGEX = re.compile('|'.join(proxy_config.BOT_PATTERNS), re.IGNORECASE)

CLIENT_IP_HEADERS = ['CF-Connecting-IP', 'X-Real-IP', 'X-Forwarded-For']


class ProxyRequest:
    def __init__(self, url, source=None, range_header=None, client_id='unknown',
                 user_agent=None):
        self.url = url
        self.source = source
        self.range_header = range_header
        self.client_id = client_id
        self.user_agent = user_agent

    def __repr__(self):
        return f"ProxyRequest({short(self.url, 60)!r}, source={self.source!r})"


# =============================================================================
# REQUEST GATE
# =============================================================================

def client_identity(headers):
    """Resolve the client key from the trusted proxy headers, in priority order"""
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        if name == 'X-Forwarded-For':
            value = value.split(',')[0]
        value = value.strip()
        if value:
            return value
    return 'unknown'


def validate_url(url):
    if not url:
        raise ValidationError('Stream URL parameter is required')
    try:
        parts = urlsplit(url)
    except ValueError:
        raise ValidationError('Invalid stream URL format')
    if parts.scheme not in ('http', 'https') or not parts.netloc:
        raise ValidationError('Invalid stream URL format')
    return url


def validate_user_agent(user_agent):
    if not user_agent or len(user_agent) < proxy_config.MIN_USER_AGENT_LENGTH:
        raise ValidationError('Invalid user agent', details='automated requests not allowed')
    if BOT_REGEX.search(user_agent):
        raise ValidationError('automated requests not allowed')
    return user_agent


def parse_request(req):
    """Validate the inbound relay request and turn it into a ProxyRequest"""
    url = validate_url(req.args.get('url'))
    user_agent = validate_user_agent(req.headers.get('User-Agent'))
    return ProxyRequest(
        url=url,
        source=req.args.get('source') or None,
        range_header=req.headers.get('Range'),
        client_id=client_identity(req.headers),
        user_agent=user_agent,
    )


def proxy_origin(req):
    """Our own public origin, honouring X-Forwarded headers from a front proxy"""
    if req.headers.get('X-Forwarded-Host'):
        forwarded_proto = req.headers.get('X-Forwarded-Proto', 'https')
        forwarded_host = req.headers.get('X-Forwarded-Host')
        return f"{forwarded_proto}://{forwarded_host}"
    return req.host_url.rstrip('/')


def check_rate_limit(limiter, client_id, log):
    decision = limiter.check(client_id)
    g.rate_limit = decision
    if not decision.allowed:
        log.warning(f"Rate limit exceeded for {client_id}, retry after {decision.retry_after}s")
        raise RateLimitError(decision.retry_after, decision)
    return decision


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(limiter=None, fetcher=None):
    app = Flask(__name__)
    app.extensions['stream_proxy'] = {
        'limiter': limiter or RateLimiter(),
        'fetcher': fetcher or ResilientFetcher(),
    }

    @app.before_request
    def assign_request_id():
        g.request_id = new_request_id()
        g.log = request_logger(g.request_id)
        g.rate_limit = None

    @app.errorhandler(ProxyError)
    def handle_proxy_error(error):
        log = getattr(g, 'log', None) or request_logger('-')
        log.error(f"{type(error).__name__} ({error.status_code}): {error.message}"
                  + (f" - {error.details}" if error.details else ''))
        response = jsonify(error.to_dict(getattr(g, 'request_id', None)))
        response.status_code = error.status_code
        return finalize(response, getattr(g, 'rate_limit', None), getattr(g, 'request_id', None))

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        # let Flask render its own HTTP errors (404, 405, ...)
        if isinstance(error, HTTPException):
            return error
        log = getattr(g, 'log', None) or request_logger('-')
        log.exception(f"Stream proxy failed: {error}")
        body = {
            'success': False,
            'error': 'Stream proxy failed',
            'details': str(error),
            'requestId': getattr(g, 'request_id', None),
        }
        response = jsonify(body)
        response.status_code = 500
        return finalize(response, getattr(g, 'rate_limit', None), getattr(g, 'request_id', None))

    @app.route('/')
    def index():
        """Usage page"""
        path = proxy_config.RELAY_PATH
        html = f'''<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"><title>Stream Proxy</title></head>
<body style="font-family:system-ui,-apple-system,sans-serif;padding:30px;">
    <h1>Stream Proxy</h1>
    <p>Relays HLS playlists, segments and subtitles with CORS enabled.</p>
    <pre>GET {path}?url=ENCODED_URL&amp;source=embed.su|vidsrc</pre>
    <p>Supports GET, HEAD, OPTIONS and Range requests.</p>
</body>
</html>
'''
        return Response(html, mimetype='text/html')

    @app.route('/health')
    def health():
        limiter = current_app.extensions['stream_proxy']['limiter']
        return jsonify({'status': 'ok', 'trackedClients': len(limiter)})

    def relay():
        log = g.log
        services = current_app.extensions['stream_proxy']
        limiter = services['limiter']
        fetcher = services['fetcher']

        if request.method == 'OPTIONS':
            client_id = client_identity(request.headers)
            decision = check_rate_limit(limiter, client_id, log)
            log.info(f"CORS preflight from {request.headers.get('Origin', '-')} ({client_id})")
            return preflight_response(decision, g.request_id)

        proxy_request = parse_request(request)
        decision = check_rate_limit(limiter, proxy_request.client_id, log)
        log.info(f"{request.method} {short(proxy_request.url)} source={proxy_request.source or '-'} "
                 f"client={proxy_request.client_id} range={proxy_request.range_header or '-'}")

        ladder = strategies(proxy_request.url, proxy_request.source,
                            proxy_request.user_agent, proxy_request.range_header)
        timeout = proxy_config.HEAD_TIMEOUT if request.method == 'HEAD' else None
        result = fetcher.fetch(proxy_request.url, ladder, method=request.method,
                               timeout=timeout, log=log)

        context = RewriteContext(
            base_url=proxy_request.url,
            proxy_origin=proxy_origin(request),
            relay_path=proxy_config.RELAY_PATH,
            source=proxy_request.source,
        )
        return compose(result, context, method=request.method, decision=decision,
                       request_id=g.request_id, log=log)

    for path in {proxy_config.RELAY_PATH, proxy_config.LEGACY_RELAY_PATH}:
        app.add_url_rule(path, endpoint=f"relay{path.replace('/', '_')}", view_func=relay,
                         methods=['GET', 'HEAD', 'OPTIONS'])

    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    configure_logging()
    print("\n" + "="*70)
    print("STREAM PROXY - HLS / video relay")
    print("="*70)
    print(f"\n  Relay endpoint   → {proxy_config.RELAY_PATH}?url=...&source=...")
    print(f"  Rate limit       → {proxy_config.RATE_LIMIT_CONFIG['max_requests']} requests / "
          f"{proxy_config.RATE_LIMIT_CONFIG['window_seconds']:.0f}s per client")
    print(f"  Retries          → {proxy_config.RETRY_CONFIG['max_retries']} per header strategy")
    print("="*70 + "\n")
    print(f"Starting server on http://{proxy_config.HOST}:{proxy_config.PORT}\n")

    app = create_app()
    app.run(host=proxy_config.HOST, port=proxy_config.PORT, debug=False, threaded=True)
