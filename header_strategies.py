"""
Header strategy catalog

Upstream video hosts disagree about what a "real" request looks like: some
only answer when Origin/Referer point at their embed page, others refuse any
request that carries them. Each upstream family therefore gets an ordered
ladder of header sets, from the richest browser emulation down to bare
requests. The fetcher walks the ladder until one is accepted.
"""
from urllib.parse import urlsplit

import proxy_config

# Placeholder replaced by the caller's User-Agent (or the default one)
CLIENT_USER_AGENT = object()

WILDCARD_ACCEPT = '*/*'

ACCEPT_BY_KIND = {
    'manifest': 'application/vnd.apple.mpegurl, application/x-mpegURL, */*',
    'segment': 'video/MP2T, */*',
    'container': 'video/mp4, */*',
    'subtitle': 'text/vtt, text/plain, */*',
}

SUFFIX_KINDS = [
    ('.m3u8', 'manifest'),
    ('.vtt', 'subtitle'),
    ('.srt', 'subtitle'),
    ('.ts', 'segment'),
    ('.m4s', 'segment'),
    ('.mp4', 'container'),
    ('.m4v', 'container'),
    ('.mkv', 'container'),
    ('.webm', 'container'),
]

# --- Header set descriptors ---

BROWSER_HEADERS = {
    'User-Agent': CLIENT_USER_AGENT,
    'Accept': WILDCARD_ACCEPT,
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate',
    'Sec-Fetch-Dest': 'empty',
    'Sec-Fetch-Mode': 'cors',
    'Sec-Fetch-Site': 'cross-site',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
}

CLEAN_HEADERS = {
    'User-Agent': CLIENT_USER_AGENT,
    'Accept': WILDCARD_ACCEPT,
    'Accept-Language': 'en-US,en;q=0.9',
}

MINIMAL_HEADERS = {
    'User-Agent': CLIENT_USER_AGENT,
    'Accept': WILDCARD_ACCEPT,
}


def _spoofed(base, origin):
    headers = dict(base)
    headers['Referer'] = origin + '/'
    headers['Origin'] = origin
    return headers


STRATEGY_TABLE = [
    {
        'family': 'shadowlands',
        'url_markers': ('shadowlandschronicles', 'cloudnestra', 'tmstr'),
        'ladder': [
            ('shadowlands-minimal', MINIMAL_HEADERS),
            ('shadowlands-vidsrc-origin', _spoofed(CLEAN_HEADERS, 'https://vidsrc.xyz')),
            ('shadowlands-cloudnestra-origin', _spoofed(BROWSER_HEADERS, 'https://cloudnestra.com')),
            ('bare', {}),
        ],
    },
    {
        'family': 'vidsrc',
        'sources': ('vidsrc', 'vidsrc.xyz'),
        'ladder': [
            ('vidsrc-clean', CLEAN_HEADERS),
            ('vidsrc-origin', _spoofed(CLEAN_HEADERS, 'https://vidsrc.xyz')),
            ('minimal', MINIMAL_HEADERS),
            ('bare', {}),
        ],
    },
    {
        'family': 'subtitle',
        'suffixes': ('.vtt', '.srt'),
        'ladder': [
            ('subtitle-clean', CLEAN_HEADERS),
            ('minimal', MINIMAL_HEADERS),
            ('bare', {}),
        ],
    },
    {
        'family': 'embed.su',
        'sources': ('embed.su',),
        'default': True,
        'ladder': [
            ('embed-su-browser', _spoofed(BROWSER_HEADERS, 'https://embed.su')),
            ('embed-su-referer', dict(CLEAN_HEADERS, Referer='https://embed.su/')),
            ('browser', BROWSER_HEADERS),
            ('minimal', MINIMAL_HEADERS),
            ('bare', {}),
        ],
    },
]


class HeaderStrategy:
    """A named header set used for exactly one outbound attempt"""

    def __init__(self, name, headers, family=None):
        self.name = name
        self.headers = headers
        self.family = family

    def __repr__(self):
        return f"HeaderStrategy({self.name!r}, {len(self.headers)} headers)"


def content_kind(url):
    """Infer manifest/segment/container/subtitle from the URL path suffix"""
    path = urlsplit(url).path.lower()
    for suffix, kind in SUFFIX_KINDS:
        if path.endswith(suffix):
            return kind
    # Some hosts append tokens after the extension (/index.m3u8/abc)
    for suffix, kind in SUFFIX_KINDS:
        if suffix + '/' in path:
            return kind
    return None


def select_family(url, source=None):
    """Pick the strategy table entry for a URL/source pair (first match wins)"""
    lowered = url.lower()
    label = (source or '').strip().lower()
    kind = content_kind(url)

    for entry in STRATEGY_TABLE:
        if label and label in entry.get('sources', ()):
            return entry
        if any(marker in lowered for marker in entry.get('url_markers', ())):
            return entry
        if kind == 'subtitle' and entry.get('suffixes'):
            return entry

    for entry in STRATEGY_TABLE:
        if entry.get('default'):
            return entry
    return STRATEGY_TABLE[-1]


def strategies(url, source=None, user_agent=None, range_header=None):
    """
    Build the ordered list of header strategies for one proxied request.

    A wildcard Accept is narrowed to the content type implied by the URL
    suffix, and an inbound Range header is carried on every strategy.
    """
    entry = select_family(url, source)
    accept = ACCEPT_BY_KIND.get(content_kind(url))
    user_agent = user_agent or proxy_config.DEFAULT_USER_AGENT

    result = []
    for name, descriptor in entry['ladder']:
        headers = {}
        for key, value in descriptor.items():
            if value is CLIENT_USER_AGENT:
                value = user_agent
            elif key == 'Accept' and value == WILDCARD_ACCEPT and accept:
                value = accept
            headers[key] = value
        if range_header:
            headers['Range'] = range_header
        result.append(HeaderStrategy(name, headers, entry['family']))
    return result
