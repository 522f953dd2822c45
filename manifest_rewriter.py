"""
M3U8 rewriting

Every URI line of a playlist is resolved against the playlist's own URL and
wrapped into a relay URL, so that variant playlists and segments are fetched
through the proxy as well. Directives, comments and blank lines are left
untouched.
"""
from urllib.parse import quote, urlsplit

from proxy_errors import ManifestRewriteError
from proxy_logging import logger as default_logger, short


class RewriteContext:
    """Where the manifest came from and where the relay lives"""

    def __init__(self, base_url, proxy_origin, relay_path='/stream-proxy', source=None):
        self.base_url = base_url
        self.proxy_origin = proxy_origin.rstrip('/')
        self.relay_path = relay_path
        self.source = source


def resolve_reference(reference, base_url):
    """Resolve one playlist line to an absolute URL"""
    if reference.startswith('http://') or reference.startswith('https://'):
        return reference

    if reference.startswith('/'):
        try:
            parts = urlsplit(base_url)
        except ValueError as e:
            raise ManifestRewriteError(reference, e)
        if not parts.scheme or not parts.netloc:
            raise ManifestRewriteError(reference, f'base URL {base_url!r} is not absolute')
        return f"{parts.scheme}://{parts.netloc}{reference}"

    return base_url[:base_url.rfind('/') + 1] + reference


def proxy_url(target, context):
    """Wrap an absolute target URL into a relay URL"""
    url = f"{context.proxy_origin}{context.relay_path}?url={quote(target, safe='')}"
    if context.source:
        url += f"&source={quote(context.source, safe='')}"
    return url


def rewrite_manifest(text, context, log=None):
    log = log or default_logger
    lines = text.split('\n')
    output = []
    references = 0
    skipped = 0

    for number, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line or line.startswith('#'):
            output.append(raw)
            continue

        references += 1
        try:
            target = resolve_reference(line, context.base_url)
            # reject targets that would not parse as URLs on the next hop
            urlsplit(target)
        except (ManifestRewriteError, ValueError) as e:
            skipped += 1
            log.warning(f"Keeping manifest line {number} unmodified: {e}")
            output.append(raw)
            continue

        output.append(proxy_url(target, context))

    log.info(f"Rewrote {references - skipped}/{references} manifest references "
             f"from {short(context.base_url)} ({skipped} kept as-is)")
    return '\n'.join(output)
