"""
Builds the relay's responses: content classification, CORS and rate-limit
headers, buffered transformation for manifests/subtitles and streaming
pass-through for everything else.
"""
import requests
from flask import Response, stream_with_context

import proxy_config
from manifest_rewriter import rewrite_manifest
from proxy_errors import NetworkError
from proxy_logging import logger as default_logger, short

MANIFEST = 'manifest'
SUBTITLE = 'subtitle'
BINARY = 'binary'

MANIFEST_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
VTT_CONTENT_TYPE = 'text/vtt; charset=utf-8'
PLAIN_CONTENT_TYPE = 'text/plain; charset=utf-8'

PASSTHROUGH_HEADERS = [
    'Content-Type',
    'Content-Length',
    'Content-Range',
    'Accept-Ranges',
    'Cache-Control',
    'Expires',
    'Last-Modified',
    'ETag',
]

# byte-range headers describe the upstream bytes, not a rewritten body
RANGE_HEADERS = ('Content-Length', 'Content-Range', 'Accept-Ranges')

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': ('Origin, X-Requested-With, Content-Type, Accept, '
                                     'Authorization, Cache-Control, Range'),
    'Access-Control-Expose-Headers': ('Content-Length, Content-Range, Accept-Ranges, '
                                      'X-RateLimit-Remaining, X-RateLimit-Reset, Retry-After'),
    'Cross-Origin-Resource-Policy': 'cross-origin',
}


def classify_content(url, content_type=''):
    """Return MANIFEST, SUBTITLE or BINARY for an upstream response"""
    lowered_url = url.lower()
    content_type = (content_type or '').lower()

    if '.m3u8' in lowered_url or 'mpegurl' in content_type:
        return MANIFEST
    if ('.vtt' in lowered_url or '.srt' in lowered_url
            or 'text/vtt' in content_type or 'text/plain' in content_type):
        return SUBTITLE
    return BINARY


def subtitle_content_type(url, content_type=''):
    if '.vtt' in url.lower() or 'text/vtt' in (content_type or '').lower():
        return VTT_CONTENT_TYPE
    return PLAIN_CONTENT_TYPE


def apply_cors(response):
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


def apply_rate_limit(response, decision):
    if decision is not None:
        for key, value in decision.headers().items():
            response.headers[key] = value
    return response


def finalize(response, decision=None, request_id=None):
    """CORS and rate-limit headers go on every response the relay emits"""
    apply_cors(response)
    apply_rate_limit(response, decision)
    if request_id:
        response.headers['X-Request-ID'] = request_id
    return response


def preflight_response(decision=None, request_id=None):
    response = Response(status=200)
    response.headers['Access-Control-Max-Age'] = '86400'
    return finalize(response, decision, request_id)


def _copy_headers(upstream, skip=()):
    headers = {}
    for name in PASSTHROUGH_HEADERS:
        if name in skip:
            continue
        value = upstream.headers.get(name)
        if value:
            headers[name] = value
    return headers


def _buffered(body_text, status, headers, content_type):
    if status == 206:
        status = 200
    body = body_text.encode('utf-8')
    headers['Content-Type'] = content_type
    headers['Content-Length'] = str(len(body))
    response = Response(body, status=status)
    # set after construction so Flask's defaults never win
    for key, value in headers.items():
        response.headers[key] = value
    return response


def _read_body(upstream):
    try:
        return upstream.content
    except requests.exceptions.RequestException as e:
        raise NetworkError.from_exception(e) from e
    finally:
        upstream.close()


def _stream(upstream, chunk_size, cancel_on_disconnect, log):
    """Relay the upstream body chunk by chunk without buffering it"""
    chunks = upstream.iter_content(chunk_size=chunk_size)
    try:
        for chunk in chunks:
            if chunk:
                yield chunk
    except GeneratorExit:
        if cancel_on_disconnect:
            log.info('Client disconnected, cancelling upstream transfer')
        else:
            log.info('Client disconnected, draining upstream transfer')
            for _ in chunks:
                pass
        raise
    finally:
        upstream.close()


def compose(result, context, method='GET', decision=None, request_id=None, log=None,
            chunk_size=None, cancel_on_disconnect=None):
    """
    Turn a successful FetchResult into the Flask response for the client.

    ``context`` is the RewriteContext of the request; its base_url is the
    proxied target.
    """
    log = log or default_logger
    chunk_size = chunk_size or proxy_config.CHUNK_SIZE
    if cancel_on_disconnect is None:
        cancel_on_disconnect = proxy_config.CANCEL_UPSTREAM_ON_DISCONNECT

    upstream = result.response
    url = context.base_url
    upstream_type = upstream.headers.get('Content-Type', '')
    kind = classify_content(url, upstream_type)
    status = upstream.status_code

    if method == 'HEAD':
        upstream.close()
        if kind == BINARY:
            headers = _copy_headers(upstream)
        else:
            # a GET would rewrite or re-encode the body
            headers = _copy_headers(upstream, skip=RANGE_HEADERS)
            if status == 206:
                status = 200
        if kind == MANIFEST:
            headers['Content-Type'] = MANIFEST_CONTENT_TYPE
        elif kind == SUBTITLE:
            headers['Content-Type'] = subtitle_content_type(url, upstream_type)
        response = Response(status=status)
        response.automatically_set_content_length = False
        for key, value in headers.items():
            response.headers[key] = value
        log.info(f"HEAD {short(url)} -> {status} ({kind})")
        return finalize(response, decision, request_id)

    if kind == MANIFEST:
        raw = _read_body(upstream)
        rewritten = rewrite_manifest(raw.decode('utf-8', errors='replace'), context, log)
        response = _buffered(rewritten, status, _copy_headers(upstream, skip=RANGE_HEADERS),
                             MANIFEST_CONTENT_TYPE)
        log.info(f"Manifest {short(url)} rewritten: {len(raw)}b -> "
                 f"{response.headers['Content-Length']}b")
        return finalize(response, decision, request_id)

    if kind == SUBTITLE:
        text = _read_body(upstream).decode('utf-8', errors='replace')
        response = _buffered(text, status, _copy_headers(upstream, skip=RANGE_HEADERS),
                             subtitle_content_type(url, upstream_type))
        log.info(f"Subtitle {short(url)} relayed as {response.headers['Content-Type']} "
                 f"({response.headers['Content-Length']}b)")
        return finalize(response, decision, request_id)

    headers = _copy_headers(upstream)
    if upstream.headers.get('Content-Encoding'):
        # iter_content decodes the body, so the upstream length no longer applies
        headers.pop('Content-Length', None)
    headers.setdefault('Content-Type', 'application/octet-stream')

    response = Response(
        stream_with_context(_stream(upstream, chunk_size, cancel_on_disconnect, log)),
        status=status,
        direct_passthrough=True,
    )
    for key, value in headers.items():
        response.headers[key] = value
    log.info(f"Streaming {short(url)} -> {status} {headers['Content-Type']}")
    return finalize(response, decision, request_id)
