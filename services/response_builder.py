"""Response headers shared by every proxy response: CORS, cache policy and
the subset of upstream headers that is forwarded to the client."""
import urllib.parse

ALLOWED_METHODS = "GET, OPTIONS"
ALLOWED_HEADERS = ", ".join([
    'Range', 'Content-Type', 'Accept', 'Accept-Encoding', 'Accept-Language',
    'If-Range', 'If-None-Match', 'If-Modified-Since', 'Cache-Control',
])
EXPOSED_HEADERS = ", ".join([
    'Content-Length', 'Content-Range', 'Content-Type', 'Accept-Ranges',
    'Cache-Control', 'ETag', 'Last-Modified',
])
CORS_MAX_AGE = "86400"

# Content kinds
PLAYLIST = "playlist"
SEGMENT = "segment"
OTHER = "other"

SEGMENT_SUFFIXES = ('.ts', '.m4s', '.mp4')
PLAYLIST_SUFFIXES = ('.m3u8', '.mpd')

DEFAULT_CONTENT_TYPES = {
    '.m3u8': 'application/vnd.apple.mpegurl',
    '.mpd': 'application/dash+xml',
    '.ts': 'video/mp2t',
    '.m4s': 'video/iso.segment',
    '.mp4': 'video/mp4',
}
FALLBACK_CONTENT_TYPE = 'application/octet-stream'

SEGMENT_CACHE_CONTROL = 'public, max-age=31536000, immutable'
PLAYLIST_CACHE_CONTROL = 'no-cache, no-store, must-revalidate'
DEFAULT_CACHE_CONTROL = 'public, max-age=3600'

# Upstream headers copied verbatim when present
FORWARDED_HEADERS = ('Content-Range', 'Accept-Ranges', 'ETag', 'Last-Modified')


def cors_headers() -> dict:
    """Headers attached to every response, errors and preflights included."""
    return {
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Methods': ALLOWED_METHODS,
        'Access-Control-Allow-Headers': ALLOWED_HEADERS,
        'Access-Control-Expose-Headers': EXPOSED_HEADERS,
        'Access-Control-Max-Age': CORS_MAX_AGE,
    }


def url_suffix(url: str) -> str:
    """Lower-cased extension of the URL path, query string ignored."""
    path = urllib.parse.urlparse(url).path.lower()
    last = path.rsplit('/', 1)[-1]
    if '.' not in last:
        return ''
    return '.' + last.rsplit('.', 1)[-1]


def content_kind(url: str, content_type: str = '') -> str:
    suffix = url_suffix(url)
    if suffix in SEGMENT_SUFFIXES:
        return SEGMENT
    if suffix in PLAYLIST_SUFFIXES:
        return PLAYLIST
    content_type = (content_type or '').lower()
    if 'mpegurl' in content_type or 'dash+xml' in content_type:
        return PLAYLIST
    return OTHER


def default_content_type(url: str, kind: str) -> str:
    suffix = url_suffix(url)
    if suffix in DEFAULT_CONTENT_TYPES:
        return DEFAULT_CONTENT_TYPES[suffix]
    if kind == PLAYLIST:
        return DEFAULT_CONTENT_TYPES['.m3u8']
    return FALLBACK_CONTENT_TYPE


def cache_headers(kind: str) -> dict:
    if kind == SEGMENT:
        return {'Cache-Control': SEGMENT_CACHE_CONTROL}
    if kind == PLAYLIST:
        return {
            'Cache-Control': PLAYLIST_CACHE_CONTROL,
            'Pragma': 'no-cache',
            'Expires': '0',
        }
    return {'Cache-Control': DEFAULT_CACHE_CONTROL}


def build_response_headers(upstream, rewritten: bool = False) -> dict:
    """Assembles the client-facing headers for a successful upstream fetch.

    ``rewritten`` means the body no longer matches the upstream bytes, so the
    upstream Content-Length must not be reused.
    """
    kind = PLAYLIST if rewritten else content_kind(upstream.request_url, upstream.content_type)

    headers = cors_headers()
    headers['Content-Type'] = upstream.content_type or default_content_type(upstream.request_url, kind)

    for name in FORWARDED_HEADERS:
        if rewritten and name == 'Content-Range':
            continue
        if name in upstream.headers:
            headers[name] = upstream.headers[name]
    headers.setdefault('Accept-Ranges', 'bytes')

    # aiohttp decodes gzip/deflate bodies, which invalidates the upstream length
    content_length = upstream.headers.get('Content-Length')
    if not rewritten and content_length == str(len(upstream.body)) and 'Content-Encoding' not in upstream.headers:
        headers['Content-Length'] = content_length

    headers.update(cache_headers(kind))
    return headers
