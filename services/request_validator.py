import logging
import re
import urllib.parse

from services.errors import BadRequestError, MethodNotAllowed, MissingURLError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ('http', 'https')

# A "%" not followed by two hex digits
MALFORMED_ESCAPE_RE = re.compile(r'%(?![0-9A-Fa-f]{2})')

# Inbound headers relayed to the upstream fetch
FORWARDED_REQUEST_HEADERS = ('User-Agent', 'Accept', 'Accept-Language',
                             'If-Range', 'If-None-Match', 'If-Modified-Since')


class ProxyRequest:
    """One validated inbound proxy call."""

    def __init__(self, method, target_url, referer, range_header=None, headers=None):
        self.method = method
        self.target_url = target_url
        self.referer = referer
        self.range_header = range_header
        self.headers = headers or {}

    @property
    def is_preflight(self) -> bool:
        return self.method == 'OPTIONS'

    def __repr__(self):
        return f"<ProxyRequest {self.method} {self.target_url} referer={self.referer}>"


def is_absolute_url(value: str) -> bool:
    """True for a well-formed http(s) URL with a host."""
    try:
        parsed = urllib.parse.urlparse(value)
        # Accessing the port validates it
        parsed.port
    except ValueError:
        return False
    return parsed.scheme.lower() in ALLOWED_SCHEMES and bool(parsed.hostname)


def has_control_characters(value: str) -> bool:
    return any(ord(c) < 0x20 or c == '\x7f' for c in value)


def parse_query(raw_query: str) -> dict:
    """Percent-decodes the raw query string, failing on invalid escapes.

    The first occurrence of a parameter wins.
    """
    if MALFORMED_ESCAPE_RE.search(raw_query):
        raise BadRequestError("Unable to decode query parameters: malformed percent-encoding")
    try:
        pairs = urllib.parse.parse_qsl(raw_query, keep_blank_values=True, errors='strict')
    except (UnicodeDecodeError, ValueError) as e:
        raise BadRequestError(f"Unable to decode query parameters: {e}")
    params = {}
    for key, value in pairs:
        params.setdefault(key, value)
    return params


def validate_request(request, config) -> ProxyRequest:
    """Turns an aiohttp request into a ProxyRequest or raises a ProxyError.

    OPTIONS requests are returned without looking at the query, the caller
    answers them with CORS headers only.
    """
    method = request.method.upper()
    if method == 'OPTIONS':
        return ProxyRequest(method, None, None)
    if method != 'GET':
        raise MethodNotAllowed(f"Method {method} is not supported")

    params = parse_query(request.rel_url.raw_query_string)

    target_url = params.get('url', '').strip()
    if not target_url:
        raise MissingURLError()
    if has_control_characters(target_url):
        raise BadRequestError("Invalid URL: control characters are not allowed")
    if not is_absolute_url(target_url):
        raise BadRequestError(f"Invalid URL: {target_url}")

    referer = params.get('referer', '').strip()
    if referer:
        # Sent verbatim as the Referer and Origin headers
        if has_control_characters(referer):
            raise BadRequestError("Invalid referer: control characters are not allowed")
        if config.strict_referer and not is_absolute_url(referer):
            raise BadRequestError(f"Invalid referer: {referer}")
    else:
        referer = config.default_referer

    headers = {}
    for name in FORWARDED_REQUEST_HEADERS:
        if name in request.headers:
            headers[name] = request.headers[name]

    proxy_request = ProxyRequest(
        method,
        target_url,
        referer,
        range_header=request.headers.get('Range'),
        headers=headers,
    )
    logger.debug(f"Validated {proxy_request!r}")
    return proxy_request
