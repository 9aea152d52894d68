import logging
import re
import urllib.parse
from urllib.parse import urljoin

from services.request_validator import is_absolute_url

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/proxy"

# RFC 3986 scheme prefix: anything matching is already absolute
SCHEME_RE = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*:')
URI_ATTRIBUTE_RE = re.compile(r'URI="([^"]*)"')


def is_playlist(content_type: str, url: str) -> bool:
    """HLS playlists are rewritten; DASH manifests are not."""
    if 'mpegurl' in (content_type or '').lower():
        return True
    return urllib.parse.urlparse(url).path.lower().endswith('.m3u8')


def manifest_base_path(manifest_url: str) -> str:
    """Directory of the manifest: its URL truncated after the final '/' of the path."""
    parts = urllib.parse.urlsplit(manifest_url)
    path = parts.path[:parts.path.rfind('/') + 1] or '/'
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, path, '', ''))


def resolve_reference(reference: str, base_path: str) -> str:
    """Absolute URL for a playlist reference.

    Raises ValueError when the result is not a fetchable http(s) URL.
    """
    if not reference:
        raise ValueError("Empty reference")
    absolute = reference if SCHEME_RE.match(reference) else urljoin(base_path, reference)
    if not is_absolute_url(absolute):
        raise ValueError(f"Cannot proxy reference: {reference}")
    return absolute


def build_proxy_url(proxy_base: str, target_url: str, referer: str) -> str:
    encoded_url = urllib.parse.quote(target_url, safe='')
    encoded_referer = urllib.parse.quote(referer, safe='')
    return f"{proxy_base}{PROXY_PATH}?url={encoded_url}&referer={encoded_referer}"


def resolve_proxy_base(request, config) -> str:
    """Externally visible scheme://host of this proxy for the current request.

    Not cached: one deployment can be reached through several hostnames.
    """
    if config.base_url_strategy == "auto" and config.proxy_base_url:
        return config.proxy_base_url

    # Forwarded headers may hold a comma-separated chain; the first hop is the client-facing one
    scheme = request.headers.get('X-Forwarded-Proto', '').split(',')[0].strip() or request.scheme
    host = request.headers.get('X-Forwarded-Host', '').split(',')[0].strip() or request.host
    return f"{scheme}://{host}"


def decode_manifest(body: bytes):
    """Playlist text, or None when the body is not valid UTF-8."""
    try:
        return body.decode('utf-8-sig')
    except UnicodeDecodeError:
        return None


class PlaylistLine:
    BLANK = "blank"
    DIRECTIVE = "directive"
    DIRECTIVE_WITH_URI = "directive_uri"
    MEDIA = "media"

    def __init__(self, raw: str):
        self.raw = raw
        self.text = raw.strip()
        if not self.text:
            self.kind = self.BLANK
        elif self.text.startswith('#'):
            self.kind = self.DIRECTIVE_WITH_URI if URI_ATTRIBUTE_RE.search(self.text) else self.DIRECTIVE
        else:
            self.kind = self.MEDIA


class ManifestRewriter:
    """Rewrites HLS playlists so every reference goes back through the proxy."""

    @staticmethod
    def rewrite_line(line: PlaylistLine, base_path: str, proxy_base: str, referer: str) -> str:
        if line.kind == PlaylistLine.MEDIA:
            try:
                absolute_url = resolve_reference(line.text, base_path)
            except ValueError as e:
                logger.debug(f"Leaving reference unchanged: {e}")
                return line.text
            return build_proxy_url(proxy_base, absolute_url, referer)

        if line.kind == PlaylistLine.DIRECTIVE_WITH_URI:
            def replace_uri(match):
                absolute_url = resolve_reference(match.group(1), base_path)
                return f'URI="{build_proxy_url(proxy_base, absolute_url, referer)}"'
            try:
                return URI_ATTRIBUTE_RE.sub(replace_uri, line.text)
            except ValueError as e:
                logger.debug(f"Leaving directive unchanged: {e}")
                return line.text

        return line.text

    @staticmethod
    def rewrite_manifest_urls(manifest_content: str, manifest_url: str, proxy_base: str, referer: str) -> str:
        """
        Rewrites every media reference and URI="..." attribute of an HLS playlist
        into a proxy link carrying the absolute upstream URL and the referer.
        Relative references are resolved against the directory of ``manifest_url``.
        """
        base_path = manifest_base_path(manifest_url)
        rewritten_lines = [
            ManifestRewriter.rewrite_line(PlaylistLine(raw), base_path, proxy_base, referer)
            for raw in manifest_content.split('\n')
        ]
        return '\n'.join(rewritten_lines)
