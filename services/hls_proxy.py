import logging

from aiohttp import web

from config import ProxyConfig
from services.errors import ProxyError, UpstreamError
from services.manifest_rewriter import (
    PROXY_PATH, ManifestRewriter, decode_manifest, is_playlist, resolve_proxy_base,
)
from services.request_validator import validate_request
from services.response_builder import build_response_headers, cors_headers
from services.upstream import UpstreamFetcher

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class HLSProxy:
    """CORS relay for HLS streams: playlists are rewritten, segments passed through"""

    def __init__(self, config: ProxyConfig = None):
        self.config = config or ProxyConfig.from_env()
        self.fetcher = UpstreamFetcher(self.config)

    async def handle_proxy_request(self, request):
        """Handles GET/OPTIONS on the proxy endpoint"""
        try:
            proxy_request = validate_request(request, self.config)
            if proxy_request.is_preflight:
                return self._preflight_response()

            upstream = await self.fetcher.fetch(proxy_request)

            # 4xx is the CDN's answer, not a proxy failure: pass the status through
            if upstream.is_client_error:
                logger.warning(f"⚠️ Upstream returned error {upstream.status} for {proxy_request.target_url}")
                return UpstreamError(upstream.status, message=upstream.reason, url=proxy_request.target_url).to_response()

            if upstream.status != 304 and is_playlist(upstream.content_type, upstream.request_url):
                response = self._playlist_response(request, proxy_request, upstream)
                if response is not None:
                    return response

            logger.info(f"📦 Passthrough {upstream.status} [{upstream.content_type or 'unknown'}] {len(upstream.body)} bytes")
            return web.Response(
                body=upstream.body,
                status=upstream.status,
                headers=build_response_headers(upstream)
            )

        except ProxyError as e:
            logger.warning(f"⚠️ Proxy request failed ({e.status}): {e}")
            return e.to_response()

        except Exception as e:
            logger.exception(f"❌ Unexpected error in proxy request: {e}")
            return ProxyError(str(e)).to_response()

    def _playlist_response(self, request, proxy_request, upstream):
        """Rewritten playlist response, or None if the body is not text."""
        manifest_content = decode_manifest(upstream.body)
        if manifest_content is None:
            logger.warning(f"⚠️ Binary detected in {upstream.url} (served as {upstream.content_type}). Serving as binary.")
            return None

        proxy_base = resolve_proxy_base(request, self.config)
        rewritten_manifest = ManifestRewriter.rewrite_manifest_urls(
            manifest_content, upstream.url, proxy_base, proxy_request.referer
        )
        logger.info(f"📝 Rewrote playlist {upstream.url} via {proxy_base}")

        # The rewritten body is a whole new representation, never a byte range
        status = 200 if upstream.status == 206 else upstream.status
        return web.Response(
            body=rewritten_manifest.encode('utf-8'),
            status=status,
            headers=build_response_headers(upstream, rewritten=True)
        )

    def _preflight_response(self):
        return web.Response(status=204, headers=cors_headers())

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        return self._preflight_response()

    async def handle_api_info(self, request):
        """API endpoint that returns server information in JSON format."""
        info = {
            "proxy": "HLS CORS Proxy",
            "version": VERSION,
            "endpoints": {
                PROXY_PATH: "Proxy HLS playlists and segments - ?url=<URL>&referer=<URL>",
                "/api/info": "JSON endpoint with server information"
            },
            "config": {
                "proxy_base_url": self.config.proxy_base_url,
                "base_url_strategy": self.config.base_url_strategy,
                "default_referer": self.config.default_referer,
                "strict_referer": self.config.strict_referer,
                "request_timeout": self.config.request_timeout,
                "max_redirects": self.config.max_redirects,
                "global_proxies": f"{len(self.config.global_proxies)} proxies loaded",
                "transport_routes": f"{len(self.config.transport_routes)} routing rules configured",
            },
            "usage_examples": {
                "proxy_hls": f"{PROXY_PATH}?url=https%3A%2F%2Fexample.com%2Fstream.m3u8",
                "custom_referer": f"{PROXY_PATH}?url=<URL>&referer=https%3A%2F%2Fexample.com%2F"
            }
        }
        return web.json_response(info, headers=cors_headers())

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.fetcher.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
