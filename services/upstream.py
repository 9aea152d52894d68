import asyncio
import logging
import socket
import urllib.parse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_socks import ProxyConnector
from multidict import CIMultiDict

from services.errors import BadGatewayError, GatewayTimeoutError, UpstreamServerError

logger = logging.getLogger(__name__)

# Headers a browser sends for a cross-site media fetch
BROWSER_HEADERS = {
    'Accept': '*/*',
    'Accept-Language': 'en-US,en;q=0.9',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
    'Sec-Fetch-Dest': 'empty',
    'Sec-Fetch-Mode': 'cors',
    'Sec-Fetch-Site': 'cross-site',
}

# Only encodings aiohttp can decode without optional extras
ACCEPT_ENCODING = 'gzip, deflate'


class UpstreamResponse:
    """Fully buffered CDN reply."""

    def __init__(self, status, reason, headers, body, url, request_url):
        self.status = status
        self.reason = reason
        self.headers = headers
        self.body = body
        self.url = url
        self.request_url = request_url

    @property
    def content_type(self) -> str:
        return self.headers.get('Content-Type', '')

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


def origin_of(url: str) -> str:
    """scheme://host[:port] of a URL, or the value itself if it has none."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return url


def is_browser_user_agent(user_agent: str) -> bool:
    ua = user_agent.lower()
    return "chrome" in ua or "applewebkit" in ua or "firefox" in ua


def build_upstream_headers(proxy_request, config) -> dict:
    """Outbound header set: browser-like defaults, referer/origin spoofing and
    the inbound range and conditional headers."""
    headers = dict(BROWSER_HEADERS)

    inbound_ua = proxy_request.headers.get('User-Agent', '')
    headers['User-Agent'] = inbound_ua if inbound_ua and is_browser_user_agent(inbound_ua) else config.user_agent

    for name in ('Accept', 'Accept-Language', 'If-Range', 'If-None-Match', 'If-Modified-Since'):
        if proxy_request.headers.get(name):
            headers[name] = proxy_request.headers[name]
    headers['Accept-Encoding'] = ACCEPT_ENCODING

    headers['Referer'] = proxy_request.referer
    headers['Origin'] = origin_of(proxy_request.referer)

    if proxy_request.range_header:
        headers['Range'] = proxy_request.range_header

    return headers


class UpstreamFetcher:
    """Performs the single outbound GET of a proxy request.

    Sessions are shared across requests: one direct session plus one per
    egress proxy, all closed by ``close()``.
    """

    def __init__(self, config):
        self.config = config
        self.session = None
        # Cache for proxy sessions (proxy_url -> session)
        self.proxy_sessions = {}

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,  # Unlimited connections
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.config.request_timeout),
                connector=connector
            )
        return self.session

    async def _get_proxy_session(self, url: str):
        """Session routed through the egress proxy configured for ``url``,
        or the direct session when none applies."""
        proxy = self.config.proxy_for_url(url)
        if not proxy:
            return await self._get_session()

        cached_session = self.proxy_sessions.get(proxy)
        if cached_session is not None:
            if not cached_session.closed:
                logger.debug(f"♻️ Reusing cached proxy session: {proxy}")
                return cached_session
            del self.proxy_sessions[proxy]

        logger.info(f"🌍 Creating proxy session: {proxy}")
        connector = ProxyConnector.from_url(
            proxy,
            limit=0,
            limit_per_host=0,
            keepalive_timeout=60
        )
        session = ClientSession(
            timeout=ClientTimeout(total=self.config.request_timeout),
            connector=connector
        )
        self.proxy_sessions[proxy] = session
        return session

    async def fetch(self, proxy_request) -> UpstreamResponse:
        """GETs the target URL and buffers the whole body.

        Returns the response for any status below 500, raises
        UpstreamServerError at or above it, and maps transport failures to
        BadGatewayError / GatewayTimeoutError.
        """
        url = proxy_request.target_url
        headers = build_upstream_headers(proxy_request, self.config)
        disable_ssl = self.config.ssl_disabled_for_url(url)
        session = await self._get_proxy_session(url)

        logger.info(f"📡 Fetching upstream: {url}" + (f" [Range: {proxy_request.range_header}]" if proxy_request.range_header else ""))
        logger.debug(f"   Upstream headers: {headers}")

        try:
            async with session.get(
                url,
                headers=headers,
                allow_redirects=True,
                max_redirects=self.config.max_redirects,
                timeout=ClientTimeout(total=self.config.request_timeout),
                ssl=not disable_ssl,
            ) as resp:
                if resp.status >= 500:
                    logger.warning(f"⚠️ Upstream returned {resp.status} for {url}")
                    raise UpstreamServerError(resp.status, message=resp.reason, url=url)

                body = await resp.read()
                final_url = str(resp.url)
                if final_url != url:
                    logger.info(f"↪️ Redirected to: {final_url}")
                return UpstreamResponse(
                    status=resp.status,
                    reason=resp.reason,
                    headers=CIMultiDict(resp.headers),
                    body=body,
                    url=final_url,
                    request_url=url,
                )

        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Upstream timeout after {self.config.request_timeout}s: {url}")
            raise GatewayTimeoutError(f"Upstream did not respond within {self.config.request_timeout} seconds", url=url)

        except aiohttp.TooManyRedirects:
            logger.warning(f"⚠️ Too many redirects for {url}")
            raise BadGatewayError(f"Exceeded {self.config.max_redirects} redirects", url=url)

        except aiohttp.ClientConnectorError as e:
            if isinstance(e, aiohttp.ClientConnectorDNSError) or isinstance(e.os_error, socket.gaierror):
                host = urllib.parse.urlparse(url).hostname
                logger.warning(f"⚠️ DNS resolution failed for {host}")
                raise BadGatewayError(f"DNS resolution failed for {host}", url=url)
            logger.warning(f"⚠️ Connection to upstream failed: {url} ({e})")
            raise BadGatewayError(f"Connection to upstream failed: {e}", url=url)

        except aiohttp.ClientError as e:
            logger.warning(f"⚠️ Upstream request failed: {url} ({e})")
            raise BadGatewayError(f"Upstream request failed: {e}", url=url)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

        for session in list(self.proxy_sessions.values()):
            if session and not session.closed:
                await session.close()
        self.proxy_sessions.clear()
