import logging
import sys

from aiohttp import web

from config import ProxyConfig
from services.hls_proxy import HLSProxy
from services.manifest_rewriter import PROXY_PATH

logger = logging.getLogger(__name__)


def create_app(config: ProxyConfig = None):
    """Creates and configures the aiohttp application."""
    proxy = HLSProxy(config)

    app = web.Application()

    # The handler answers OPTIONS itself and rejects every other verb with 405
    app.router.add_route('*', PROXY_PATH, proxy.handle_proxy_request)
    app.router.add_get('/api/info', proxy.handle_api_info)

    # CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Starts the server."""
    # Windows workaround
    if sys.platform == 'win32':
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    config = ProxyConfig.from_env()
    app = create_app(config)

    logger.info(f"🚀 Starting HLS CORS Proxy on http://0.0.0.0:{config.port}")
    logger.info(f"🔗 Endpoint: {PROXY_PATH}?url=<URL>&referer=<URL>")

    web.run_app(
        app,
        host='0.0.0.0',
        port=config.port
    )

if __name__ == '__main__':
    main()
