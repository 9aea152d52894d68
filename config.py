import os
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file

# Logging configuration
# Standard format; the 'aiohttp.access' logger is left untouched so access logs are displayed.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Silence the asyncio "Unknown child process pid" warning (known race condition in asyncio)
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Default User-Agent for all outgoing requests
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

# Referer commonly accepted by the CDNs this proxy fronts
DEFAULT_REFERER = "https://megacloud.tv"

DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_PORT = 7860

BASE_URL_STRATEGIES = ("auto", "forwarded")


# --- Egress proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes() -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy, DISABLE_SSL=true/false}, {URL=domain2, PROXY=proxy2}"""
    routes_str = os.environ.get('TRANSPORT_ROUTES', "").strip()
    if not routes_str:
        return []

    routes = []
    try:
        # Remove spaces and split by }, {
        route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

        for part in route_parts:
            if not part:
                continue

            part = part.strip('{}')

            url_match = None
            proxy_match = None
            disable_ssl_match = None

            for item in part.split(','):
                if item.startswith('URL='):
                    url_match = item[4:]
                elif item.startswith('PROXY='):
                    proxy_match = item[6:]
                elif item.startswith('DISABLE_SSL='):
                    disable_ssl_match = _parse_bool(item[12:])

            if url_match:
                routes.append({
                    'url': url_match,
                    'proxy': proxy_match if proxy_match else None,
                    'disable_ssl': disable_ssl_match if disable_ssl_match is not None else False
                })

    except Exception as e:
        logger.warning(f"Error parsing TRANSPORT_ROUTES: {e}")

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the appropriate egress proxy for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return random.choice(global_proxies) if global_proxies else None

    for route in transport_routes:
        if route['url'] in url:
            # An empty proxy on a matching route means direct connection
            return route['proxy'] or None

    return random.choice(global_proxies) if global_proxies else None

def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """Determines if SSL verification should be disabled for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return False  # Default: SSL enabled

    for route in transport_routes:
        if route['url'] in url:
            return route.get('disable_ssl', False)

    return False


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('true', '1', 'yes', 'on')

def _parse_int(env_var: str, default: int) -> int:
    raw = os.environ.get(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid {env_var} '{raw}'. Using {default} as default.")
        return default
    if value <= 0:
        logger.warning(f"⚠️ {env_var} must be positive, got {value}. Using {default} as default.")
        return default
    return value


class ProxyConfig:
    """Process-wide proxy settings, immutable once the server has started.

    The handler receives an instance at construction time; nothing reads the
    environment while serving requests.
    """

    def __init__(self, proxy_base_url=None, base_url_strategy="auto",
                 default_referer=DEFAULT_REFERER, strict_referer=False,
                 user_agent=DEFAULT_USER_AGENT, request_timeout=DEFAULT_REQUEST_TIMEOUT,
                 max_redirects=DEFAULT_MAX_REDIRECTS, global_proxies=None,
                 transport_routes=None, port=DEFAULT_PORT):
        if base_url_strategy not in BASE_URL_STRATEGIES:
            raise ValueError(f"Unknown base URL strategy: {base_url_strategy!r}")
        self.proxy_base_url = proxy_base_url.rstrip('/') if proxy_base_url else None
        self.base_url_strategy = base_url_strategy
        self.default_referer = default_referer
        self.strict_referer = strict_referer
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_redirects = max_redirects
        self.global_proxies = list(global_proxies or [])
        self.transport_routes = list(transport_routes or [])
        self.port = port

    @classmethod
    def from_env(cls):
        """Builds the configuration from environment variables (and .env)."""
        strategy = os.environ.get("PROXY_BASE_STRATEGY", "auto").strip().lower() or "auto"
        if strategy not in BASE_URL_STRATEGIES:
            logger.warning(f"⚠️ Invalid PROXY_BASE_STRATEGY '{strategy}'. Using 'auto' as default.")
            strategy = "auto"

        config = cls(
            proxy_base_url=os.environ.get("PROXY_BASE_URL", "").strip() or None,
            base_url_strategy=strategy,
            default_referer=os.environ.get("DEFAULT_REFERER", "").strip() or DEFAULT_REFERER,
            strict_referer=_parse_bool(os.environ.get("STRICT_REFERER", "false")),
            user_agent=os.environ.get("USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
            request_timeout=_parse_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            max_redirects=_parse_int("MAX_REDIRECTS", DEFAULT_MAX_REDIRECTS),
            global_proxies=parse_proxies('GLOBAL_PROXY'),
            transport_routes=parse_transport_routes(),
            port=_parse_int("PORT", DEFAULT_PORT),
        )

        if config.global_proxies: logging.info(f"🌍 Loaded {len(config.global_proxies)} global proxies.")
        if config.transport_routes: logging.info(f"🚦 Loaded {len(config.transport_routes)} transport rules.")
        if config.proxy_base_url: logging.info(f"🔗 Proxy base URL override: {config.proxy_base_url}")
        return config

    def proxy_for_url(self, url: str):
        return get_proxy_for_url(url, self.transport_routes, self.global_proxies)

    def ssl_disabled_for_url(self, url: str) -> bool:
        return get_ssl_setting_for_url(url, self.transport_routes)
