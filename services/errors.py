from aiohttp import web

from services.response_builder import cors_headers


class ProxyError(Exception):
    """Base class for errors rendered to the client as a JSON body.

    Subclasses set the HTTP ``status`` and the ``error`` label; the optional
    ``message``, ``upstream_status`` and ``url`` end up in the body as
    ``message``, ``status`` and ``url``.
    """
    status = 500
    error = "Internal proxy error"

    def __init__(self, message=None, upstream_status=None, url=None):
        super().__init__(message or self.error)
        self.message = message
        self.upstream_status = upstream_status
        self.url = url

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.message:
            body["message"] = self.message
        if self.upstream_status is not None:
            body["status"] = self.upstream_status
        if self.url:
            body["url"] = self.url
        return body

    def response_headers(self) -> dict:
        return cors_headers()

    def to_response(self) -> web.Response:
        return web.json_response(self.to_dict(), status=self.status, headers=self.response_headers())


class BadRequestError(ProxyError):
    """Malformed input; upstream is never contacted."""
    status = 400
    error = "Invalid request"


class MissingURLError(BadRequestError):
    error = "URL parameter is required"


class MethodNotAllowed(ProxyError):
    status = 405
    error = "Method not allowed"
    allowed_methods = ("GET", "OPTIONS")

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["allowedMethods"] = list(self.allowed_methods)
        return body

    def response_headers(self) -> dict:
        headers = super().response_headers()
        headers["Allow"] = ", ".join(self.allowed_methods)
        return headers


class UpstreamError(ProxyError):
    """Upstream answered 4xx. Passed through with the original status."""
    error = "Upstream error"

    def __init__(self, upstream_status, message=None, url=None):
        super().__init__(message, upstream_status=upstream_status, url=url)
        self.status = upstream_status


class UpstreamServerError(UpstreamError):
    """Upstream answered 5xx."""
    error = "Upstream server error"


class BadGatewayError(ProxyError):
    status = 502
    error = "Bad gateway"


class GatewayTimeoutError(ProxyError):
    status = 504
    error = "Gateway timeout"
