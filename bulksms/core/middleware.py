import logging

from starlette.middleware.base import BaseHTTPMiddleware

from .observability import correlation_context

logger = logging.getLogger("bulksms.request")

REQUEST_ID_HEADER = "x-request-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        client_host = request.client.host if request.client else None
        ip = request.headers.get("x-forwarded-for", client_host)
        request.state.ip = ip
        request.state.user_agent = request.headers.get("user-agent")
        with correlation_context(request.headers.get(REQUEST_ID_HEADER)) as correlation_id:
            logger.info("%s %s | ip=%s", request.method, request.url.path, ip)
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
