"""Error boundary: the two fixed terminal responses.

ErrorBoundaryMiddleware is the outermost layer. Whatever escapes the
pipeline or a route handler is logged and answered with the Internal
Error response, unless a response has already started, in which case
sending a second one is impossible and the exception is re-raised.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.exception_handlers import http_exception_handler
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from storefront_pipeline.exceptions import InvalidCsrfToken

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = {"error": "not_found", "message": "Page not found."}
INTERNAL_ERROR_BODY = {
    "error": "internal_error",
    "message": "An unexpected error occurred. Please try again later.",
}

# Router outcomes meaning "no handler for this path and method"
UNMATCHED_STATUS_CODES = frozenset({404, 405})


def not_found_response() -> JSONResponse:
    return JSONResponse(NOT_FOUND_BODY, status_code=404)


def internal_error_response() -> JSONResponse:
    return JSONResponse(INTERNAL_ERROR_BODY, status_code=500)


async def not_found_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Answer unmatched routes with the fixed Not-Found response.

    A path that exists under a different method counts as unmatched too.
    Other HTTP exceptions raised by route handlers keep FastAPI's default handling.
    """
    if exc.status_code in UNMATCHED_STATUS_CODES:
        logger.debug("No route matched", extra={"method": request.method, "path": request.url.path})
        return not_found_response()
    return await http_exception_handler(request, exc)


class ErrorBoundaryMiddleware:
    """Pure ASGI middleware turning unhandled failures into one 500 response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            log_context = {
                "method": scope.get("method"),
                "path": scope.get("path"),
                "error_type": type(exc).__name__,
            }
            if isinstance(exc, InvalidCsrfToken):
                logger.warning("Request rejected by CSRF guard", extra=log_context)
            else:
                logger.error("Unhandled failure while processing request", extra=log_context, exc_info=exc)

            if response_started:
                raise
            await internal_error_response()(scope, receive, send)


error_router = APIRouter()


@error_router.get("/500", include_in_schema=False)
async def error_page() -> JSONResponse:
    """Render the Internal Error page directly."""
    return internal_error_response()
