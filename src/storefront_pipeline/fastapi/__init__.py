"""FastAPI adapter for the request pipeline."""

from storefront_pipeline.fastapi.errors import ErrorBoundaryMiddleware
from storefront_pipeline.fastapi.pipeline import (
    Context,
    RequestPipelineMiddleware,
    create_app,
    get_csrf_token,
    get_current_user,
    get_request_context,
    get_session,
    install_pipeline,
)

__all__ = [
    "Context",
    "ErrorBoundaryMiddleware",
    "RequestPipelineMiddleware",
    "create_app",
    "get_csrf_token",
    "get_current_user",
    "get_request_context",
    "get_session",
    "install_pipeline",
]
