"""Request processing pipeline for a FastAPI storefront."""

# Primary API: the main entry points
from storefront_pipeline.config import PipelineSettings

# Core types: for stage authors and type checking
from storefront_pipeline.core.context import (
    RequestContext,
    Session,
    UploadedFile,
    UploadResult,
    UploadStatus,
)
from storefront_pipeline.core.stores import (
    InMemorySessionStore,
    InMemoryUserStore,
    RedisSessionStore,
    SessionStore,
    UserStore,
)
from storefront_pipeline.core.upload import DiskFileStorage, FileStorage

# Exceptions: for error handling
from storefront_pipeline.exceptions import (
    InvalidCsrfToken,
    PipelineConfigurationError,
    PipelineError,
    StoreUnavailable,
    UploadWriteFailure,
)
from storefront_pipeline.fastapi.pipeline import (
    Context,
    create_app,
    get_csrf_token,
    get_current_user,
    get_request_context,
    get_session,
    install_pipeline,
)

__all__ = [
    # Primary API
    "create_app",
    "install_pipeline",
    "PipelineSettings",
    # Route dependencies
    "Context",
    "get_csrf_token",
    "get_current_user",
    "get_request_context",
    "get_session",
    # Core types
    "RequestContext",
    "Session",
    "UploadedFile",
    "UploadResult",
    "UploadStatus",
    # Collaborators
    "DiskFileStorage",
    "FileStorage",
    "InMemorySessionStore",
    "InMemoryUserStore",
    "RedisSessionStore",
    "SessionStore",
    "UserStore",
    # Exceptions
    "InvalidCsrfToken",
    "PipelineConfigurationError",
    "PipelineError",
    "StoreUnavailable",
    "UploadWriteFailure",
]

__version__ = "0.1.0"
