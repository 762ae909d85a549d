"""FastAPI integration for the request pipeline.

Runs the stage chain on every inbound request:

    Session Resolver -> CSRF Guard -> Upload Filter -> Auth Attachment
        -> (extra stages) -> routes

and wires the error boundary around it.
"""

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp

from storefront_pipeline.config import PipelineSettings
from storefront_pipeline.core.auth import auth_attachment
from storefront_pipeline.core.context import RequestContext, Session
from storefront_pipeline.core.csrf import CsrfTokens, csrf_guard
from storefront_pipeline.core.middleware import Stage, build_middleware_chain, normalize_stages
from storefront_pipeline.core.session import SessionCookie, session_resolver
from storefront_pipeline.core.stores import (
    InMemorySessionStore,
    InMemoryUserStore,
    SessionStore,
    UserStore,
)
from storefront_pipeline.core.upload import DiskFileStorage, FileStorage, upload_filter
from storefront_pipeline.exceptions import PipelineConfigurationError
from storefront_pipeline.fastapi.errors import (
    ErrorBoundaryMiddleware,
    error_router,
    not_found_handler,
)

logger = logging.getLogger(__name__)


def build_stages(
    settings: PipelineSettings,
    *,
    session_store: SessionStore,
    user_store: UserStore,
    file_storage: FileStorage,
    extra_stages: Any = None,
) -> tuple[Stage, ...]:
    """Return the pipeline stages in execution order."""
    return (
        session_resolver(session_store, SessionCookie(settings), settings),
        csrf_guard(CsrfTokens(settings), settings),
        upload_filter(file_storage, settings),
        auth_attachment(user_store, settings),
        *normalize_stages(extra_stages, source="install_pipeline(extra_stages=...)"),
    )


class RequestPipelineMiddleware(BaseHTTPMiddleware):
    """Runs the stage chain before handing the request to the routes.

    The request body is read to completion and the form parsed before the
    first stage runs. Routes still receive the full body.
    """

    def __init__(self, app: ASGIApp, *, stages: Sequence[Stage]) -> None:
        super().__init__(app)
        self.stages = tuple(stages)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        async def forward(ctx: RequestContext) -> Response:
            ctx.request.state.context = ctx
            return await call_next(ctx.request)

        chain = build_middleware_chain(forward, self.stages)

        await request.body()
        form = await request.form()
        ctx = RequestContext(request=request, form=form)
        try:
            return await chain(ctx)
        except BaseException:
            await _roll_back(ctx)
            raise
        finally:
            await form.close()


async def _roll_back(ctx: RequestContext) -> None:
    """Undo the side effects registered by stages, newest first."""
    for action in reversed(ctx.rollbacks):
        try:
            await action()
        except Exception:
            logger.exception(
                "Rollback action failed",
                extra={"method": ctx.request.method, "path": ctx.request.url.path},
            )


def install_pipeline(
    app: FastAPI,
    *,
    settings: PipelineSettings,
    session_store: SessionStore,
    user_store: UserStore,
    file_storage: FileStorage | None = None,
    extra_stages: Any = None,
    serve_uploads: bool = True,
) -> None:
    """Install the request pipeline and error boundary on an application.

    Args:
        app: The FastAPI application.
        settings: Pipeline settings.
        session_store: Backing store for sessions.
        user_store: Lookup for users referenced by sessions.
        file_storage: Destination for accepted uploads (defaults to local disk).
        extra_stages: Optional async stages run after auth attachment.
        serve_uploads: Mount the upload directory at ``settings.images_url_path``.

    Raises:
        PipelineConfigurationError: If extra_stages is invalid.

    Example:
        from fastapi import FastAPI
        from storefront_pipeline import PipelineSettings, install_pipeline
        from storefront_pipeline.core.stores import InMemorySessionStore, InMemoryUserStore

        app = FastAPI()
        install_pipeline(
            app,
            settings=PipelineSettings(secret_key="change-me"),
            session_store=InMemorySessionStore(),
            user_store=InMemoryUserStore(),
        )
    """
    stages = build_stages(
        settings,
        session_store=session_store,
        user_store=user_store,
        file_storage=file_storage or DiskFileStorage(),
        extra_stages=extra_stages,
    )

    # Last added is outermost: the error boundary wraps the pipeline
    app.add_middleware(RequestPipelineMiddleware, stages=stages)
    app.add_middleware(ErrorBoundaryMiddleware)
    app.add_exception_handler(StarletteHTTPException, not_found_handler)  # type: ignore[arg-type]
    app.include_router(error_router)

    if serve_uploads:
        upload_dir = Path(settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        app.mount(settings.images_url_path, StaticFiles(directory=upload_dir), name="images")

    logger.info(
        "Request pipeline installed",
        extra={"stage_count": len(stages), "upload_dir": str(settings.upload_dir)},
    )


def create_app(
    settings: PipelineSettings | None = None,
    *,
    session_store: SessionStore | None = None,
    user_store: UserStore | None = None,
    file_storage: FileStorage | None = None,
    admin_routes: APIRouter | None = None,
    shop_routes: APIRouter | None = None,
    auth_routes: APIRouter | None = None,
    **app_kwargs: Any,
) -> FastAPI:
    """Build a storefront application with the pipeline installed.

    Admin routes are mounted under ``/admin``; shop and auth routes at the root.
    Stores default to the in-memory implementations.
    """
    settings = settings or PipelineSettings()  # type: ignore[call-arg]
    application = FastAPI(**app_kwargs)
    install_pipeline(
        application,
        settings=settings,
        session_store=session_store or InMemorySessionStore(),
        user_store=user_store or InMemoryUserStore(),
        file_storage=file_storage,
    )
    if admin_routes is not None:
        application.include_router(admin_routes, prefix="/admin")
    if shop_routes is not None:
        application.include_router(shop_routes)
    if auth_routes is not None:
        application.include_router(auth_routes)
    return application


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency returning the pipeline's context for this request.

    Raises:
        PipelineConfigurationError: If the pipeline is not installed on the app.
    """
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        raise PipelineConfigurationError(
            "No request context found; call install_pipeline() on the application"
        )
    return ctx


Context = Annotated[RequestContext, Depends(get_request_context)]


def get_session(ctx: Context) -> Session:
    if ctx.session is None:
        raise PipelineConfigurationError(
            "No session on the request context; session_resolver did not run"
        )
    return ctx.session


def get_current_user(ctx: Context) -> Any | None:
    return ctx.user


def get_csrf_token(ctx: Context) -> str | None:
    return ctx.csrf_token
