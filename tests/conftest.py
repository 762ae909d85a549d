"""Shared pytest fixtures for storefront-pipeline tests."""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import APIRouter, FastAPI, HTTPException, Request

from storefront_pipeline import (
    Context,
    InMemorySessionStore,
    InMemoryUserStore,
    PipelineSettings,
    install_pipeline,
)
from storefront_pipeline.core.session import SessionCookie

BASE_URL = "http://testserver"


@dataclass
class User:
    """Minimal user entity returned by the test user store."""

    id: str
    name: str


def _build_routes() -> APIRouter:
    router = APIRouter()

    @router.get("/whoami")
    async def whoami(request: Request, ctx: Context) -> dict[str, Any]:
        request.app.state.handled.append("whoami")
        assert ctx.session is not None
        return {
            "session_id": ctx.session.id,
            "user": getattr(ctx.user, "name", None),
            "user_id": ctx.session.user_id,
            **ctx.template_locals(),
        }

    @router.post("/login")
    async def login(request: Request, ctx: Context) -> dict[str, Any]:
        request.app.state.handled.append("login")
        form = await request.form()
        assert ctx.session is not None
        ctx.session.log_in(str(form["user_id"]))
        return {"ok": True}

    @router.post("/logout")
    async def logout(request: Request, ctx: Context) -> dict[str, Any]:
        request.app.state.handled.append("logout")
        assert ctx.session is not None
        ctx.session.log_out()
        return {"ok": True}

    @router.post("/counter")
    async def counter(request: Request, ctx: Context) -> dict[str, Any]:
        request.app.state.handled.append("counter")
        assert ctx.session is not None
        ctx.session.data["count"] = ctx.session.data.get("count", 0) + 1
        return {"count": ctx.session.data["count"]}

    @router.post("/flash")
    async def add_flash(request: Request, ctx: Context) -> dict[str, Any]:
        form = await request.form()
        assert ctx.session is not None
        ctx.session.add_flash("error", str(form["message"]))
        return {"ok": True}

    @router.get("/flash")
    async def read_flash(ctx: Context) -> dict[str, Any]:
        assert ctx.session is not None
        return {"error": ctx.session.pop_flashes("error")}

    @router.post("/products")
    async def add_product(request: Request, ctx: Context) -> dict[str, Any]:
        request.app.state.handled.append("products")
        form = await request.form()
        upload = ctx.upload
        return {
            "status": upload.status.value,
            "declared_type": upload.declared_type,
            "storage_name": upload.file.storage_name if upload.file else None,
            "size": upload.file.size if upload.file else None,
            "title": form.get("title"),
        }

    @router.get("/boom")
    async def boom() -> dict[str, Any]:
        raise RuntimeError("database password is hunter2")

    @router.get("/forbidden")
    async def forbidden() -> dict[str, Any]:
        raise HTTPException(status_code=403, detail="not yours")

    return router


@pytest.fixture
def settings(tmp_path: Path) -> PipelineSettings:
    """Pipeline settings with uploads going to a temporary directory."""
    return PipelineSettings(
        secret_key="test-secret-key",
        upload_dir=tmp_path / "images",
        store_timeout=0.2,
    )


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore(
        {
            "u1": User(id="u1", name="Ada"),
            "u2": User(id="u2", name="Grace"),
        }
    )


@pytest.fixture
def make_app(
    settings: PipelineSettings,
    session_store: InMemorySessionStore,
    user_store: InMemoryUserStore,
) -> Callable[..., FastAPI]:
    """Return a factory building a test app; keyword arguments override collaborators."""

    def _create(**overrides: Any) -> FastAPI:
        application = FastAPI()
        application.state.handled = []
        install_pipeline(
            application,
            settings=overrides.pop("settings", settings),
            session_store=overrides.pop("session_store", session_store),
            user_store=overrides.pop("user_store", user_store),
            **overrides,
        )
        application.include_router(_build_routes())
        return application

    return _create


@pytest.fixture
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app()


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as c:
        yield c


@pytest.fixture
def signed_cookie(settings: PipelineSettings) -> Callable[[str], dict[str, str]]:
    """Return a helper building the cookie mapping for an existing session id."""
    cookie = SessionCookie(settings)

    def _sign(session_id: str) -> dict[str, str]:
        return {settings.session_cookie_name: cookie.dump(session_id)}

    return _sign


async def _fetch_csrf_token(client: httpx.AsyncClient) -> str:
    response = await client.get("/whoami")
    assert response.status_code == 200
    return response.json()["csrf_token"]


@pytest.fixture
def fetch_csrf_token() -> Callable[[httpx.AsyncClient], Awaitable[str]]:
    """Return a helper that opens (or reuses) a client session and returns its CSRF token."""
    return _fetch_csrf_token
