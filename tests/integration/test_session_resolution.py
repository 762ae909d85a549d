"""Integration tests for the session resolver stage."""

import httpx
from fastapi import FastAPI

from storefront_pipeline import InMemorySessionStore, PipelineSettings, Session

BASE_URL = "http://testserver"


def _set_cookie_headers(response: httpx.Response) -> list[str]:
    return response.headers.get_list("set-cookie")


class TestNewSession:
    """Requests without a usable session token get a fresh session."""

    async def test_first_request_creates_session_and_issues_cookie(
        self,
        client: httpx.AsyncClient,
        session_store: InMemorySessionStore,
        settings: PipelineSettings,
    ) -> None:
        response = await client.get("/whoami")

        assert response.status_code == 200
        cookies = _set_cookie_headers(response)
        assert len(cookies) == 1
        assert cookies[0].startswith(f"{settings.session_cookie_name}=")
        assert "httponly" in cookies[0].lower()
        assert len(session_store) == 1
        assert response.json()["session_id"] in session_store

    async def test_new_session_is_empty(self, client: httpx.AsyncClient) -> None:
        body = (await client.get("/whoami")).json()

        assert body["user"] is None
        assert body["user_id"] is None
        assert body["is_authenticated"] is False

    async def test_tampered_cookie_starts_new_session(
        self,
        app: FastAPI,
        session_store: InMemorySessionStore,
        signed_cookie,
        settings: PipelineSettings,
    ) -> None:
        existing = Session.create()
        await session_store.save(existing, ttl=60)
        forged = signed_cookie(existing.id)[settings.session_cookie_name] + "x"

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport,
            base_url=BASE_URL,
            cookies={settings.session_cookie_name: forged},
        ) as client:
            response = await client.get("/whoami")

        assert response.json()["session_id"] != existing.id
        assert len(_set_cookie_headers(response)) == 1
        assert len(session_store) == 2

    async def test_unknown_session_id_starts_new_session(
        self,
        app: FastAPI,
        session_store: InMemorySessionStore,
        signed_cookie,
    ) -> None:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url=BASE_URL, cookies=signed_cookie("expired-id")
        ) as client:
            response = await client.get("/whoami")

        assert response.json()["session_id"] != "expired-id"
        assert len(_set_cookie_headers(response)) == 1


class TestExistingSession:
    """Requests bearing a valid session token reuse it."""

    async def test_no_duplicate_session_and_no_new_cookie(
        self,
        client: httpx.AsyncClient,
        session_store: InMemorySessionStore,
    ) -> None:
        first = await client.get("/whoami")
        second = await client.get("/whoami")

        assert second.json()["session_id"] == first.json()["session_id"]
        assert _set_cookie_headers(second) == []
        assert len(session_store) == 1

    async def test_existing_fields_loaded_unchanged(
        self,
        app: FastAPI,
        session_store: InMemorySessionStore,
        signed_cookie,
    ) -> None:
        existing = Session.create()
        existing.log_in("u1")
        existing.data["cart"] = ["p1", "p2"]
        await session_store.save(existing, ttl=60)
        stored_before = (await session_store.load(existing.id)).to_dict()  # type: ignore[union-attr]

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url=BASE_URL, cookies=signed_cookie(existing.id)
        ) as client:
            response = await client.get("/whoami")

        body = response.json()
        assert body["session_id"] == existing.id
        assert body["user_id"] == "u1"
        assert body["is_authenticated"] is True
        stored_after = (await session_store.load(existing.id)).to_dict()  # type: ignore[union-attr]
        assert stored_after == stored_before

    async def test_handler_changes_are_persisted(
        self, client: httpx.AsyncClient, fetch_csrf_token
    ) -> None:
        token = await fetch_csrf_token(client)

        await client.post("/counter", data={"_csrf": token})
        response = await client.post("/counter", data={"_csrf": token})

        assert response.json() == {"count": 2}

    async def test_flash_messages_survive_one_redirect(
        self, client: httpx.AsyncClient, fetch_csrf_token
    ) -> None:
        token = await fetch_csrf_token(client)

        await client.post("/flash", data={"_csrf": token, "message": "Invalid email."})

        assert (await client.get("/flash")).json() == {"error": ["Invalid email."]}
        assert (await client.get("/flash")).json() == {"error": []}


class TestLogout:
    async def test_logout_destroys_session_and_expires_cookie(
        self,
        client: httpx.AsyncClient,
        session_store: InMemorySessionStore,
        fetch_csrf_token,
        settings: PipelineSettings,
    ) -> None:
        token = await fetch_csrf_token(client)
        session_id = (await client.get("/whoami")).json()["session_id"]

        response = await client.post("/logout", data={"_csrf": token})

        assert response.status_code == 200
        assert session_id not in session_store
        cookie = _set_cookie_headers(response)[0]
        assert cookie.startswith(f"{settings.session_cookie_name}=")
        assert "max-age=0" in cookie.lower()

        follow_up = await client.get("/whoami")
        assert follow_up.json()["session_id"] != session_id
