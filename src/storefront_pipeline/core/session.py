"""Session resolver stage.

Resolves the signed session cookie to a Session, runs the rest of the
chain, then persists the session and issues the cookie. Nothing is
written when a later stage or route handler raises.
"""

import logging
from dataclasses import replace
from typing import Any

from itsdangerous import BadSignature, Signer
from starlette.responses import Response

from storefront_pipeline.config import PipelineSettings
from storefront_pipeline.core.context import RequestContext, Session
from storefront_pipeline.core.middleware import Handler, Stage
from storefront_pipeline.core.stores import SessionStore, bounded

logger = logging.getLogger(__name__)


class SessionCookie:
    """Signs and verifies session ids carried in the session cookie."""

    def __init__(self, settings: PipelineSettings) -> None:
        self.settings = settings
        self._signer = Signer(settings.secret_key.get_secret_value(), salt="storefront.session")

    def load(self, raw: str | None) -> str | None:
        """Return the session id from a cookie value, or None if it fails verification."""
        if not raw:
            return None
        try:
            return self._signer.unsign(raw).decode()
        except BadSignature:
            logger.info("Ignoring session cookie with bad signature")
            return None

    def dump(self, session_id: str) -> str:
        return self._signer.sign(session_id).decode()

    def attach(self, response: Response, session_id: str) -> None:
        response.set_cookie(
            self.settings.session_cookie_name,
            self.dump(session_id),
            max_age=self.settings.session_ttl,
            path="/",
            secure=self.settings.cookie_secure,
            httponly=True,
            samesite=self.settings.cookie_samesite,  # type: ignore[arg-type]
        )

    def expire(self, response: Response) -> None:
        response.delete_cookie(
            self.settings.session_cookie_name,
            path="/",
            secure=self.settings.cookie_secure,
            httponly=True,
            samesite=self.settings.cookie_samesite,  # type: ignore[arg-type]
        )


def session_resolver(
    store: SessionStore,
    cookie: SessionCookie,
    settings: PipelineSettings,
) -> Stage:
    """Create the session resolver stage.

    Args:
        store: Backing session store.
        cookie: Cookie signer/verifier.
        settings: Pipeline settings (TTL and store timeout).

    Returns:
        An async stage that sets ``ctx.session``.
    """
    timeout = settings.store_timeout

    async def resolve_session(ctx: RequestContext, call_next: Handler) -> Any:
        session_id = cookie.load(ctx.request.cookies.get(settings.session_cookie_name))

        session: Session | None = None
        if session_id is not None:
            session = await bounded(store.load(session_id), timeout=timeout, operation="session load")
        if session is None:
            session = Session.create()
            logger.debug("Created new session", extra={"had_cookie": session_id is not None})

        snapshot = session.to_dict()
        response = await call_next(replace(ctx, session=session))

        if session.invalidated:
            if not session.is_new:
                await bounded(store.delete(session.id), timeout=timeout, operation="session delete")
            cookie.expire(response)
            logger.debug("Destroyed session")
            return response

        if session.is_new or session.to_dict() != snapshot:
            await bounded(
                store.save(session, settings.session_ttl),
                timeout=timeout,
                operation="session save",
            )
        if session.is_new:
            cookie.attach(response, session.id)
        return response

    return resolve_session
