"""CSRF guard stage.

The expected token is an HMAC of the session's CSRF secret and the
session id, so it is stable for the lifetime of the secret and useless
against any other session.
"""

import hmac
import logging
from dataclasses import replace
from typing import Any

from itsdangerous import Signer
from starlette.datastructures import FormData
from starlette.requests import Request

from storefront_pipeline.config import PipelineSettings
from storefront_pipeline.core.context import RequestContext, Session
from storefront_pipeline.core.middleware import Handler, Stage
from storefront_pipeline.exceptions import InvalidCsrfToken, PipelineConfigurationError

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

TOKEN_HEADERS: tuple[str, ...] = ("csrf-token", "xsrf-token", "x-csrf-token", "x-xsrf-token")


class CsrfTokens:
    """Derives and checks per-session CSRF tokens."""

    def __init__(self, settings: PipelineSettings) -> None:
        self._signer = Signer(settings.secret_key.get_secret_value(), salt="storefront.csrf")

    def expected(self, session: Session) -> str:
        """Return the session's current token, creating its secret on first use."""
        if not session.csrf_secret:
            session.rotate_csrf_secret()
        return self._signer.get_signature(f"{session.id}.{session.csrf_secret}").decode()

    def matches(self, session: Session, submitted: str | None) -> bool:
        if not submitted:
            return False
        return hmac.compare_digest(submitted.encode(), self.expected(session).encode())


def submitted_token(request: Request, form: FormData, field_name: str = "_csrf") -> str | None:
    """Return the token the client submitted, looking at body, query, then headers."""
    value = form.get(field_name)
    if isinstance(value, str) and value:
        return value
    value = request.query_params.get(field_name)
    if value:
        return value
    for header in TOKEN_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


def csrf_guard(tokens: CsrfTokens, settings: PipelineSettings) -> Stage:
    """Create the CSRF guard stage.

    Exposes the expected token on ``ctx.csrf_token`` for every request and
    rejects state-changing requests (any method except GET, HEAD, OPTIONS)
    whose submitted token does not match.

    Raises:
        InvalidCsrfToken: From the returned stage, before any later stage runs.
        PipelineConfigurationError: From the returned stage, if no session
            resolver ran before it.
    """

    async def guard_csrf(ctx: RequestContext, call_next: Handler) -> Any:
        session = ctx.session
        if session is None:
            raise PipelineConfigurationError("csrf_guard must run after session_resolver")

        expected = tokens.expected(session)
        request = ctx.request
        if request.method not in SAFE_METHODS:
            submitted = submitted_token(request, ctx.form, settings.csrf_field_name)
            if not tokens.matches(session, submitted):
                logger.info(
                    "Rejected request with invalid CSRF token",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "token_present": submitted is not None,
                    },
                )
                raise InvalidCsrfToken(
                    f"invalid csrf token for {request.method} {request.url.path}"
                )

        return await call_next(replace(ctx, csrf_token=expected))

    return guard_csrf
