"""Per-request values threaded through the pipeline stages.

RequestContext is frozen: a stage that needs to change it passes an
updated copy (``dataclasses.replace``) to the next stage. The Session
it points to is the one mutable piece, shared by every stage of the
request and persisted by the session resolver once the response exists.
"""

import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from starlette.datastructures import FormData
from starlette.requests import Request


def new_session_id() -> str:
    """Return a fresh, unguessable session identifier."""
    return secrets.token_urlsafe(24)


def new_csrf_secret() -> str:
    """Return fresh per-session secret material for CSRF tokens."""
    return secrets.token_urlsafe(18)


@dataclass(eq=False)
class Session:
    """Server-side session record.

    Attributes:
        id: Opaque identifier carried by the signed session cookie.
        user_id: Id of the logged-in user, if any.
        is_logged_in: Whether the external auth flow marked this session as logged in.
        flash: Flash-message queue, keyed by category.
        csrf_secret: Secret material the CSRF token is derived from.
        data: Free-form fields owned by route handlers.
        is_new: True if the session was created during the current request.
        invalidated: True once log_out()/invalidate() was called.
    """

    id: str
    user_id: str | None = None
    is_logged_in: bool = False
    flash: dict[str, list[str]] = field(default_factory=dict)
    csrf_secret: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = False
    invalidated: bool = False

    @classmethod
    def create(cls) -> "Session":
        return cls(id=new_session_id(), is_new=True)

    def log_in(self, user_id: str) -> None:
        """Bind the session to a user and rotate the CSRF secret.

        Rotation makes any token issued before login unusable, so a
        pre-auth token cannot be replayed against the authenticated session.
        """
        self.user_id = str(user_id)
        self.is_logged_in = True
        self.rotate_csrf_secret()

    def log_out(self) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        """Mark the session for deletion at the end of the request."""
        self.invalidated = True

    def rotate_csrf_secret(self) -> None:
        self.csrf_secret = new_csrf_secret()

    def add_flash(self, category: str, message: str) -> None:
        self.flash.setdefault(category, []).append(message)

    def pop_flashes(self, category: str) -> list[str]:
        """Return and drain all queued messages of a category."""
        return self.flash.pop(category, [])

    def to_dict(self) -> dict[str, Any]:
        """Serialize the persistent fields (runtime flags are excluded)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "is_logged_in": self.is_logged_in,
            "flash": {k: list(v) for k, v in self.flash.items()},
            "csrf_secret": self.csrf_secret,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Session":
        return cls(
            id=payload["id"],
            user_id=payload.get("user_id"),
            is_logged_in=bool(payload.get("is_logged_in", False)),
            flash={k: list(v) for k, v in (payload.get("flash") or {}).items()},
            csrf_secret=payload.get("csrf_secret"),
            data=dict(payload.get("data") or {}),
        )


class UploadStatus(str, Enum):
    """Outcome of the upload filter for the designated form field."""

    ABSENT = "absent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class UploadedFile:
    """Descriptor of an accepted and stored upload."""

    original_name: str
    content_type: str
    storage_name: str
    path: Path
    size: int


@dataclass(frozen=True)
class UploadResult:
    """What happened to the upload field.

    ``file`` is set only when ``status`` is ACCEPTED. REJECTED means a
    file was submitted but dropped because of its declared type;
    ABSENT means no file was submitted at all.
    """

    status: UploadStatus = UploadStatus.ABSENT
    file: UploadedFile | None = None
    declared_type: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status is UploadStatus.ACCEPTED


NO_UPLOAD = UploadResult()

Rollback = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class RequestContext:
    """Immutable-at-entry request state passed from stage to stage.

    Attributes:
        request: The inbound Starlette request (body already consumed).
        form: Parsed form fields and files, empty for non-form bodies.
        session: The request's session handle, set by the session resolver.
        csrf_token: The expected CSRF token, set by the CSRF guard.
        upload: Result of the upload filter.
        user: The authenticated user, or None for anonymous requests.
        rollbacks: Undo actions run if the request fails. Shared by every
            copy made with ``replace``.
    """

    request: Request
    form: FormData = field(default_factory=FormData)
    session: Session | None = None
    csrf_token: str | None = None
    upload: UploadResult = NO_UPLOAD
    user: Any | None = None
    rollbacks: list[Rollback] = field(default_factory=list, compare=False, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session is not None and self.session.is_logged_in)

    @property
    def uploaded_file(self) -> UploadedFile | None:
        return self.upload.file

    def template_locals(self) -> dict[str, Any]:
        """Values every rendered view receives (read-only)."""
        return {
            "is_authenticated": self.is_authenticated,
            "csrf_token": self.csrf_token,
        }

    def on_failure(self, action: Rollback) -> None:
        """Register an undo action for a side effect this request already made."""
        self.rollbacks.append(action)
