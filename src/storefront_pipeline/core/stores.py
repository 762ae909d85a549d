"""Session and user store collaborators.

Every store call made by a pipeline stage goes through ``bounded()`` so a
hung or failing backend surfaces as StoreUnavailable instead of blocking
the request or leaking a backend-specific exception.
"""

import asyncio
import copy
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from storefront_pipeline.core.context import Session
from storefront_pipeline.exceptions import PipelineError, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    """Key-value contract for session persistence. Expiry is the store's job."""

    async def load(self, session_id: str) -> Session | None: ...

    async def save(self, session: Session, ttl: int) -> None: ...

    async def delete(self, session_id: str) -> None: ...


class UserStore(Protocol):
    """Read-only user lookup used by the auth attachment stage."""

    async def find_by_id(self, user_id: str) -> Any | None: ...


async def bounded(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a store call under a timeout.

    Args:
        awaitable: The pending store call.
        timeout: Upper bound in seconds.
        operation: Human-readable name for logs and error messages.

    Returns:
        The store call's result.

    Raises:
        StoreUnavailable: If the call times out or raises anything other
            than a PipelineError (which is propagated unchanged).
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        logger.error(
            "Store call timed out",
            extra={"operation": operation, "timeout": timeout},
        )
        raise StoreUnavailable(f"{operation} timed out after {timeout}s") from exc
    except PipelineError:
        raise
    except Exception as exc:
        logger.error(
            "Store call failed",
            extra={"operation": operation, "error": repr(exc)},
        )
        raise StoreUnavailable(f"{operation} failed: {exc}") from exc


class InMemorySessionStore:
    """Process-local session store with TTL expiry.

    Stores serialized copies, so two requests bearing the same session id
    never share a Session object; the later save wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._records: dict[str, tuple[float, dict[str, Any]]] = {}

    async def load(self, session_id: str) -> Session | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        expires_at, payload = record
        if expires_at <= self._clock():
            del self._records[session_id]
            return None
        return Session.from_dict(copy.deepcopy(payload))

    async def save(self, session: Session, ttl: int) -> None:
        self._records[session.id] = (self._clock() + ttl, session.to_dict())

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records


class RedisSessionStore:
    """Session store backed by Redis, one JSON string per session.

    Args:
        redis_client: An ``redis.asyncio.Redis`` client.
        key_prefix: Prefix for session keys.
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "session:") -> None:
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _handle_redis_error(self, operation: str, session_id: str, error: Exception) -> None:
        """Centralized error handling for Redis operations."""
        logger.error(
            f"Redis error during {operation}",
            extra={"session_id": session_id, "error": repr(error)},
        )
        raise StoreUnavailable(f"Session store error during {operation}") from error

    async def load(self, session_id: str) -> Session | None:
        try:
            raw = await self.redis_client.get(self._key(session_id))
        except RedisError as e:
            self._handle_redis_error("session load", session_id, e)
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError):
            # A corrupted record behaves like an unknown id
            logger.warning("Discarding corrupted session record", extra={"session_id": session_id})
            return None

    async def save(self, session: Session, ttl: int) -> None:
        try:
            await self.redis_client.set(
                self._key(session.id), json.dumps(session.to_dict()), ex=ttl
            )
        except RedisError as e:
            self._handle_redis_error("session save", session.id, e)

    async def delete(self, session_id: str) -> None:
        try:
            await self.redis_client.delete(self._key(session_id))
        except RedisError as e:
            self._handle_redis_error("session delete", session_id, e)


class InMemoryUserStore:
    """User store over a plain mapping of id -> user object."""

    def __init__(self, users: Mapping[str, Any] | None = None) -> None:
        self._users: dict[str, Any] = dict(users or {})

    def add(self, user_id: str, user: Any) -> None:
        self._users[str(user_id)] = user

    def remove(self, user_id: str) -> None:
        self._users.pop(str(user_id), None)

    async def find_by_id(self, user_id: str) -> Any | None:
        return self._users.get(str(user_id))
