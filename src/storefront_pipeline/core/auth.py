"""Auth attachment stage.

Attaches the session's user to the context without requiring one. A
session pointing at a user that no longer exists is treated as
anonymous and left as is.
"""

import logging
from dataclasses import replace
from typing import Any

from storefront_pipeline.config import PipelineSettings
from storefront_pipeline.core.context import RequestContext
from storefront_pipeline.core.middleware import Handler, Stage
from storefront_pipeline.core.stores import UserStore, bounded

logger = logging.getLogger(__name__)


def auth_attachment(users: UserStore, settings: PipelineSettings) -> Stage:
    """Create the auth attachment stage.

    Raises:
        StoreUnavailable: From the returned stage, when the user lookup
            fails or exceeds ``settings.store_timeout``.
    """

    async def attach_user(ctx: RequestContext, call_next: Handler) -> Any:
        session = ctx.session
        if session is None or session.user_id is None:
            return await call_next(ctx)

        user = await bounded(
            users.find_by_id(session.user_id),
            timeout=settings.store_timeout,
            operation="user lookup",
        )
        if user is None:
            logger.info(
                "Session references unknown user; continuing anonymously",
                extra={"user_id": session.user_id},
            )
            return await call_next(ctx)

        return await call_next(replace(ctx, user=user))

    return attach_user
