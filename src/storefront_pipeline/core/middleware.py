"""Stage chain primitives for the request pipeline.

A stage is an async callable ``stage(ctx, call_next)``. It either returns
``await call_next(ctx)`` (optionally with an updated context), returns a
response of its own, or raises to short-circuit to the error boundary.
"""

import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from storefront_pipeline.core.context import RequestContext
from storefront_pipeline.exceptions import PipelineConfigurationError

Handler = Callable[[RequestContext], Awaitable[Any]]
Stage = Callable[[RequestContext, Handler], Awaitable[Any]]


def normalize_stages(
    stages_attr: Any,
    *,
    source: str = "",
) -> tuple[Stage, ...]:
    """Check user-supplied stages and return them as a tuple.

    ``None`` means no stages. A single stage may be passed without a list.
    Each entry must be an async callable taking ``(ctx, call_next)``;
    sync callables are refused up front because the chain awaits them.

    Args:
        stages_attr: What the caller passed in.
        source: Prefix naming the caller in error messages.

    Raises:
        PipelineConfigurationError: On anything that is not a valid stage.
    """
    prefix = f"{source}: " if source else ""
    if stages_attr is None:
        return ()
    if callable(stages_attr) and not isinstance(stages_attr, (list, tuple)):
        stages: tuple[Any, ...] = (stages_attr,)
    elif isinstance(stages_attr, (list, tuple)):
        stages = tuple(stages_attr)
    else:
        raise PipelineConfigurationError(
            f"{prefix}stages must be a list or callable, got {type(stages_attr).__name__}"
        )

    for i, stage in enumerate(stages):
        if not callable(stage):
            raise PipelineConfigurationError(f"{prefix}non-callable stage at index {i}")
        if not inspect.iscoroutinefunction(stage) and not inspect.iscoroutinefunction(
            getattr(stage, "__call__", None)
        ):
            raise PipelineConfigurationError(
                f"{prefix}stage at index {i} must be async, "
                f"got sync callable {getattr(stage, '__name__', type(stage).__name__)}"
            )
    return stages


def build_middleware_chain(
    handler: Handler,
    stages: Sequence[Stage],
) -> Handler:
    """Compose pipeline stages around the route-forwarding handler.

    ``stages[0]`` sees the request first and the response last. A stage
    that raises or returns early stops every stage after it from running.
    """
    if not stages:
        return handler

    chain = handler
    for stage in reversed(stages):
        chain = _wrap_with_stage(chain, stage)
    return chain


def _wrap_with_stage(next_handler: Handler, stage: Stage) -> Handler:
    async def wrapped(ctx: RequestContext) -> Any:
        async def call_next(next_ctx: RequestContext) -> Any:
            return await next_handler(next_ctx)

        return await stage(ctx, call_next)

    # Shows up in tracebacks as e.g. "guard_csrf_wrapping_filter_upload"
    wrapped.__name__ = (
        f"{getattr(stage, '__name__', 'stage')}_wrapping_"
        f"{getattr(next_handler, '__name__', 'handler')}"
    )
    wrapped.__qualname__ = wrapped.__name__

    return wrapped
