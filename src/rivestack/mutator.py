"""Conflict-retrying mutations.

The API rejects a configuration change with HTTP 409 while the cluster
already runs a job instead of queueing it. Two resources on the same
cluster reconciled in one apply therefore regularly collide. Mutations
here absorb that with a fixed backoff until a deadline; any other error
propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .client import RivestackClient, is_conflict
from .models import ConfigureRequest, ConfigureResponse
from .waiter import Step, retry_until

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_conflict_retry(
    call: Callable[[], Awaitable[T]],
    *,
    description: str,
    backoff: float,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> T:
    """Invoke a mutating call, retrying only while it reports a conflict.

    Args:
        call: Zero-argument coroutine factory performing the mutation. It
            must be safe to repeat after a conflict (the remote did nothing).
        description: Human-readable target, used in errors and logs.
        backoff: Seconds to wait after each conflict.
        timeout: Give up after this many seconds of conflicts.
        cancel: Optional cancellation event.

    Returns:
        The result of the first successful call.

    Raises:
        WaitTimeoutError: If the target is still busy at the deadline. The
            last ConflictError is chained.
        APIError: Any non-conflict API error, unchanged.
    """
    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await call()

    def classify(result: T | None, error: BaseException | None) -> Step[T]:
        if error is None:
            return Step.done(result)
        if is_conflict(error):
            logger.info(
                "Cluster busy, retrying",
                extra={
                    "target": description,
                    "attempt": attempts,
                    "backoff_seconds": backoff,
                },
            )
            return Step.pending(error)
        return Step.fail(error)

    return await retry_until(
        attempt,
        classify,
        interval=backoff,
        timeout=timeout,
        description=f"{description} to accept changes",
        cancel=cancel,
    )


async def configure_with_retry(
    client: RivestackClient,
    cluster_id: int,
    req: ConfigureRequest,
    *,
    backoff: float,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> ConfigureResponse:
    """Submit a configure envelope, absorbing 409 conflicts."""
    logger.debug(
        "Submitting cluster configuration",
        extra={"cluster_id": cluster_id, "sections": req.describe()},
    )
    return await call_with_conflict_retry(
        lambda: client.configure_cluster(cluster_id, req),
        description=f"cluster {cluster_id}",
        backoff=backoff,
        timeout=timeout,
        cancel=cancel,
    )
