"""Bounded waits against the asynchronous Rivestack job model.

Every wait in the provider is an instance of one primitive, retry_until():
call an operation, let a classifier decide whether the outcome is final
(success or failure) or still pending, sleep, and try again until a
deadline. The sleep races an optional cancellation event so an operator
interrupt is honoured within one poll interval at most.

The cluster and job pollers below are parameterizations of it; the
conflict-retrying configure call in mutator.py is another.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .client import RivestackClient, is_absent
from .models import Cluster, ClusterStatus, Job, JobStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

KNOWN_JOB_STATUSES = frozenset(s.value for s in JobStatus)

# Statuses a cluster may report while its deletion window is open
DELETE_PENDING_STATUSES = frozenset(
    {
        ClusterStatus.PROVISIONING.value,
        ClusterStatus.ACTIVE.value,
        ClusterStatus.FAILED.value,
        "deleting",
    }
)


class WaitError(Exception):
    """Base for failures of a bounded wait."""


class WaitTimeoutError(WaitError):
    """The deadline elapsed before a terminal condition was reached.

    Distinct from a remote failure: the remote operation may still be
    running and a later attempt can succeed.
    """

    def __init__(
        self,
        description: str,
        elapsed_seconds: float,
        last_error: BaseException | None = None,
    ) -> None:
        self.description = description
        self.elapsed_seconds = elapsed_seconds
        self.last_error = last_error
        msg = f"timeout waiting for {description} after {_format_duration(elapsed_seconds)}"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)


class WaitCancelledError(WaitError):
    """External cancellation fired while waiting."""

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"cancelled while waiting for {description}")


class RemoteFailureError(WaitError):
    """The remote system reported that the operation failed."""


class JobFailedError(RemoteFailureError):
    """A polled cluster job reported failed status."""

    def __init__(self, cluster_id: int, job: Job) -> None:
        self.cluster_id = cluster_id
        self.job_id = job.id
        self.job_type = job.job_type
        self.remote_message = job.error_message
        super().__init__(
            f"cluster {cluster_id} job {job.id} ({job.job_type}) failed: {job.error_message}"
        )


class ClusterFailedError(RemoteFailureError):
    """The cluster transitioned to failed status."""

    def __init__(self, cluster_id: int, remote_message: str) -> None:
        self.cluster_id = cluster_id
        self.remote_message = remote_message
        super().__init__(f"cluster {cluster_id} provisioning failed: {remote_message}")


class UnexpectedStatusError(WaitError):
    """The remote reported a status this client does not know."""

    def __init__(self, what: str, status: str) -> None:
        self.status = status
        super().__init__(f"unexpected {what} status: {status!r}")


def _format_duration(seconds: float) -> str:
    if seconds >= 60:
        minutes, secs = divmod(int(round(seconds)), 60)
        return f"{minutes}m{secs}s"
    return f"{seconds:.1f}s"


@dataclass(frozen=True)
class Step(Generic[R]):
    """Verdict of a classifier for one attempt.

    Use the constructors: Step.done(value), Step.pending(), Step.fail(exc).
    """

    kind: str
    value: Any = None
    error: BaseException | None = None

    @classmethod
    def done(cls, value: R = None) -> Step[R]:  # type: ignore[assignment]
        return cls("done", value=value)

    @classmethod
    def pending(cls, last_error: BaseException | None = None) -> Step[R]:
        return cls("pending", error=last_error)

    @classmethod
    def fail(cls, error: BaseException) -> Step[R]:
        return cls("fail", error=error)


Classifier = Callable[[T | None, BaseException | None], Step[R]]


def _check_cancelled(cancel: asyncio.Event | None, description: str) -> None:
    if cancel is not None and cancel.is_set():
        raise WaitCancelledError(description)


async def sleep_or_cancel(
    seconds: float, cancel: asyncio.Event | None, description: str
) -> None:
    """Sleep for the given time unless the cancellation event fires first.

    Raises:
        WaitCancelledError: If cancel is set before or during the sleep.
    """
    _check_cancelled(cancel, description)
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise WaitCancelledError(description)


async def retry_until(
    attempt: Callable[[], Awaitable[T]],
    classify: Classifier[T, R],
    *,
    interval: float,
    timeout: float,
    description: str,
    cancel: asyncio.Event | None = None,
) -> R:
    """Repeat an operation until the classifier reports a final outcome.

    Args:
        attempt: Zero-argument coroutine factory, invoked once per round.
        classify: Receives (result, None) on success or (None, error) when
            attempt raised, and returns Step.done / Step.pending / Step.fail.
        interval: Seconds to sleep between rounds.
        timeout: Deadline in seconds measured from the first attempt.
        description: What is being waited for, used in errors and logs.
        cancel: Optional event; when set, the wait aborts.

    Returns:
        The value carried by Step.done.

    Raises:
        WaitTimeoutError: If the deadline elapses while still pending. The
            last pending error, if any, is chained and attached.
        WaitCancelledError: If cancel fires.
        BaseException: Whatever the classifier passes to Step.fail.
    """
    start = time.monotonic()
    deadline = start + timeout
    rounds = 0

    while True:
        _check_cancelled(cancel, description)
        rounds += 1

        result: T | None = None
        error: BaseException | None = None
        try:
            result = await attempt()
        except Exception as e:
            error = e

        step = classify(result, error)

        if step.kind == "done":
            return step.value
        if step.kind == "fail":
            assert step.error is not None, "Step.fail requires an error"
            raise step.error

        now = time.monotonic()
        if now >= deadline:
            elapsed = now - start
            logger.warning(
                "Wait deadline exceeded",
                extra={
                    "waiting_for": description,
                    "elapsed_seconds": round(elapsed, 3),
                    "rounds": rounds,
                },
            )
            raise WaitTimeoutError(description, elapsed, step.error) from step.error

        logger.debug(
            "Still waiting",
            extra={"waiting_for": description, "round": rounds, "interval_seconds": interval},
        )
        await sleep_or_cancel(min(interval, deadline - now), cancel, description)


# =============================================================================
# Cluster lifecycle pollers
# =============================================================================


async def wait_for_cluster_active(
    client: RivestackClient,
    cluster_id: int,
    *,
    interval: float,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> Cluster:
    """Poll a cluster until it reports active.

    Raises:
        ClusterFailedError: If the cluster reports failed.
        UnexpectedStatusError: On any status other than provisioning/active/failed.
        WaitTimeoutError: If still provisioning at the deadline.
        APIError: If a status read fails.
    """

    def classify(cluster: Cluster | None, error: BaseException | None) -> Step[Cluster]:
        if error is not None:
            return Step.fail(error)
        assert cluster is not None
        if cluster.status == ClusterStatus.ACTIVE.value:
            return Step.done(cluster)
        if cluster.status == ClusterStatus.FAILED.value:
            return Step.fail(ClusterFailedError(cluster_id, cluster.error_message))
        if cluster.status == ClusterStatus.PROVISIONING.value:
            return Step.pending()
        return Step.fail(UnexpectedStatusError("cluster", cluster.status))

    logger.info("Waiting for cluster to become active", extra={"cluster_id": cluster_id})
    return await retry_until(
        lambda: client.get_cluster(cluster_id),
        classify,
        interval=interval,
        timeout=timeout,
        description=f"cluster {cluster_id} to become active",
        cancel=cancel,
    )


async def wait_for_cluster_deleted(
    client: RivestackClient,
    cluster_id: int,
    *,
    interval: float,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> None:
    """Poll a cluster until it is gone or reports deleted.

    Not found and gone responses count as success.
    """

    def classify(cluster: Cluster | None, error: BaseException | None) -> Step[None]:
        if error is not None:
            if is_absent(error):
                return Step.done(None)
            return Step.fail(error)
        assert cluster is not None
        if cluster.status == ClusterStatus.DELETED.value:
            return Step.done(None)
        if cluster.status in DELETE_PENDING_STATUSES:
            return Step.pending()
        return Step.fail(UnexpectedStatusError("cluster", cluster.status))

    logger.info("Waiting for cluster deletion", extra={"cluster_id": cluster_id})
    await retry_until(
        lambda: client.get_cluster(cluster_id),
        classify,
        interval=interval,
        timeout=timeout,
        description=f"cluster {cluster_id} to be deleted",
        cancel=cancel,
    )


# =============================================================================
# Job poller
# =============================================================================


async def wait_for_jobs(
    client: RivestackClient,
    cluster_id: int,
    *,
    interval: float,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> None:
    """Poll the cluster's active jobs until none remain.

    Raises:
        JobFailedError: As soon as any polled job reports failed.
        UnexpectedStatusError: If a job reports an unknown status.
        WaitTimeoutError: If jobs are still active at the deadline.
    """

    def classify(jobs: list[Job] | None, error: BaseException | None) -> Step[None]:
        if error is not None:
            return Step.fail(error)
        if not jobs:
            return Step.done(None)
        for job in jobs:
            if job.failed:
                return Step.fail(JobFailedError(cluster_id, job))
            if job.status not in KNOWN_JOB_STATUSES:
                return Step.fail(UnexpectedStatusError("job", job.status))
        return Step.pending()

    await retry_until(
        lambda: client.list_active_jobs(cluster_id),
        classify,
        interval=interval,
        timeout=timeout,
        description=f"cluster {cluster_id} jobs to complete",
        cancel=cancel,
    )
