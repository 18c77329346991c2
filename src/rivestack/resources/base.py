"""Shared machinery for resource handlers.

A handler converges one kind of remote entity to a desired attribute
model. It exposes create/read/update/delete plus import, and is built
from three primitives: the conflict-retrying configure call, the job
poller and a full cluster read scanned for the entity's key.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel

from ..client import RivestackClient, is_absent
from ..config import Timeouts
from ..models import Cluster, ConfigureRequest, ConfigureResponse
from ..mutator import configure_with_retry
from ..waiter import wait_for_jobs

logger = logging.getLogger(__name__)

PG_IDENTIFIER_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"
PG_IDENTIFIER_MAX_LENGTH = 63

REDACTED = "(sensitive)"


class ResourceError(Exception):
    """An operation on a resource failed.

    The message names the operation and the entity; the underlying error
    (APIError, JobFailedError, WaitTimeoutError, ...) is chained as the
    cause. When a create got far enough to leave a remote object behind,
    partial holds what is known about it.
    """

    def __init__(self, message: str, partial: ResourceModel | None = None) -> None:
        super().__init__(message)
        self.partial = partial


class UnsupportedOperationError(Exception):
    """The operation is not defined for this resource kind.

    Raised for in-place updates of kinds whose attributes all force
    replacement. Reaching it means the caller skipped replacement.
    """

    pass


@dataclass
class ResourceDiff:
    """Attribute differences between stored and desired state."""

    replace: list[str] = field(default_factory=list)
    update: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.replace and not self.update


class ResourceModel(BaseModel):
    """Attributes of one managed resource.

    KEY_FIELDS force replacement when changed, MUTABLE_FIELDS can be
    updated in place. Fields in OPTIONAL_COMPUTED may be omitted from the
    desired state, in which case whatever the remote chose is accepted.
    """

    model_config = {"extra": "ignore"}

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ()
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ()
    OPTIONAL_COMPUTED: ClassVar[frozenset[str]] = frozenset()
    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset()

    id: str | None = None

    @classmethod
    def input_fields(cls) -> tuple[str, ...]:
        return cls.KEY_FIELDS + cls.MUTABLE_FIELDS

    @classmethod
    def from_attributes(cls, data: dict[str, Any]) -> ResourceModel:
        """Rebuild stored state without re-validating it.

        Stored attributes were produced by this code and may hold values
        that desired input could not (an empty firewall list after an
        import, a partial cluster).
        """
        known = {k: v for k, v in data.items() if k in cls.model_fields}
        return cls.model_construct(**known)

    def diff(self, desired: ResourceModel) -> ResourceDiff:
        """Compare this (stored) state against a desired model."""
        result = ResourceDiff()
        for name in self.input_fields():
            wanted = getattr(desired, name)
            if wanted is None and name in self.OPTIONAL_COMPUTED:
                continue
            if _normalise(getattr(self, name)) == _normalise(wanted):
                continue
            if name in self.KEY_FIELDS:
                result.replace.append(name)
            else:
                result.update.append(name)
        return result

    def to_attributes(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def redacted(self) -> dict[str, Any]:
        """Attributes safe for display and logs."""
        data = self.to_attributes()
        for name in self.SENSITIVE_FIELDS:
            if data.get(name):
                data[name] = REDACTED
        return data


def _normalise(value: Any) -> Any:
    if isinstance(value, list):
        return sorted(value)
    return value


ModelT = TypeVar("ModelT", bound=ResourceModel)


class ResourceHandler(ABC, Generic[ModelT]):
    """Create/read/update/delete/import for one resource kind."""

    kind: ClassVar[str]
    model: ClassVar[type[ResourceModel]]

    def __init__(
        self,
        client: RivestackClient,
        timeouts: Timeouts,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._timeouts = timeouts
        self._cancel = cancel

    @abstractmethod
    async def create(self, plan: ModelT) -> ModelT:
        """Create the remote entity and return the resulting state."""

    @abstractmethod
    async def read(self, state: ModelT) -> ModelT | None:
        """Refresh state; None means the entity no longer exists."""

    @abstractmethod
    async def update(self, plan: ModelT, state: ModelT) -> ModelT:
        """Apply in-place changes and return the resulting state."""

    @abstractmethod
    async def delete(self, state: ModelT) -> list[str]:
        """Delete the remote entity, returning operator-facing warnings."""

    @abstractmethod
    def import_state(self, raw_id: str) -> ModelT:
        """Seed a state model from a composite identifier.

        Only parses and validates; no remote call is made. The caller
        follows up with read() to fill in the remaining attributes.
        """

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    def _unsupported_update(self) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{self.kind} attributes cannot be updated in-place; the resource must be replaced"
        )

    async def _configure(self, cluster_id: int, req: ConfigureRequest) -> ConfigureResponse:
        """Submit a configure envelope and wait for the job it spawned.

        A zero job id means the change was applied synchronously.
        """
        resp = await configure_with_retry(
            self._client,
            cluster_id,
            req,
            backoff=self._timeouts.conflict_backoff,
            timeout=self._timeouts.conflict_timeout,
            cancel=self._cancel,
        )
        if resp.job_id > 0:
            logger.info(
                "Waiting for configuration job",
                extra={"cluster_id": cluster_id, "job_id": resp.job_id, "kind": self.kind},
            )
            await wait_for_jobs(
                self._client,
                cluster_id,
                interval=self._timeouts.job_poll_interval,
                timeout=self._timeouts.job_timeout,
                cancel=self._cancel,
            )
        return resp

    async def _configure_delete(self, cluster_id: int, req: ConfigureRequest) -> bool:
        """Submit a deletion envelope.

        Returns:
            False when the cluster is already gone (nothing to delete).
        """
        try:
            await self._configure(cluster_id, req)
        except Exception as e:
            if is_absent(e):
                logger.info(
                    "Cluster already gone, treating delete as done",
                    extra={"cluster_id": cluster_id, "kind": self.kind},
                )
                return False
            raise
        return True

    async def _read_cluster(self, cluster_id: int) -> Cluster | None:
        """Read the full cluster; None when it is not found or gone."""
        try:
            return await self._client.get_cluster(cluster_id)
        except Exception as e:
            if is_absent(e):
                return None
            raise

    async def _fallback_cluster(self, cluster_id: int) -> Cluster | None:
        """Best-effort cluster read used to resolve values after a create.

        The create already succeeded at this point, so a failing read only
        degrades the resolved value and is logged instead of raised.
        """
        try:
            return await self._client.get_cluster(cluster_id)
        except Exception as e:
            logger.warning(
                "Could not re-read cluster to resolve created values",
                extra={"cluster_id": cluster_id, "kind": self.kind, "error": str(e)},
            )
            return None

    def _gone(self, message: str, **context: Any) -> None:
        logger.warning(message, extra={"kind": self.kind, **context})
