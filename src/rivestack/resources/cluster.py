"""HA PostgreSQL clusters.

Every cluster attribute except node_count forces replacement. Node count
changes are applied one node at a time: each add or remove is followed
by a wait for the cluster's jobs to drain before the next one is issued.
A failure stops the sequence where it is; the next apply computes the
remaining delta from the then-current count.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, ClassVar, TypeVar

from pydantic import Field, field_validator

from ..client import is_absent
from ..identifiers import parse_cluster_id
from ..models import Cluster, ClusterStatus, ProvisionClusterRequest
from ..mutator import call_with_conflict_retry
from ..waiter import wait_for_cluster_active, wait_for_cluster_deleted, wait_for_jobs
from .base import (
    PG_IDENTIFIER_MAX_LENGTH,
    PG_IDENTIFIER_PATTERN,
    ResourceError,
    ResourceHandler,
    ResourceModel,
    UnsupportedOperationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REGIONS = ("eu-central", "us-east")
SERVER_TYPES = ("starter", "growth", "scale")
DB_TYPES = ("ha", "core_solo")

MIN_NODES = 1
MAX_NODES = 3

# Blank is a real value for these: a recovered cluster has no error message
ALWAYS_REFRESHED = frozenset({"error_message", "health_status"})


def _one_of(field: str, value: str, allowed: tuple[str, ...]) -> str:
    if value not in allowed:
        raise ValueError(f"{field} must be one of {', '.join(allowed)}, got {value!r}")
    return value


class ClusterResource(ResourceModel):
    """A managed HA cluster.

    extensions and subscription_id only take effect at provisioning time
    and are never returned by the API, so they are carried over from the
    previous state on every read.
    """

    KEY_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "region",
        "server_type",
        "db_name",
        "db_type",
        "postgresql_version",
        "extensions",
        "subscription_id",
    )
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("node_count",)
    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset({"db_password", "connection_string"})

    # Inputs
    name: Annotated[str, Field(min_length=1)]
    region: str
    server_type: str = "starter"
    node_count: Annotated[int, Field(ge=MIN_NODES, le=MAX_NODES)] = 2
    db_name: Annotated[
        str,
        Field(min_length=1, max_length=PG_IDENTIFIER_MAX_LENGTH, pattern=PG_IDENTIFIER_PATTERN),
    ] = "appdb"
    db_type: str = "ha"
    postgresql_version: int = 17
    extensions: list[str] = Field(default_factory=list)
    subscription_id: int | None = None

    # Computed
    tenant_id: str = ""
    status: str = ""
    health_status: str = ""
    host: str = ""
    connection_string: str = ""
    db_user: str = ""
    db_password: str = ""
    error_message: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        return _one_of("region", v, REGIONS)

    @field_validator("server_type")
    @classmethod
    def validate_server_type(cls, v: str) -> str:
        return _one_of("server_type", v, SERVER_TYPES)

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        return _one_of("db_type", v, DB_TYPES)


def cluster_attributes(cluster: Cluster) -> dict[str, object]:
    """Attributes reported by the API for a cluster, keyed like ClusterResource."""
    return {
        "id": str(cluster.id),
        "name": cluster.name,
        "region": cluster.region,
        "server_type": cluster.server_type,
        "node_count": cluster.node_count,
        "db_name": cluster.db_name,
        "db_type": cluster.db_type,
        "postgresql_version": cluster.postgresql_version,
        "tenant_id": cluster.tenant_id,
        "status": cluster.status,
        "health_status": cluster.health_status,
        "host": cluster.host,
        "connection_string": cluster.connection_string,
        "db_user": cluster.db_user,
        "db_password": cluster.db_password,
        "error_message": cluster.error_message,
        "created_at": cluster.created_at.isoformat() if cluster.created_at else None,
        "updated_at": cluster.updated_at.isoformat() if cluster.updated_at else None,
    }


def _merge(resource: ClusterResource, cluster: Cluster) -> ClusterResource:
    # Blank values mean the API left the field out; keep what we know
    update = {
        k: v
        for k, v in cluster_attributes(cluster).items()
        if k in ALWAYS_REFRESHED or v not in ("", 0, None)
    }
    return resource.model_copy(update=update)


class ClusterHandler(ResourceHandler[ClusterResource]):
    kind = "cluster"
    model = ClusterResource

    async def create(self, plan: ClusterResource) -> ClusterResource:
        req = ProvisionClusterRequest(
            name=plan.name,
            region=plan.region,
            db_name=plan.db_name,
            db_type=plan.db_type,
            server_type=plan.server_type,
            node_count=plan.node_count,
            postgresql_version=plan.postgresql_version,
            extensions=plan.extensions or None,
            subscription_id=plan.subscription_id,
        )
        logger.info("Creating cluster", extra={"cluster_name": plan.name, "region": plan.region})

        try:
            provisioned = await self._client.provision_cluster(req)
        except Exception as e:
            raise ResourceError(f"Could not create cluster {plan.name!r}: {e}") from e

        cluster_id = provisioned.id
        try:
            cluster = await wait_for_cluster_active(
                self._client,
                cluster_id,
                interval=self._timeouts.active_poll_interval,
                timeout=self._timeouts.active_timeout,
                cancel=self._cancel,
            )
        except Exception as e:
            # The cluster exists remotely; hand back enough to delete it later
            partial = plan.model_copy(
                update={
                    "id": str(cluster_id),
                    "tenant_id": provisioned.tenant_id,
                    "status": provisioned.status or ClusterStatus.PROVISIONING.value,
                }
            )
            raise ResourceError(
                f"Cluster {cluster_id} failed to become active: {e}", partial=partial
            ) from e

        logger.info(
            "Cluster active",
            extra={"cluster_id": cluster_id, "tenant_id": cluster.tenant_id, "host": cluster.host},
        )
        return _merge(plan.model_copy(update={"id": str(cluster_id)}), cluster)

    async def read(self, state: ClusterResource) -> ClusterResource | None:
        cluster_id = parse_cluster_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        if cluster is None or cluster.status == ClusterStatus.DELETED.value:
            self._gone("Cluster not found, removing from state", cluster_id=cluster_id)
            return None

        return _merge(state, cluster)

    async def update(self, plan: ClusterResource, state: ClusterResource) -> ClusterResource:
        diff = state.diff(plan)
        if diff.replace:
            raise UnsupportedOperationError(
                f"cluster attributes {', '.join(diff.replace)} cannot be updated in-place; "
                "the cluster must be replaced"
            )

        cluster_id = parse_cluster_id(state.id or "")
        if plan.node_count != state.node_count:
            await self._scale(cluster_id, plan.node_count)

        try:
            cluster = await self._client.get_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id} after update: {e}") from e

        return _merge(state.model_copy(update={"node_count": plan.node_count}), cluster)

    async def _scale(self, cluster_id: int, desired: int) -> None:
        """Move the cluster to the desired node count one node at a time.

        Raises:
            ResourceError: On the first failed step, naming the node count
                reached so far.
        """
        try:
            cluster = await self._client.get_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(
                f"Could not read cluster {cluster_id} before scaling: {e}"
            ) from e

        start = current = cluster.node_count
        logger.info(
            "Scaling cluster nodes",
            extra={"cluster_id": cluster_id, "from": start, "to": desired},
        )

        try:
            while current < desired:
                added = await self._retry_busy(cluster_id, self._client.add_node, cluster_id)
                logger.info(
                    "Node added, waiting for job",
                    extra={
                        "cluster_id": cluster_id,
                        "node_name": added.new_node_name,
                        "job_id": added.job_id,
                    },
                )
                await self._wait_for_scale_job(cluster_id)
                current += 1

            while current > desired:
                name = cluster.node_name(current)
                removed = await self._retry_busy(
                    cluster_id, self._client.remove_node, cluster_id, name
                )
                logger.info(
                    "Node removed, waiting for job",
                    extra={"cluster_id": cluster_id, "node_name": name, "job_id": removed.job_id},
                )
                await self._wait_for_scale_job(cluster_id)
                current -= 1
        except Exception as e:
            raise ResourceError(
                f"Could not scale cluster {cluster_id} from {start} to {desired} nodes "
                f"(stopped at {current}): {e}"
            ) from e

    async def _retry_busy(
        self, cluster_id: int, call: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        return await call_with_conflict_retry(
            lambda: call(*args),
            description=f"cluster {cluster_id}",
            backoff=self._timeouts.conflict_backoff,
            timeout=self._timeouts.conflict_timeout,
            cancel=self._cancel,
        )

    async def _wait_for_scale_job(self, cluster_id: int) -> None:
        await wait_for_jobs(
            self._client,
            cluster_id,
            interval=self._timeouts.job_poll_interval,
            timeout=self._timeouts.scale_timeout,
            cancel=self._cancel,
        )

    async def delete(self, state: ClusterResource) -> list[str]:
        cluster_id = parse_cluster_id(state.id or "")
        logger.info("Deleting cluster", extra={"cluster_id": cluster_id})

        try:
            await self._client.delete_cluster(cluster_id)
        except Exception as e:
            if is_absent(e):
                logger.info("Cluster already gone", extra={"cluster_id": cluster_id})
                return []
            raise ResourceError(f"Could not delete cluster {cluster_id}: {e}") from e

        try:
            await wait_for_cluster_deleted(
                self._client,
                cluster_id,
                interval=self._timeouts.delete_poll_interval,
                timeout=self._timeouts.delete_timeout,
                cancel=self._cancel,
            )
        except Exception as e:
            raise ResourceError(f"Cluster {cluster_id} did not finish deleting: {e}") from e
        return []

    def import_state(self, raw_id: str) -> ClusterResource:
        cluster_id = parse_cluster_id(raw_id)
        # Everything but the id comes from the follow-up read
        return ClusterResource.model_construct(id=str(cluster_id), name="", region="")
