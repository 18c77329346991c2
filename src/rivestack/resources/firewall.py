"""Cluster firewall allowlist.

The desired set always replaces the remote allowlist wholesale; no
add/remove diff is computed. Deleting resets the allowlist to allow all
traffic rather than to an empty list, which the API would not treat as
"deny all".
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field, field_validator

from ..identifiers import parse_cluster_id
from ..models import ConfigureRequest
from .base import ResourceError, ResourceHandler, ResourceModel

logger = logging.getLogger(__name__)

ALLOW_ALL = "0.0.0.0/0"


class FirewallResource(ResourceModel):
    """Source IP/CIDR allowlist of a cluster."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id",)
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("source_ips",)

    cluster_id: Annotated[int, Field(gt=0)]
    source_ips: Annotated[list[str], Field(min_length=1)]

    @field_validator("source_ips")
    @classmethod
    def normalise_ips(cls, v: list[str]) -> list[str]:
        ips = sorted({ip.strip() for ip in v if ip.strip()})
        if not ips:
            raise ValueError("source_ips must contain at least one non-blank entry")
        return ips


class FirewallHandler(ResourceHandler[FirewallResource]):
    kind = "firewall"
    model = FirewallResource

    async def _replace(self, cluster_id: int, source_ips: list[str]) -> None:
        await self._configure(
            cluster_id, ConfigureRequest(source_ips=source_ips, replace_ips=True)
        )

    async def create(self, plan: FirewallResource) -> FirewallResource:
        cluster_id = plan.cluster_id
        logger.info(
            "Setting cluster firewall",
            extra={"cluster_id": cluster_id, "source_ip_count": len(plan.source_ips)},
        )
        try:
            await self._replace(cluster_id, plan.source_ips)
        except Exception as e:
            raise ResourceError(f"Could not set firewall rules on cluster {cluster_id}: {e}") from e
        return plan.model_copy(update={"id": str(cluster_id)})

    async def read(self, state: FirewallResource) -> FirewallResource | None:
        cluster_id = parse_cluster_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        if cluster is None:
            self._gone("Cluster not found, removing firewall from state", cluster_id=cluster_id)
            return None

        # The remote list may be empty; model_construct skips the non-empty check
        return FirewallResource.model_construct(
            id=state.id,
            cluster_id=cluster_id,
            source_ips=sorted(cluster.source_ip_set()),
        )

    async def update(self, plan: FirewallResource, state: FirewallResource) -> FirewallResource:
        cluster_id = plan.cluster_id
        logger.info(
            "Replacing cluster firewall",
            extra={"cluster_id": cluster_id, "source_ip_count": len(plan.source_ips)},
        )
        try:
            await self._replace(cluster_id, plan.source_ips)
        except Exception as e:
            raise ResourceError(
                f"Could not update firewall rules on cluster {cluster_id}: {e}"
            ) from e
        return plan.model_copy(update={"id": state.id})

    async def delete(self, state: FirewallResource) -> list[str]:
        cluster_id = parse_cluster_id(state.id or "")
        logger.info("Resetting cluster firewall to allow all", extra={"cluster_id": cluster_id})
        try:
            await self._configure_delete(
                cluster_id, ConfigureRequest(source_ips=[ALLOW_ALL], replace_ips=True)
            )
        except Exception as e:
            raise ResourceError(
                f"Could not reset firewall rules on cluster {cluster_id}: {e}"
            ) from e
        return []

    def import_state(self, raw_id: str) -> FirewallResource:
        cluster_id = parse_cluster_id(raw_id)
        # source_ips is unknown until the follow-up read
        return FirewallResource.model_construct(
            id=str(cluster_id), cluster_id=cluster_id, source_ips=[]
        )
