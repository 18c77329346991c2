"""Cluster backup configuration.

Exactly one per cluster, so it is never created or destroyed remotely:
create and update both PUT the desired settings, and delete disables
backups again.
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field

from ..client import is_absent
from ..identifiers import parse_cluster_id
from ..models import BackupConfig, UpdateBackupConfigRequest
from ..mutator import call_with_conflict_retry
from .base import ResourceError, ResourceHandler, ResourceModel

logger = logging.getLogger(__name__)


class BackupConfigResource(ResourceModel):
    """Backup settings. Schedule and retention default to the remote values."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id",)
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("enabled", "schedule", "retention_full")
    OPTIONAL_COMPUTED: ClassVar[frozenset[str]] = frozenset({"schedule", "retention_full"})

    cluster_id: Annotated[int, Field(gt=0)]
    enabled: bool = True
    schedule: str | None = None
    retention_full: Annotated[int | None, Field(ge=1)] = None
    updated_at: str | None = None


def _from_remote(resource: BackupConfigResource, remote: BackupConfig) -> BackupConfigResource:
    return resource.model_copy(
        update={
            "enabled": remote.enabled,
            "schedule": remote.schedule or None,
            "retention_full": remote.retention_full or None,
            "updated_at": remote.updated_at.isoformat() if remote.updated_at else None,
        }
    )


class BackupConfigHandler(ResourceHandler[BackupConfigResource]):
    kind = "backup_config"
    model = BackupConfigResource

    async def _put(self, cluster_id: int, req: UpdateBackupConfigRequest) -> BackupConfig:
        return await call_with_conflict_retry(
            lambda: self._client.update_backup_config(cluster_id, req),
            description=f"cluster {cluster_id} backup config",
            backoff=self._timeouts.conflict_backoff,
            timeout=self._timeouts.conflict_timeout,
            cancel=self._cancel,
        )

    def _request(self, plan: BackupConfigResource) -> UpdateBackupConfigRequest:
        return UpdateBackupConfigRequest(
            enabled=plan.enabled,
            schedule=plan.schedule or None,
            retention_full=plan.retention_full,
        )

    async def create(self, plan: BackupConfigResource) -> BackupConfigResource:
        cluster_id = plan.cluster_id
        logger.info(
            "Configuring cluster backups",
            extra={"cluster_id": cluster_id, "enabled": plan.enabled, "schedule": plan.schedule},
        )
        try:
            remote = await self._put(cluster_id, self._request(plan))
        except Exception as e:
            raise ResourceError(
                f"Could not configure backups on cluster {cluster_id}: {e}"
            ) from e
        return _from_remote(plan.model_copy(update={"id": str(cluster_id)}), remote)

    async def read(self, state: BackupConfigResource) -> BackupConfigResource | None:
        cluster_id = parse_cluster_id(state.id or "")
        try:
            remote = await self._client.get_backup_config(cluster_id)
        except Exception as e:
            if is_absent(e):
                self._gone(
                    "Backup config not found, removing from state", cluster_id=cluster_id
                )
                return None
            raise ResourceError(
                f"Could not read backup config of cluster {cluster_id}: {e}"
            ) from e
        return _from_remote(state.model_copy(update={"cluster_id": cluster_id}), remote)

    async def update(
        self, plan: BackupConfigResource, state: BackupConfigResource
    ) -> BackupConfigResource:
        cluster_id = plan.cluster_id
        logger.info(
            "Updating cluster backups",
            extra={"cluster_id": cluster_id, "enabled": plan.enabled, "schedule": plan.schedule},
        )
        try:
            remote = await self._put(cluster_id, self._request(plan))
        except Exception as e:
            raise ResourceError(f"Could not update backups on cluster {cluster_id}: {e}") from e
        return _from_remote(plan.model_copy(update={"id": state.id}), remote)

    async def delete(self, state: BackupConfigResource) -> list[str]:
        cluster_id = parse_cluster_id(state.id or "")
        logger.info("Disabling cluster backups", extra={"cluster_id": cluster_id})
        try:
            await self._put(cluster_id, UpdateBackupConfigRequest(enabled=False))
        except Exception as e:
            if is_absent(e):
                logger.info(
                    "Cluster already gone, treating delete as done",
                    extra={"cluster_id": cluster_id, "kind": self.kind},
                )
                return []
            raise ResourceError(f"Could not disable backups on cluster {cluster_id}: {e}") from e
        return []

    def import_state(self, raw_id: str) -> BackupConfigResource:
        cluster_id = parse_cluster_id(raw_id)
        return BackupConfigResource(id=str(cluster_id), cluster_id=cluster_id)
