"""Cluster databases.

The owner is mutable: re-submitting the database with a new owner is an
upsert on the remote side.
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field

from ..identifiers import format_id, parse_database_id
from ..models import ConfigDatabaseRequest, ConfigureRequest
from .base import (
    PG_IDENTIFIER_MAX_LENGTH,
    PG_IDENTIFIER_PATTERN,
    ResourceError,
    ResourceHandler,
    ResourceModel,
)

logger = logging.getLogger(__name__)


class DatabaseResource(ResourceModel):
    """A database on a cluster. Owner defaults to the cluster's default user."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id", "name")
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("owner",)
    OPTIONAL_COMPUTED: ClassVar[frozenset[str]] = frozenset({"owner"})

    cluster_id: Annotated[int, Field(gt=0)]
    name: Annotated[
        str,
        Field(min_length=1, max_length=PG_IDENTIFIER_MAX_LENGTH, pattern=PG_IDENTIFIER_PATTERN),
    ]
    owner: str | None = None


class DatabaseHandler(ResourceHandler[DatabaseResource]):
    kind = "database"
    model = DatabaseResource

    def _request(self, plan: DatabaseResource) -> ConfigureRequest:
        return ConfigureRequest(
            databases=[ConfigDatabaseRequest(name=plan.name, owner=plan.owner or None)]
        )

    async def create(self, plan: DatabaseResource) -> DatabaseResource:
        cluster_id, name = plan.cluster_id, plan.name
        logger.info("Creating cluster database", extra={"cluster_id": cluster_id, "database": name})

        try:
            resp = await self._configure(cluster_id, self._request(plan))
        except Exception as e:
            raise ResourceError(
                f"Could not create database {name!r} on cluster {cluster_id}: {e}"
            ) from e

        owner = next((db.owner for db in resp.databases if db.name == name), "")
        if not owner:
            cluster = await self._fallback_cluster(cluster_id)
            found = cluster.find_database(name) if cluster else None
            owner = found.owner if found else ""
        if not owner:
            owner = plan.owner or ""

        return plan.model_copy(update={"id": format_id(cluster_id, name), "owner": owner})

    async def read(self, state: DatabaseResource) -> DatabaseResource | None:
        cluster_id, name = parse_database_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        found = cluster.find_database(name) if cluster else None
        if found is None:
            self._gone(
                "Cluster database not found, removing from state",
                cluster_id=cluster_id,
                database=name,
            )
            return None

        return state.model_copy(
            update={"cluster_id": cluster_id, "name": name, "owner": found.owner}
        )

    async def update(self, plan: DatabaseResource, state: DatabaseResource) -> DatabaseResource:
        cluster_id, name = plan.cluster_id, plan.name
        logger.info(
            "Updating cluster database owner",
            extra={"cluster_id": cluster_id, "database": name, "owner": plan.owner},
        )
        try:
            await self._configure(cluster_id, self._request(plan))
        except Exception as e:
            raise ResourceError(
                f"Could not update database {name!r} on cluster {cluster_id}: {e}"
            ) from e

        owner = plan.owner if plan.owner is not None else state.owner
        return plan.model_copy(update={"id": state.id, "owner": owner})

    async def delete(self, state: DatabaseResource) -> list[str]:
        cluster_id, name = parse_database_id(state.id or "")
        logger.info("Deleting cluster database", extra={"cluster_id": cluster_id, "database": name})
        try:
            await self._configure_delete(cluster_id, ConfigureRequest(delete_databases=[name]))
        except Exception as e:
            raise ResourceError(
                f"Could not delete database {name!r} from cluster {cluster_id}: {e}"
            ) from e
        return []

    def import_state(self, raw_id: str) -> DatabaseResource:
        cluster_id, name = parse_database_id(raw_id)
        return DatabaseResource(id=format_id(cluster_id, name), cluster_id=cluster_id, name=name)
