"""PostgreSQL extensions installed on a cluster database.

The API can install extensions but not remove them. Deleting this
resource only drops it from managed state; the extension stays installed
on the cluster and the operator is warned about it.
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field

from ..identifiers import format_id, parse_extension_id
from ..models import ConfigExtensionRequest, ConfigureRequest
from .base import ResourceError, ResourceHandler, ResourceModel

logger = logging.getLogger(__name__)

REMOVAL_WARNING = (
    "Extension removal is not supported by the Rivestack API. The extension {extension!r} "
    "remains installed on database {database!r} of cluster {cluster_id} but is no longer managed."
)


class ExtensionResource(ResourceModel):
    """An extension on one database. Database defaults to the cluster's default database."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id", "extension", "database")
    OPTIONAL_COMPUTED: ClassVar[frozenset[str]] = frozenset({"database"})

    cluster_id: Annotated[int, Field(gt=0)]
    extension: Annotated[str, Field(min_length=1, pattern=r"^[^/\s]+$")]
    database: Annotated[str | None, Field(pattern=r"^[^/\s]+$")] = None


class ExtensionHandler(ResourceHandler[ExtensionResource]):
    kind = "extension"
    model = ExtensionResource

    async def create(self, plan: ExtensionResource) -> ExtensionResource:
        cluster_id, extension = plan.cluster_id, plan.extension
        logger.info(
            "Creating cluster extension",
            extra={"cluster_id": cluster_id, "extension": extension, "database": plan.database},
        )

        try:
            req = ConfigExtensionRequest(extension=extension, database=plan.database)
            resp = await self._configure(cluster_id, ConfigureRequest(extensions=[req]))
        except Exception as e:
            raise ResourceError(
                f"Could not install extension {extension!r} on cluster {cluster_id}: {e}"
            ) from e

        database = next(
            (
                ext.database
                for ext in resp.extensions
                if ext.extension == extension
                and (not plan.database or ext.database == plan.database)
            ),
            "",
        )
        cluster = None
        if not database:
            cluster = await self._fallback_cluster(cluster_id)
            found = cluster.find_extension(extension, plan.database) if cluster else None
            database = found.database if found else ""
        if not database and plan.database:
            database = plan.database
        if not database and cluster is not None:
            database = cluster.db_name

        return plan.model_copy(
            update={"id": format_id(cluster_id, extension, database), "database": database}
        )

    async def read(self, state: ExtensionResource) -> ExtensionResource | None:
        cluster_id, extension, database = parse_extension_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        if cluster is None or cluster.find_extension(extension, database) is None:
            self._gone(
                "Cluster extension not found, removing from state",
                cluster_id=cluster_id,
                extension=extension,
                database=database,
            )
            return None

        return state.model_copy(
            update={"cluster_id": cluster_id, "extension": extension, "database": database}
        )

    async def update(self, plan: ExtensionResource, state: ExtensionResource) -> ExtensionResource:
        raise self._unsupported_update()

    async def delete(self, state: ExtensionResource) -> list[str]:
        cluster_id, extension, database = parse_extension_id(state.id or "")
        warning = REMOVAL_WARNING.format(
            extension=extension, database=database, cluster_id=cluster_id
        )
        logger.warning(
            warning,
            extra={"cluster_id": cluster_id, "extension": extension, "database": database},
        )
        return [warning]

    def import_state(self, raw_id: str) -> ExtensionResource:
        cluster_id, extension, database = parse_extension_id(raw_id)
        return ExtensionResource(
            id=format_id(cluster_id, extension, database),
            cluster_id=cluster_id,
            extension=extension,
            database=database,
        )
