"""User access grants on cluster databases.

Access level can be changed in place by re-submitting the grant. There is
no revoke endpoint: deleting a grant only removes it from managed state
and leaves the privileges in place on the cluster.
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field, field_validator

from ..identifiers import format_id, parse_grant_id
from ..models import AccessLevel, ConfigGrantRequest, ConfigureRequest
from .base import (
    PG_IDENTIFIER_MAX_LENGTH,
    PG_IDENTIFIER_PATTERN,
    ResourceError,
    ResourceHandler,
    ResourceModel,
)

logger = logging.getLogger(__name__)

REVOKE_WARNING = (
    "Grant revocation is not supported by the Rivestack API. User {username!r} keeps its "
    "access to database {database!r} on cluster {cluster_id} but the grant is no longer managed."
)


class GrantResource(ResourceModel):
    """Access level of a user on one database."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id", "username", "database")
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("access",)

    cluster_id: Annotated[int, Field(gt=0)]
    username: Annotated[
        str,
        Field(min_length=1, max_length=PG_IDENTIFIER_MAX_LENGTH, pattern=PG_IDENTIFIER_PATTERN),
    ]
    database: Annotated[
        str,
        Field(min_length=1, max_length=PG_IDENTIFIER_MAX_LENGTH, pattern=PG_IDENTIFIER_PATTERN),
    ]
    access: str = AccessLevel.WRITE.value

    @field_validator("access")
    @classmethod
    def validate_access(cls, v: str) -> str:
        allowed = {level.value for level in AccessLevel}
        if v not in allowed:
            raise ValueError(f"access must be one of {sorted(allowed)}, got {v!r}")
        return v


class GrantHandler(ResourceHandler[GrantResource]):
    kind = "grant"
    model = GrantResource

    async def _upsert(self, plan: GrantResource, verb: str) -> None:
        cluster_id = plan.cluster_id
        req = ConfigureRequest(
            grants=[
                ConfigGrantRequest(
                    username=plan.username, database=plan.database, access=plan.access
                )
            ]
        )
        try:
            await self._configure(cluster_id, req)
        except Exception as e:
            raise ResourceError(
                f"Could not {verb} grant for user {plan.username!r} on database "
                f"{plan.database!r} of cluster {cluster_id}: {e}"
            ) from e

    async def create(self, plan: GrantResource) -> GrantResource:
        logger.info(
            "Creating cluster grant",
            extra={
                "cluster_id": plan.cluster_id,
                "username": plan.username,
                "database": plan.database,
                "access": plan.access,
            },
        )
        await self._upsert(plan, "create")
        return plan.model_copy(
            update={"id": format_id(plan.cluster_id, plan.username, plan.database)}
        )

    async def read(self, state: GrantResource) -> GrantResource | None:
        cluster_id, username, database = parse_grant_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        found = cluster.find_grant(username, database) if cluster else None
        if found is None:
            self._gone(
                "Cluster grant not found, removing from state",
                cluster_id=cluster_id,
                username=username,
                database=database,
            )
            return None

        return state.model_copy(
            update={
                "cluster_id": cluster_id,
                "username": username,
                "database": database,
                "access": found.access,
            }
        )

    async def update(self, plan: GrantResource, state: GrantResource) -> GrantResource:
        logger.info(
            "Updating cluster grant access",
            extra={
                "cluster_id": plan.cluster_id,
                "username": plan.username,
                "database": plan.database,
                "access": plan.access,
            },
        )
        await self._upsert(plan, "update")
        return plan.model_copy(update={"id": state.id})

    async def delete(self, state: GrantResource) -> list[str]:
        cluster_id, username, database = parse_grant_id(state.id or "")
        warning = REVOKE_WARNING.format(
            username=username, database=database, cluster_id=cluster_id
        )
        logger.warning(
            warning,
            extra={"cluster_id": cluster_id, "username": username, "database": database},
        )
        return [warning]

    def import_state(self, raw_id: str) -> GrantResource:
        cluster_id, username, database = parse_grant_id(raw_id)
        return GrantResource(
            id=format_id(cluster_id, username, database),
            cluster_id=cluster_id,
            username=username,
            database=database,
        )
