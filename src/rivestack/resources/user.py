"""Cluster users.

The password is generated remotely and only returned by the create
call. It can never be read back, so it is kept from state on refresh and
set to an empty placeholder on import.
"""

from __future__ import annotations

import logging
from typing import Annotated, ClassVar

from pydantic import Field

from ..identifiers import format_id, parse_user_id
from ..models import ConfigureRequest, ConfigUserRequest
from .base import (
    PG_IDENTIFIER_MAX_LENGTH,
    PG_IDENTIFIER_PATTERN,
    ResourceError,
    ResourceHandler,
    ResourceModel,
)

logger = logging.getLogger(__name__)


class UserResource(ResourceModel):
    """A database user on a cluster."""

    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("cluster_id", "username")
    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset({"password"})

    cluster_id: Annotated[int, Field(gt=0)]
    username: Annotated[
        str,
        Field(min_length=1, max_length=PG_IDENTIFIER_MAX_LENGTH, pattern=PG_IDENTIFIER_PATTERN),
    ]
    password: str = ""


class UserHandler(ResourceHandler[UserResource]):
    kind = "user"
    model = UserResource

    async def create(self, plan: UserResource) -> UserResource:
        cluster_id, username = plan.cluster_id, plan.username
        logger.info("Creating cluster user", extra={"cluster_id": cluster_id, "username": username})

        try:
            resp = await self._configure(
                cluster_id, ConfigureRequest(users=[ConfigUserRequest(username=username)])
            )
        except Exception as e:
            raise ResourceError(
                f"Could not create user {username!r} on cluster {cluster_id}: {e}"
            ) from e

        password = next((u.password for u in resp.users if u.username == username), "")
        if not password:
            cluster = await self._fallback_cluster(cluster_id)
            found = cluster.find_user(username) if cluster else None
            password = found.password if found else ""
        if not password:
            logger.warning(
                "No password returned for created user",
                extra={"cluster_id": cluster_id, "username": username},
            )

        return plan.model_copy(
            update={"id": format_id(cluster_id, username), "password": password or plan.password}
        )

    async def read(self, state: UserResource) -> UserResource | None:
        cluster_id, username = parse_user_id(state.id or "")
        try:
            cluster = await self._read_cluster(cluster_id)
        except Exception as e:
            raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

        if cluster is None or cluster.find_user(username) is None:
            self._gone(
                "Cluster user not found, removing from state",
                cluster_id=cluster_id,
                username=username,
            )
            return None

        return state.model_copy(update={"cluster_id": cluster_id, "username": username})

    async def update(self, plan: UserResource, state: UserResource) -> UserResource:
        raise self._unsupported_update()

    async def delete(self, state: UserResource) -> list[str]:
        cluster_id, username = parse_user_id(state.id or "")
        logger.info("Deleting cluster user", extra={"cluster_id": cluster_id, "username": username})
        try:
            await self._configure_delete(cluster_id, ConfigureRequest(delete_users=[username]))
        except Exception as e:
            raise ResourceError(
                f"Could not delete user {username!r} from cluster {cluster_id}: {e}"
            ) from e
        return []

    def import_state(self, raw_id: str) -> UserResource:
        cluster_id, username = parse_user_id(raw_id)
        return UserResource(
            id=format_id(cluster_id, username),
            cluster_id=cluster_id,
            username=username,
            password="",
        )
