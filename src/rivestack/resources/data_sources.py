"""Read-only lookups: existing clusters and the API catalogues."""

from __future__ import annotations

import logging
from typing import Any

from ..client import RivestackClient
from ..identifiers import parse_cluster_id
from ..models import Extension, ServerTypesResponse
from .base import REDACTED, ResourceError
from .cluster import ClusterResource, cluster_attributes

logger = logging.getLogger(__name__)


async def read_cluster(
    client: RivestackClient, raw_id: str | int, *, show_sensitive: bool = False
) -> dict[str, Any]:
    """Look up an existing cluster by id.

    Unlike the managed cluster resource, a missing cluster is an error
    here rather than a signal to drop state.

    Raises:
        IdentifierError: If raw_id is not a positive integer.
        ResourceError: If the cluster cannot be read.
    """
    cluster_id = parse_cluster_id(raw_id)
    try:
        cluster = await client.get_cluster(cluster_id)
    except Exception as e:
        raise ResourceError(f"Could not read cluster {cluster_id}: {e}") from e

    data = cluster_attributes(cluster)
    if not show_sensitive:
        for name in ClusterResource.SENSITIVE_FIELDS:
            if data.get(name):
                data[name] = REDACTED
    return data


async def list_server_types(client: RivestackClient) -> ServerTypesResponse:
    """Available server sizes and the default one."""
    try:
        return await client.get_server_types()
    except Exception as e:
        raise ResourceError(f"Could not read server types: {e}") from e


async def list_extensions(
    client: RivestackClient, category: str | None = None
) -> list[Extension]:
    """Extensions that can be installed, optionally filtered by category."""
    try:
        resp = await client.get_extensions()
    except Exception as e:
        raise ResourceError(f"Could not read extensions: {e}") from e

    extensions = resp.extensions
    if category:
        extensions = [ext for ext in extensions if ext.category == category]
    logger.debug(
        "Listed available extensions",
        extra={"total": len(resp.extensions), "returned": len(extensions), "category": category},
    )
    return extensions
