"""Async HTTP gateway for the Rivestack API.

Executes authenticated calls, decodes JSON into the wire models and
classifies HTTP failures into typed errors (not found, conflict, gone,
anything else). Everything above this module works in terms of those
errors and never looks at raw status codes.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import ProviderConfig
from .models import (
    AddNodeResponse,
    BackupConfig,
    Cluster,
    ClusterListResponse,
    ConfigureRequest,
    ConfigureResponse,
    ExtensionsResponse,
    Job,
    JobsResponse,
    ProvisionClusterRequest,
    ProvisionClusterResponse,
    RemoveNodeRequest,
    RemoveNodeResponse,
    ServerTypesResponse,
    UpdateBackupConfigRequest,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class APIError(Exception):
    """Error response returned by the Rivestack API."""

    def __init__(self, status_code: int, message: str, code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code if code is not None else status_code
        super().__init__(f"API error (HTTP {status_code}): {message}")


class NotFoundError(APIError):
    """HTTP 404: the resource does not exist."""


class ConflictError(APIError):
    """HTTP 409: the cluster already has an active job."""


class GoneError(APIError):
    """HTTP 410: the resource existed but has been deleted."""


class TransportError(Exception):
    """The request could not be executed or its response not decoded."""


_ERROR_CLASSES: dict[int, type[APIError]] = {
    HTTPStatus.NOT_FOUND: NotFoundError,
    HTTPStatus.CONFLICT: ConflictError,
    HTTPStatus.GONE: GoneError,
}


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, NotFoundError)


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ConflictError)


def is_gone(err: BaseException) -> bool:
    return isinstance(err, GoneError)


def is_absent(err: BaseException) -> bool:
    """True when the error means the target no longer exists (404 or 410)."""
    return isinstance(err, (NotFoundError, GoneError))


def error_from_response(response: httpx.Response) -> APIError:
    """Build a typed APIError from a failed response.

    The API answers errors with {"error": true, "code": ..., "message": ...}.
    Bodies that are not JSON are used verbatim as the message, and an
    empty message falls back to the HTTP reason phrase.
    """
    message = ""
    code: int | None = None
    try:
        body = response.json()
    except ValueError:
        message = response.text
    else:
        if isinstance(body, dict):
            message = str(body.get("message") or "")
            raw_code = body.get("code")
            code = raw_code if isinstance(raw_code, int) else None
        else:
            message = response.text

    if not message:
        try:
            message = HTTPStatus(response.status_code).phrase
        except ValueError:
            message = f"HTTP {response.status_code}"

    error_cls = _ERROR_CLASSES.get(response.status_code, APIError)
    return error_cls(response.status_code, message, code)


class RivestackClient:
    """Rivestack API client.

    Stateless apart from the underlying connection pool, so one instance
    can serve concurrent operations on independent resources.

    Usage:
        async with RivestackClient(config) as client:
            cluster = await client.get_cluster(42)
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Resolved provider configuration.
            transport: Optional httpx transport, used by tests to intercept
                requests.
        """
        self._config = config
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.http_timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "User-Agent": config.user_agent,
                "Accept": "application/json",
            },
        )

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def __aenter__(self) -> RivestackClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Execute one request and return the decoded JSON body.

        Raises:
            APIError: For any HTTP status >= 400 (typed by status).
            TransportError: If the request fails or the body is not JSON.
        """
        try:
            if body is not None:
                response = await self._http.request(method, path, json=body)
            else:
                response = await self._http.request(method, path)
        except httpx.HTTPError as e:
            raise TransportError(f"executing {method} {path}: {e}") from e

        logger.debug(
            "API request completed",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )

        if response.status_code >= 400:
            raise error_from_response(response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"decoding response of {method} {path}: {e}") from e

    async def _request_model(
        self,
        model: type[ModelT],
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> ModelT:
        data = await self._request(method, path, body)
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as e:
            raise TransportError(f"unexpected response shape from {method} {path}: {e}") from e

    # -------------------------------------------------------------------------
    # Clusters
    # -------------------------------------------------------------------------

    async def provision_cluster(self, req: ProvisionClusterRequest) -> ProvisionClusterResponse:
        return await self._request_model(
            ProvisionClusterResponse, "POST", "/api/ha/provision", req.to_payload()
        )

    async def get_cluster(self, cluster_id: int) -> Cluster:
        return await self._request_model(Cluster, "GET", f"/api/ha/{cluster_id}")

    async def list_clusters(self) -> list[Cluster]:
        resp = await self._request_model(ClusterListResponse, "GET", "/api/ha")
        return resp.clusters

    async def delete_cluster(self, cluster_id: int) -> None:
        await self._request("DELETE", f"/api/ha/{cluster_id}")

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def add_node(self, cluster_id: int) -> AddNodeResponse:
        return await self._request_model(AddNodeResponse, "POST", f"/api/ha/{cluster_id}/add-node")

    async def remove_node(self, cluster_id: int, node_name: str) -> RemoveNodeResponse:
        req = RemoveNodeRequest(node_name=node_name)
        return await self._request_model(
            RemoveNodeResponse, "POST", f"/api/ha/{cluster_id}/remove-node", req.model_dump()
        )

    # -------------------------------------------------------------------------
    # Configuration and jobs
    # -------------------------------------------------------------------------

    async def configure_cluster(self, cluster_id: int, req: ConfigureRequest) -> ConfigureResponse:
        return await self._request_model(
            ConfigureResponse, "POST", f"/api/ha/{cluster_id}/configure", req.to_payload()
        )

    async def list_active_jobs(self, cluster_id: int) -> list[Job]:
        resp = await self._request_model(
            JobsResponse, "GET", f"/api/ha/{cluster_id}/jobs?active=true"
        )
        return resp.jobs

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    async def get_backup_config(self, cluster_id: int) -> BackupConfig:
        return await self._request_model(BackupConfig, "GET", f"/api/ha/{cluster_id}/backup-config")

    async def update_backup_config(
        self, cluster_id: int, req: UpdateBackupConfigRequest
    ) -> BackupConfig:
        return await self._request_model(
            BackupConfig, "PUT", f"/api/ha/{cluster_id}/backup-config", req.to_payload()
        )

    # -------------------------------------------------------------------------
    # Catalogues
    # -------------------------------------------------------------------------

    async def get_server_types(self) -> ServerTypesResponse:
        return await self._request_model(ServerTypesResponse, "GET", "/api/ha/server-types")

    async def get_extensions(self) -> ExtensionsResponse:
        return await self._request_model(ExtensionsResponse, "GET", "/api/ha/extensions")
