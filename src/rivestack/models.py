"""Pydantic models for the Rivestack API wire format.

These models provide:
1. Type-safe decoding of API responses (unknown fields ignored)
2. Request payloads that omit unset fields, matching what the API expects
3. Domain helpers on top of the wire shapes (source IP sets, lookups)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Status values
# =============================================================================


class ClusterStatus(str, Enum):
    """Lifecycle status reported for a cluster."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"


class JobStatus(str, Enum):
    """Status of an asynchronous cluster job."""

    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class AccessLevel(str, Enum):
    """Grant access levels."""

    READ = "read"
    WRITE = "write"


class WireModel(BaseModel):
    """Base for all API models."""

    model_config = {"extra": "ignore", "populate_by_name": True}


def _none_to_empty(v: Any) -> Any:
    return "" if v is None else v


# =============================================================================
# Cluster aggregate
# =============================================================================


class ClusterUser(WireModel):
    """A database user on a cluster."""

    username: str
    password: str = ""


class ClusterDatabase(WireModel):
    """A database on a cluster."""

    name: str = Field(alias="db_name")
    owner: str = ""

    @field_validator("owner", mode="before")
    @classmethod
    def null_owner(cls, v: Any) -> Any:
        return _none_to_empty(v)


class ClusterExtension(WireModel):
    """An extension installed on one database of a cluster."""

    extension: str
    database: str = ""


class ClusterGrant(WireModel):
    """An access grant for a user on a database."""

    id: int = 0
    username: str
    database: str
    access: str = AccessLevel.WRITE.value
    created_at: datetime | None = None


class BackupConfig(WireModel):
    """Backup configuration of a cluster."""

    id: int = 0
    cluster_id: int = 0
    enabled: bool = False
    schedule: str = ""
    retention_full: int = 0
    updated_at: datetime | None = None

    @field_validator("schedule", mode="before")
    @classmethod
    def null_schedule(cls, v: Any) -> Any:
        return _none_to_empty(v)


class Cluster(WireModel):
    """Full HA cluster with all sub-collections inlined."""

    id: int
    tenant_id: str = ""
    name: str = ""
    region: str = ""
    db_type: str = ""
    server_type: str = ""
    node_count: int = 0
    postgresql_version: int = 0
    db_name: str = ""
    db_user: str = ""
    db_password: str = ""
    host: str = ""
    connection_string: str = ""
    status: str = ""
    health_status: str = ""
    source_ips: str = ""
    error_message: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    users: list[ClusterUser] = Field(default_factory=list)
    databases: list[ClusterDatabase] = Field(default_factory=list)
    extensions: list[ClusterExtension] = Field(default_factory=list)
    grants: list[ClusterGrant] = Field(default_factory=list)
    backup_config: BackupConfig | None = None

    @field_validator(
        "tenant_id",
        "host",
        "connection_string",
        "health_status",
        "source_ips",
        "error_message",
        "db_password",
        mode="before",
    )
    @classmethod
    def null_strings(cls, v: Any) -> Any:
        return _none_to_empty(v)

    @field_validator("users", "databases", "extensions", "grants", mode="before")
    @classmethod
    def null_collection(cls, v: Any) -> Any:
        return [] if v is None else v

    def source_ip_set(self) -> set[str]:
        """Parse the comma-joined wire allowlist into a set."""
        return parse_source_ips(self.source_ips)

    def node_name(self, index: int) -> str:
        """Name of the node with the given 1-based index."""
        return node_name(self.tenant_id, index)

    # Linear scans: collections hold tens of entries at most

    def find_user(self, username: str) -> ClusterUser | None:
        return next((u for u in self.users if u.username == username), None)

    def find_database(self, name: str) -> ClusterDatabase | None:
        return next((d for d in self.databases if d.name == name), None)

    def find_extension(
        self, extension: str, database: str | None = None
    ) -> ClusterExtension | None:
        for ext in self.extensions:
            if ext.extension != extension:
                continue
            if database is None or ext.database == database:
                return ext
        return None

    def find_grant(self, username: str, database: str) -> ClusterGrant | None:
        return next(
            (g for g in self.grants if g.username == username and g.database == database),
            None,
        )


def parse_source_ips(raw: str) -> set[str]:
    """Split a comma-joined allowlist, dropping blanks."""
    if not raw:
        return set()
    return {ip.strip() for ip in raw.split(",") if ip.strip()}


def node_name(tenant_id: str, index: int) -> str:
    """Derive a node name from the tenant and its 1-based index."""
    return f"{tenant_id}-db-{index}"


class ClusterListResponse(WireModel):
    clusters: list[Cluster] = Field(default_factory=list)


# =============================================================================
# Provisioning and nodes
# =============================================================================


class ProvisionClusterRequest(WireModel):
    """Request body for provisioning a new HA cluster."""

    name: str
    region: str
    db_name: str | None = None
    db_type: str | None = None
    server_type: str | None = None
    node_count: int | None = None
    postgresql_version: int | None = None
    extensions: list[str] | None = None
    subscription_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if not payload.get("extensions"):
            payload.pop("extensions", None)
        return payload


class ProvisionClusterResponse(WireModel):
    id: int
    tenant_id: str = ""
    name: str = ""
    region: str = ""
    status: str = ""
    stream_url: str = ""
    subscription_id: int | None = None
    created_at: datetime | None = None


class AddNodeResponse(WireModel):
    message: str = ""
    job_id: int = 0
    stream_url: str = ""
    new_node_count: int = 0
    new_node_name: str = ""


class RemoveNodeRequest(WireModel):
    node_name: str
    delete_server: bool = True
    remove_postgres_data: bool = True


class RemoveNodeResponse(WireModel):
    message: str = ""
    job_id: int = 0
    stream_url: str = ""
    new_node_count: int = 0
    removed_node: str = ""


# =============================================================================
# Unified configure envelope
# =============================================================================


class ConfigUserRequest(WireModel):
    username: str


class ConfigDatabaseRequest(WireModel):
    name: str
    owner: str | None = None


class ConfigExtensionRequest(WireModel):
    extension: str
    database: str | None = None


class ConfigGrantRequest(WireModel):
    username: str
    database: str
    access: str | None = None


class ConfigureRequest(WireModel):
    """Batched create/delete mutation for one cluster.

    Any combination of sections may be set; empty sections are omitted
    from the payload. replace_ips switches source_ips from merge to
    full-replacement semantics.
    """

    users: list[ConfigUserRequest] = Field(default_factory=list)
    delete_users: list[str] = Field(default_factory=list)
    databases: list[ConfigDatabaseRequest] = Field(default_factory=list)
    delete_databases: list[str] = Field(default_factory=list)
    extensions: list[ConfigExtensionRequest] = Field(default_factory=list)
    grants: list[ConfigGrantRequest] = Field(default_factory=list)
    source_ips: list[str] = Field(default_factory=list)
    delete_ips: list[str] = Field(default_factory=list)
    replace_ips: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key, value in self.model_dump(exclude_none=True).items():
            if value:
                payload[key] = value
        return payload

    def describe(self) -> dict[str, int]:
        """Count of items per non-empty section, for logging."""
        counts = {}
        for key, value in self.to_payload().items():
            counts[key] = len(value) if isinstance(value, list) else 1
        return counts


class ConfigUserResponse(WireModel):
    username: str
    password: str = ""


class ConfigDBResponse(WireModel):
    name: str
    owner: str = ""

    @field_validator("owner", mode="before")
    @classmethod
    def null_owner(cls, v: Any) -> Any:
        return _none_to_empty(v)


class ConfigExtResponse(WireModel):
    extension: str
    database: str = ""


class ConfigureResponse(WireModel):
    """Result of a configure call.

    job_id is zero when the change was applied synchronously and no job
    was spawned.
    """

    message: str = ""
    job_id: int = 0
    stream_url: str = ""
    users: list[ConfigUserResponse] = Field(default_factory=list)
    deleted_users: list[str] = Field(default_factory=list)
    databases: list[ConfigDBResponse] = Field(default_factory=list)
    deleted_databases: list[str] = Field(default_factory=list)
    extensions: list[ConfigExtResponse] = Field(default_factory=list)
    grants: list[ConfigGrantRequest] = Field(default_factory=list)
    source_ips: list[str] = Field(default_factory=list)
    deleted_ips: list[str] = Field(default_factory=list)

    @field_validator(
        "users",
        "deleted_users",
        "databases",
        "deleted_databases",
        "extensions",
        "grants",
        "source_ips",
        "deleted_ips",
        mode="before",
    )
    @classmethod
    def null_collection(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("job_id", mode="before")
    @classmethod
    def null_job(cls, v: Any) -> Any:
        return 0 if v is None else v


# =============================================================================
# Jobs
# =============================================================================


class Job(WireModel):
    """An asynchronous unit of remote work."""

    id: int
    job_type: str = ""
    status: str = ""
    error_message: str = ""
    progress: int = 0
    stream_url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("error_message", mode="before")
    @classmethod
    def null_error(cls, v: Any) -> Any:
        return _none_to_empty(v)

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.FAILED.value


class JobsResponse(WireModel):
    jobs: list[Job] = Field(default_factory=list)
    count: int = 0

    @field_validator("jobs", mode="before")
    @classmethod
    def null_jobs(cls, v: Any) -> Any:
        return [] if v is None else v


# =============================================================================
# Backups
# =============================================================================


class UpdateBackupConfigRequest(WireModel):
    enabled: bool | None = None
    schedule: str | None = None
    retention_full: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if payload.get("schedule") == "":
            payload.pop("schedule")
        return payload


# =============================================================================
# Catalogues
# =============================================================================


class ServerType(WireModel):
    type: str
    name: str = ""
    description: str = ""
    cpus: int = 0
    memory_gb: int = 0
    storage_gb: int = 0
    storage_avail_gb: int = 0
    price_per_node: float = 0.0


class ServerTypesResponse(WireModel):
    server_types: list[ServerType] = Field(default_factory=list)
    default: str = ""


class Extension(WireModel):
    name: str
    description: str = ""
    category: str = ""
    default: bool = False


class ExtensionsResponse(WireModel):
    extensions: list[Extension] = Field(default_factory=list)
    total_count: int = 0
