"""Desired-state file loading with validation.

The desired state is a YAML document with one section per resource kind.
Each entry is keyed by a local name that is stable across runs and
becomes part of the resource address:

    clusters:
      main:
        name: prod
        region: eu-central
        node_count: 3
    users:
      app:
        cluster: main          # local cluster name, or cluster_id: 42
        username: app

SECURITY: The file size is checked before reading and the document is
parsed with yaml.safe_load.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .resources import HANDLERS, ResourceModel
from .state import address

logger = logging.getLogger(__name__)

MAX_DESIRED_FILE_SIZE_BYTES = 1024 * 1024

# YAML section -> resource kind
SECTIONS: dict[str, str] = {
    "clusters": "cluster",
    "firewalls": "firewall",
    "backup_configs": "backup_config",
    "users": "user",
    "databases": "database",
    "extensions": "extension",
    "grants": "grant",
}

LOCAL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Stands in for a cluster that does not exist yet, so entries referencing
# it can be validated at load time. Never sent to the API.
PLACEHOLDER_CLUSTER_ID = 1


class DesiredStateError(Exception):
    """Raised when the desired-state file cannot be loaded or is invalid."""

    pass


@dataclass
class DesiredResource:
    """One declared resource, before its cluster reference is resolved."""

    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    cluster: str | None = None

    @property
    def address(self) -> str:
        return address(self.kind, self.name)

    def build(self, cluster_id: int | None = None) -> ResourceModel:
        """Validate the attributes into the kind's resource model.

        Args:
            cluster_id: Resolved cluster id for entries that reference a
                cluster by local name.

        Raises:
            ValidationError: If the attributes are invalid.
        """
        data = dict(self.attributes)
        if cluster_id is not None:
            data["cluster_id"] = cluster_id
        return HANDLERS[self.kind].model.model_validate(data)


@dataclass
class DesiredState:
    resources: list[DesiredResource] = field(default_factory=list)

    def get(self, addr: str) -> DesiredResource | None:
        return next((r for r in self.resources if r.address == addr), None)

    def of_kind(self, kind: str) -> list[DesiredResource]:
        return [r for r in self.resources if r.kind == kind]

    def addresses(self) -> set[str]:
        return {r.address for r in self.resources}


def _format_validation_error(where: str, e: ValidationError) -> list[str]:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        target = f"{where}.{loc}" if loc else where
        errors.append(f"  - {target}: {error['msg']}")
    return errors


def _parse_entry(
    section: str, name: str, raw: Any, cluster_names: set[str], errors: list[str]
) -> DesiredResource | None:
    kind = SECTIONS[section]
    where = f"{section}.{name}"

    if not LOCAL_NAME_PATTERN.match(name):
        errors.append(f"  - {where}: name may only contain letters, digits, '_' and '-'")
        return None
    if not isinstance(raw, dict):
        errors.append(f"  - {where}: entry must be a mapping")
        return None

    attributes = dict(raw)
    entry = DesiredResource(kind=kind, name=name)

    if kind != "cluster":
        ref = attributes.pop("cluster", None)
        has_id = attributes.get("cluster_id") is not None
        if ref is not None and has_id:
            errors.append(f"  - {where}: set either cluster or cluster_id, not both")
            return None
        if ref is None and not has_id:
            errors.append(f"  - {where}: cluster or cluster_id is required")
            return None
        if ref is not None:
            if not isinstance(ref, str) or ref not in cluster_names:
                errors.append(f"  - {where}.cluster: unknown cluster {ref!r}")
                return None
            entry.cluster = ref

    entry.attributes = attributes
    try:
        entry.build(PLACEHOLDER_CLUSTER_ID if entry.cluster else None)
    except ValidationError as e:
        errors.extend(_format_validation_error(where, e))
        return None
    return entry


def parse_desired(data: Any, source: str = "<desired state>") -> DesiredState:
    """Validate a decoded desired-state document.

    Raises:
        DesiredStateError: Listing every problem found.
    """
    if data is None:
        return DesiredState()
    if not isinstance(data, dict):
        raise DesiredStateError(f"Desired state must be a YAML mapping: {source}")

    # Accept the Kubernetes-style apiVersion/kind/spec wrapper as well
    if "apiVersion" in data and "spec" in data:
        data = data.get("spec") or {}
        if not isinstance(data, dict):
            raise DesiredStateError(f"Spec section must be a mapping: {source}")

    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise DesiredStateError(
            f"Unknown section(s) {unknown} in {source}. Valid sections: {list(SECTIONS)}"
        )

    errors: list[str] = []
    sections: dict[str, dict[str, Any]] = {}
    for section in SECTIONS:
        raw = data.get(section) or {}
        if not isinstance(raw, dict):
            errors.append(f"  - {section}: section must be a mapping of name to attributes")
            continue
        sections[section] = {str(k): v for k, v in raw.items()}

    cluster_names = set(sections.get("clusters", {}))
    state = DesiredState()
    for section, entries in sections.items():
        for name, raw in entries.items():
            entry = _parse_entry(section, name, raw, cluster_names, errors)
            if entry is not None:
                state.resources.append(entry)

    if errors:
        raise DesiredStateError(f"Validation failed for {source}:\n" + "\n".join(errors))
    return state


def load_desired(path: Path) -> DesiredState:
    """Load and validate a desired-state file.

    Raises:
        DesiredStateError: If the file cannot be read, is not valid YAML
            or fails validation.
    """
    if not path.exists():
        raise DesiredStateError(f"Desired state file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DesiredStateError(f"Failed to stat desired state file {path}: {e}") from e

    if file_size > MAX_DESIRED_FILE_SIZE_BYTES:
        raise DesiredStateError(
            f"Desired state file exceeds maximum size of {MAX_DESIRED_FILE_SIZE_BYTES} bytes: "
            f"{path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DesiredStateError(f"Failed to read desired state file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DesiredStateError(f"Invalid YAML in {path}: {e}") from e

    state = parse_desired(raw_data, str(path))
    logger.info(
        "Loaded desired state",
        extra={"path": str(path), "resources": len(state.resources)},
    )
    return state
