"""Managed state persisted between runs.

The state file is a JSON document mapping resource addresses
("<kind>.<name>") to the last known attributes of the remote entity.
Writes go to a temporary file in the same directory which then replaces
the old file, so an interrupted run never leaves a truncated state file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateRecord(BaseModel):
    """One managed resource.

    tainted marks a resource whose create did not complete; the next plan
    replaces it.
    """

    model_config = {"extra": "ignore"}

    kind: str
    id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    tainted: bool = False


class StateDocument(BaseModel):
    model_config = {"extra": "ignore"}

    version: int = STATE_FORMAT_VERSION
    resources: dict[str, StateRecord] = Field(default_factory=dict)


def address(kind: str, name: str) -> str:
    return f"{kind}.{name}"


def split_address(addr: str) -> tuple[str, str]:
    kind, sep, name = addr.partition(".")
    if not sep or not kind or not name:
        raise StateError(f"Invalid resource address {addr!r}: expected <kind>.<name>")
    return kind, name


class StateStore:
    """JSON-file backed store of managed resources.

    Usage:
        store = StateStore.load(Path("rivestack.state.json"))
        store.put("user.app", StateRecord(kind="user", id="42/app", attributes={...}))
        store.save()
    """

    def __init__(self, path: Path | None, resources: dict[str, StateRecord] | None = None) -> None:
        self.path = path
        self._resources: dict[str, StateRecord] = dict(resources or {})

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Load state from disk; a missing file is an empty state.

        Raises:
            StateError: If the file is too large, not JSON or malformed.
        """
        if not path.exists():
            logger.debug("No state file, starting empty", extra={"path": str(path)})
            return cls(path)

        try:
            if path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
                )
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e

        try:
            document = StateDocument.model_validate(json.loads(content))
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {path}: {e}") from e
        except ValidationError as e:
            raise StateError(f"Malformed state file {path}: {e}") from e

        if document.version != STATE_FORMAT_VERSION:
            raise StateError(
                f"Unsupported state format version {document.version} in {path} "
                f"(expected {STATE_FORMAT_VERSION})"
            )

        for addr in document.resources:
            split_address(addr)

        logger.debug(
            "Loaded state",
            extra={"path": str(path), "resources": len(document.resources)},
        )
        return cls(path, document.resources)

    def save(self) -> None:
        """Write state atomically. A store without a path is memory-only."""
        if self.path is None:
            return

        document = StateDocument(resources=dict(sorted(self._resources.items())))
        content = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=True)

        directory = self.path.parent
        tmp_path: Path | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=directory,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp.write(content + "\n")
                tmp_path = Path(tmp.name)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise StateError(f"Failed to write state file {self.path}: {e}") from e

    def get(self, addr: str) -> StateRecord | None:
        return self._resources.get(addr)

    def put(self, addr: str, record: StateRecord) -> None:
        split_address(addr)
        self._resources[addr] = record

    def remove(self, addr: str) -> StateRecord | None:
        return self._resources.pop(addr, None)

    def addresses(self) -> list[str]:
        return list(self._resources)

    def items(self) -> list[tuple[str, StateRecord]]:
        return list(self._resources.items())

    def __contains__(self, addr: object) -> bool:
        return addr in self._resources

    def __len__(self) -> int:
        return len(self._resources)
