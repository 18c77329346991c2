"""Per-resource lifecycle state machine.

A ResourceLifecycle binds one handler to one address in the state store
and moves the resource through absent -> creating -> present ->
deleting -> absent. Each entry point checks that it is legal from the
current state, runs the handler and writes the outcome back to the
store. Failures leave the state where the remote actually is: a create
that left a remote object behind is stored as present but tainted, a
failed delete stays present.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import ValidationError

from .identifiers import IdentifierError
from .resources import ResourceError, ResourceHandler, ResourceModel
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"
    DELETING = "deleting"


class LifecycleError(Exception):
    """An entry point was called from a state that does not allow it."""

    def __init__(self, address: str, operation: str, state: LifecycleState) -> None:
        self.address = address
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} {address} while it is {state.value}")


class ResourceLifecycle:
    """Create/read/update/delete/import for one managed resource."""

    def __init__(self, handler: ResourceHandler, address: str, store: StateStore) -> None:
        self.handler = handler
        self.address = address
        self._store = store
        record = store.get(address)
        self.state = LifecycleState.PRESENT if record is not None else LifecycleState.ABSENT

    @property
    def record(self) -> StateRecord | None:
        return self._store.get(self.address)

    @property
    def tainted(self) -> bool:
        record = self.record
        return record is not None and record.tainted

    def current(self) -> ResourceModel | None:
        """The stored state as a resource model, or None when absent."""
        record = self.record
        if record is None:
            return None
        return self.handler.model.from_attributes({**record.attributes, "id": record.id})

    def _require(self, operation: str, *allowed: LifecycleState) -> None:
        if self.state not in allowed:
            raise LifecycleError(self.address, operation, self.state)

    def _store_model(self, model: ResourceModel, tainted: bool = False) -> None:
        self._store.put(
            self.address,
            StateRecord(
                kind=self.handler.kind,
                id=model.id,
                attributes=model.to_attributes(),
                tainted=tainted,
            ),
        )

    def _forget(self) -> None:
        self._store.remove(self.address)
        self.state = LifecycleState.ABSENT

    async def create(self, plan: ResourceModel) -> ResourceModel:
        self._require("create", LifecycleState.ABSENT)
        self.state = LifecycleState.CREATING
        logger.debug("Lifecycle create", extra={"address": self.address})

        try:
            created = await self.handler.create(plan)
        except ResourceError as e:
            if e.partial is not None and e.partial.id:
                logger.warning(
                    "Create failed after the remote object was made, storing it as tainted",
                    extra={"address": self.address, "id": e.partial.id},
                )
                self._store_model(e.partial, tainted=True)
                self.state = LifecycleState.PRESENT
            else:
                self.state = LifecycleState.ABSENT
            raise
        except BaseException:
            self.state = LifecycleState.ABSENT
            raise

        self._store_model(created)
        self.state = LifecycleState.PRESENT
        return created

    async def read(self) -> ResourceModel | None:
        """Refresh stored state from the remote.

        Returns:
            The refreshed model, or None when the remote entity is gone
            (the record is dropped from the store).
        """
        self._require("read", LifecycleState.PRESENT)
        current = self.current()
        assert current is not None
        record = self.record
        assert record is not None

        refreshed = await self.handler.read(current)
        if refreshed is None:
            self._forget()
            return None
        self._store_model(refreshed, tainted=record.tainted)
        return refreshed

    async def update(self, plan: ResourceModel) -> ResourceModel:
        self._require("update", LifecycleState.PRESENT)
        current = self.current()
        assert current is not None

        updated = await self.handler.update(plan, current)
        self._store_model(updated)
        return updated

    async def delete(self) -> list[str]:
        """Delete the remote entity and drop the record.

        Returns:
            Operator-facing warnings from the handler.
        """
        self._require("delete", LifecycleState.PRESENT)
        current = self.current()
        assert current is not None

        self.state = LifecycleState.DELETING
        try:
            warnings = await self.handler.delete(current)
        except BaseException:
            self.state = LifecycleState.PRESENT
            raise

        self._forget()
        return warnings

    async def import_(self, raw_id: str) -> ResourceModel:
        """Adopt an existing remote entity by its composite identifier.

        The identifier is parsed and validated before any remote call.

        Raises:
            IdentifierError: If raw_id is malformed.
            ResourceError: If the entity does not exist remotely.
        """
        self._require("import", LifecycleState.ABSENT)
        try:
            seeded = self.handler.import_state(raw_id)
        except ValidationError as e:
            problems = "; ".join(err["msg"] for err in e.errors())
            raise IdentifierError(
                f"invalid {self.handler.kind} ID {raw_id!r}: {problems}"
            ) from e

        refreshed = await self.handler.read(seeded)
        if refreshed is None:
            raise ResourceError(
                f"Cannot import {self.address}: {self.handler.kind} {raw_id!r} does not exist"
            )

        self._store_model(refreshed)
        self.state = LifecycleState.PRESENT
        return refreshed
