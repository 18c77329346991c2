"""Plan and apply: converge managed state to a desired-state document.

plan() refreshes every managed resource from the API, then compares the
desired attributes with the stored ones. Key attribute changes replace a
resource, mutable attribute changes update it in place. Resources that
are managed but no longer declared are deleted. Creates and updates run
in APPLY_ORDER, deletes in reverse.

apply() executes a plan one action at a time and stops at the first
failure. The state file is written after every action, so whatever
completed before the failure is remembered and the next plan only
contains the remainder.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .client import RivestackClient
from .config import Timeouts
from .desired import DesiredResource, DesiredState
from .lifecycle import ResourceLifecycle
from .resources import APPLY_ORDER, HANDLERS, ResourceError, ResourceHandler, ResourceModel
from .state import StateError, StateStore, address, split_address

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class Action:
    """One planned step for one resource address."""

    type: ActionType
    address: str
    kind: str
    changes: list[str] = field(default_factory=list)
    reason: str = ""
    desired: DesiredResource | None = None

    @property
    def mutating(self) -> bool:
        return self.type != ActionType.NOOP

    def describe(self) -> str:
        text = f"{self.type.value} {self.address}"
        if self.changes:
            text += f" ({', '.join(self.changes)})"
        if self.reason:
            text += f": {self.reason}"
        return text


@dataclass
class Plan:
    actions: list[Action] = field(default_factory=list)

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.mutating]

    @property
    def empty(self) -> bool:
        return not self.changes

    def summary(self) -> dict[str, int]:
        counts = {t.value: 0 for t in ActionType}
        for action in self.actions:
            counts[action.type.value] += 1
        return counts


@dataclass
class ApplyResult:
    applied: list[Action] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed: Action | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _kind_rank(addr: str) -> int:
    kind, _ = split_address(addr)
    return APPLY_ORDER.index(kind) if kind in APPLY_ORDER else len(APPLY_ORDER)


class Engine:
    """Plans and applies desired state against one state store.

    Usage:
        engine = Engine(client, config.timeouts, StateStore.load(path))
        plan = await engine.plan(load_desired(desired_path))
        result = await engine.apply(plan)
    """

    def __init__(
        self,
        client: RivestackClient,
        timeouts: Timeouts,
        store: StateStore,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self.store = store
        self._handlers: dict[str, ResourceHandler] = {
            kind: handler_cls(client, timeouts, cancel) for kind, handler_cls in HANDLERS.items()
        }

    def lifecycle(self, addr: str) -> ResourceLifecycle:
        kind, _ = split_address(addr)
        handler = self._handlers.get(kind)
        if handler is None:
            raise StateError(
                f"Unknown resource kind {kind!r} at {addr}. Valid kinds: {list(self._handlers)}"
            )
        return ResourceLifecycle(handler, addr, self.store)

    def _ordered(self, addrs: list[str], reverse: bool = False) -> list[str]:
        return sorted(addrs, key=_kind_rank, reverse=reverse)

    # -------------------------------------------------------------------------
    # Refresh and plan
    # -------------------------------------------------------------------------

    async def refresh(self) -> list[str]:
        """Re-read every managed resource, dropping the ones gone remotely.

        Tainted resources are not read; they are replaced regardless.

        Returns:
            Addresses removed from state.
        """
        dropped = []
        for addr in self._ordered(self.store.addresses()):
            lifecycle = self.lifecycle(addr)
            if lifecycle.tainted:
                continue
            if await lifecycle.read() is None:
                dropped.append(addr)
        if dropped:
            logger.warning("Resources vanished remotely", extra={"addresses": dropped})
        return dropped

    def _cluster_id(self, entry: DesiredResource) -> int | None:
        """Id of the cluster an entry references by local name, if it exists."""
        if entry.cluster is None:
            return None
        record = self.store.get(address("cluster", entry.cluster))
        if record is None or record.tainted or not record.id:
            return None
        return int(record.id)

    def _plan_entry(self, entry: DesiredResource, new_clusters: set[str]) -> Action:
        addr = entry.address
        record = self.store.get(addr)
        changes: list[str] = []
        reason = ""

        if record is None:
            action_type = ActionType.CREATE
        elif record.tainted:
            action_type, reason = ActionType.REPLACE, "tainted by a failed create"
        elif entry.cluster is not None and entry.cluster in new_clusters:
            action_type, reason = ActionType.REPLACE, f"cluster {entry.cluster} is (re)created"
        else:
            current = self.lifecycle(addr).current()
            assert current is not None
            diff = current.diff(entry.build(self._cluster_id(entry)))
            if diff.replace:
                action_type, changes = ActionType.REPLACE, diff.replace + diff.update
            elif diff.update:
                action_type, changes = ActionType.UPDATE, diff.update
            else:
                action_type = ActionType.NOOP

        if entry.kind == "cluster" and action_type in (ActionType.CREATE, ActionType.REPLACE):
            new_clusters.add(entry.name)
        return Action(action_type, addr, entry.kind, changes=changes, reason=reason, desired=entry)

    async def plan(self, desired: DesiredState, refresh: bool = True) -> Plan:
        if refresh:
            await self.refresh()

        plan = Plan()
        declared = desired.addresses()
        orphans = [addr for addr in self.store.addresses() if addr not in declared]
        for addr in self._ordered(orphans, reverse=True):
            kind, _ = split_address(addr)
            plan.actions.append(
                Action(ActionType.DELETE, addr, kind, reason="no longer declared")
            )

        new_clusters: set[str] = set()
        for kind in APPLY_ORDER:
            for entry in desired.of_kind(kind):
                plan.actions.append(self._plan_entry(entry, new_clusters))

        logger.info("Plan computed", extra=plan.summary())
        return plan

    async def plan_destroy(self, refresh: bool = True) -> Plan:
        if refresh:
            await self.refresh()
        plan = Plan()
        for addr in self._ordered(self.store.addresses(), reverse=True):
            kind, _ = split_address(addr)
            plan.actions.append(Action(ActionType.DELETE, addr, kind, reason="destroy"))
        return plan

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def _build(self, entry: DesiredResource) -> ResourceModel:
        if entry.cluster is None:
            return entry.build()
        cluster_id = self._cluster_id(entry)
        if cluster_id is None:
            raise ResourceError(
                f"Cluster {entry.cluster!r} referenced by {entry.address} is not available"
            )
        return entry.build(cluster_id)

    async def _execute(self, action: Action) -> list[str]:
        lifecycle = self.lifecycle(action.address)

        if action.type == ActionType.DELETE:
            return await lifecycle.delete()

        assert action.desired is not None
        if action.type == ActionType.CREATE:
            await lifecycle.create(self._build(action.desired))
            return []
        if action.type == ActionType.UPDATE:
            await lifecycle.update(self._build(action.desired))
            return []
        if action.type == ActionType.REPLACE:
            warnings = await lifecycle.delete()
            # Built after the delete: a replaced cluster has a new id by now
            await lifecycle.create(self._build(action.desired))
            return warnings
        return []

    async def apply(self, plan: Plan) -> ApplyResult:
        result = ApplyResult()
        for action in plan.changes:
            logger.info("Applying", extra={"action": action.type.value, "address": action.address})
            warnings: list[str] = []
            try:
                warnings = await self._execute(action)
            except Exception as e:
                result.failed = action
                result.error = e
            finally:
                self.store.save()

            if result.error is not None:
                logger.error(
                    "Apply stopped",
                    extra={
                        "action": action.type.value,
                        "address": action.address,
                        "error": str(result.error),
                    },
                )
                break
            result.applied.append(action)
            result.warnings.extend(warnings)

        logger.info(
            "Apply finished",
            extra={"applied": len(result.applied), "failed": result.failed is not None},
        )
        return result

    async def import_resource(self, kind: str, name: str, raw_id: str) -> ResourceModel:
        """Adopt an existing remote entity under the address <kind>.<name>.

        Raises:
            StateError: If the kind is unknown or the address is already managed.
            IdentifierError: If raw_id is malformed.
            ResourceError: If the entity does not exist remotely.
        """
        addr = address(kind, name)
        if addr in self.store:
            raise StateError(f"{addr} is already managed")
        model = await self.lifecycle(addr).import_(raw_id)
        self.store.save()
        return model
