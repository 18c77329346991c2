"""Integration tests for plan and apply.

These tests drive the engine against MockRivestackState to exercise the
full convergence flow without network access.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest
from rivestack_mock import MockRivestackClient, MockRivestackState

from rivestack.client import APIError
from rivestack.config import Timeouts
from rivestack.desired import parse_desired
from rivestack.engine import ActionType, Engine, Plan
from rivestack.identifiers import IdentifierError
from rivestack.state import StateError, StateStore

STACK: dict[str, Any] = {
    "clusters": {"main": {"name": "prod", "region": "eu-central", "node_count": 1}},
    "firewalls": {"main": {"cluster": "main", "source_ips": ["10.0.0.0/8"]}},
    "backup_configs": {"main": {"cluster": "main", "retention_full": 14}},
    "users": {"app": {"cluster": "main", "username": "app"}},
    "databases": {"analytics": {"cluster": "main", "name": "analytics", "owner": "app"}},
    "extensions": {"vector": {"cluster": "main", "extension": "vector"}},
    "grants": {"app_rw": {"cluster": "main", "username": "app", "database": "analytics"}},
}


def stack(**overrides: Any) -> dict[str, Any]:
    """Copy of STACK with top-level sections replaced."""
    doc = copy.deepcopy(STACK)
    doc.update(overrides)
    return doc


def by_address(plan: Plan) -> dict[str, ActionType]:
    return {a.address: a.type for a in plan.actions}


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "rivestack.state.json"


@pytest.fixture
def engine(client: MockRivestackClient, timeouts: Timeouts, state_path: Path) -> Engine:
    return Engine(client, timeouts, StateStore.load(state_path))


async def converge(engine: Engine, doc: dict[str, Any]) -> None:
    result = await engine.apply(await engine.plan(parse_desired(doc)))
    assert result.ok, result.error


def cluster_id(engine: Engine) -> int:
    record = engine.store.get("cluster.main")
    assert record is not None and record.id is not None
    return int(record.id)


class TestInitialApply:
    """Tests for converging from empty state."""

    @pytest.mark.asyncio
    async def test_creates_everything_in_order(
        self, engine: Engine, api: MockRivestackState, state_path: Path
    ) -> None:
        """Test that every declared resource is created, clusters first."""
        plan = await engine.plan(parse_desired(STACK))

        assert [a.type for a in plan.changes] == [ActionType.CREATE] * 7
        assert [a.kind for a in plan.changes] == [
            "cluster",
            "firewall",
            "backup_config",
            "user",
            "database",
            "extension",
            "grant",
        ]

        result = await engine.apply(plan)

        assert result.ok
        assert len(result.applied) == 7
        remote = api.clusters[cluster_id(engine)]
        assert remote.source_ip_set() == {"10.0.0.0/8"}
        assert remote.find_user("app") is not None
        assert remote.find_database("analytics").owner == "app"
        assert remote.find_extension("vector", "appdb") is not None
        assert remote.find_grant("app", "analytics") is not None
        assert api.backups[remote.id].retention_full == 14

        saved = StateStore.load(state_path)
        assert len(saved) == 7
        assert saved.get("extension.vector").id == f"{remote.id}/vector/appdb"

    @pytest.mark.asyncio
    async def test_reapply_is_idempotent(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that a second run against unchanged remote state changes nothing."""
        await converge(engine, STACK)
        api.reset_calls()

        plan = await engine.plan(parse_desired(STACK))
        result = await engine.apply(plan)

        assert plan.empty
        assert set(by_address(plan).values()) == {ActionType.NOOP}
        assert result.applied == []
        assert api.mutating_calls == []

    @pytest.mark.asyncio
    async def test_state_survives_restart(
        self,
        client: MockRivestackClient,
        timeouts: Timeouts,
        api: MockRivestackState,
        state_path: Path,
    ) -> None:
        """Test that a fresh engine on the same state file sees no changes."""
        await converge(Engine(client, timeouts, StateStore.load(state_path)), STACK)
        api.reset_calls()

        engine = Engine(client, timeouts, StateStore.load(state_path))
        plan = await engine.plan(parse_desired(STACK))

        assert plan.empty
        assert api.mutating_calls == []


class TestChanges:
    """Tests for planning and applying changes to converged state."""

    @pytest.mark.asyncio
    async def test_scale_is_in_place(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that a node count change updates only the cluster."""
        await converge(engine, STACK)
        api.reset_calls()
        doc = stack(clusters={"main": {"name": "prod", "region": "eu-central", "node_count": 3}})

        plan = await engine.plan(parse_desired(doc))

        assert [(a.address, a.type) for a in plan.changes] == [
            ("cluster.main", ActionType.UPDATE)
        ]
        assert plan.changes[0].changes == ["node_count"]

        await engine.apply(plan)

        assert [c.method for c in api.mutating_calls] == ["add_node", "add_node"]
        assert api.clusters[cluster_id(engine)].node_count == 3

    @pytest.mark.asyncio
    async def test_key_change_replaces_dependents(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that replacing a cluster replaces everything that lives on it."""
        await converge(engine, STACK)
        old_id = cluster_id(engine)
        doc = stack(clusters={"main": {"name": "prod", "region": "us-east", "node_count": 1}})

        plan = await engine.plan(parse_desired(doc))

        assert set(by_address(plan).values()) == {ActionType.REPLACE}
        assert plan.actions[0].address == "cluster.main"
        assert plan.actions[0].changes == ["region"]

        result = await engine.apply(plan)

        assert result.ok, result.error
        new_id = cluster_id(engine)
        assert new_id != old_id
        assert old_id not in api.clusters
        assert api.clusters[new_id].region == "us-east"
        assert api.clusters[new_id].find_user("app") is not None
        user = engine.store.get("user.app")
        assert user is not None and user.id == f"{new_id}/app"
        assert (await engine.plan(parse_desired(doc))).empty

    @pytest.mark.asyncio
    async def test_removed_entries_deleted_in_reverse(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that undeclared resources are deleted, dependents first."""
        await converge(engine, STACK)
        doc = stack(users={}, grants={})

        plan = await engine.plan(parse_desired(doc))

        assert [(a.address, a.type) for a in plan.changes] == [
            ("grant.app_rw", ActionType.DELETE),
            ("user.app", ActionType.DELETE),
        ]

        result = await engine.apply(plan)

        assert result.ok
        assert len(result.warnings) == 1
        assert "grant.app_rw" not in engine.store
        assert api.clusters[cluster_id(engine)].find_user("app") is None

    @pytest.mark.asyncio
    async def test_remote_drift_detected(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that a remote change is planned back to the declared value."""
        await converge(engine, STACK)
        remote = api.clusters[cluster_id(engine)]
        remote.source_ips = "10.0.0.0/8,6.6.6.6"

        plan = await engine.plan(parse_desired(STACK))

        assert [(a.address, a.type) for a in plan.changes] == [
            ("firewall.main", ActionType.UPDATE)
        ]
        await engine.apply(plan)
        assert remote.source_ip_set() == {"10.0.0.0/8"}

    @pytest.mark.asyncio
    async def test_vanished_resource_recreated(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that a resource deleted outside the provider is created again."""
        await converge(engine, STACK)
        api.clusters[cluster_id(engine)].users.clear()

        plan = await engine.plan(parse_desired(STACK))

        assert [(a.address, a.type) for a in plan.changes] == [("user.app", ActionType.CREATE)]


class TestFailures:
    """Tests for partial failure and recovery."""

    @pytest.mark.asyncio
    async def test_stops_at_first_failure_and_resumes(
        self, engine: Engine, api: MockRivestackState, state_path: Path
    ) -> None:
        """Test that completed work is saved and the next plan holds the rest."""
        api.fail_next("update_backup_config", APIError(500, "backup service down"))

        result = await engine.apply(await engine.plan(parse_desired(STACK)))

        assert not result.ok
        assert result.failed is not None and result.failed.address == "backup_config.main"
        assert [a.address for a in result.applied] == ["cluster.main", "firewall.main"]
        assert "backup service down" in str(result.error)
        assert set(StateStore.load(state_path).addresses()) == {"cluster.main", "firewall.main"}

        plan = await engine.plan(parse_desired(STACK))
        assert [a.address for a in plan.changes] == [
            "backup_config.main",
            "user.app",
            "database.analytics",
            "extension.vector",
            "grant.app_rw",
        ]
        assert all(a.type == ActionType.CREATE for a in plan.changes)
        assert (await engine.apply(plan)).ok

    @pytest.mark.asyncio
    async def test_tainted_cluster_replaced(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that a cluster whose create failed is replaced on the next run."""
        api.provision_statuses = ["provisioning", "failed"]
        doc = {"clusters": STACK["clusters"], "users": STACK["users"]}

        first = await engine.apply(await engine.plan(parse_desired(doc)))

        assert not first.ok
        record = engine.store.get("cluster.main")
        assert record is not None and record.tainted
        failed_id = int(record.id or 0)

        api.provision_statuses = ["provisioning", "active"]
        plan = await engine.plan(parse_desired(doc))

        assert by_address(plan) == {
            "cluster.main": ActionType.REPLACE,
            "user.app": ActionType.CREATE,
        }
        assert (await engine.apply(plan)).ok
        assert failed_id not in api.clusters
        assert not engine.store.get("cluster.main").tainted

    @pytest.mark.asyncio
    async def test_unavailable_cluster_reference(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that a sub-resource whose cluster is missing fails cleanly."""
        doc = {"clusters": STACK["clusters"], "users": STACK["users"]}
        plan = await engine.plan(parse_desired(doc))
        user_only = Plan(actions=[a for a in plan.actions if a.kind == "user"])

        result = await engine.apply(user_only)

        assert not result.ok
        assert "not available" in str(result.error)
        assert api.mutating_calls == []


class TestDestroy:
    """Tests for tearing down everything managed."""

    @pytest.mark.asyncio
    async def test_destroy_everything(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that destroy deletes in reverse order and warns about leftovers."""
        await converge(engine, STACK)
        remote_id = cluster_id(engine)

        plan = await engine.plan_destroy()

        assert [a.kind for a in plan.changes] == [
            "grant",
            "extension",
            "database",
            "user",
            "backup_config",
            "firewall",
            "cluster",
        ]

        result = await engine.apply(plan)

        assert result.ok
        assert len(engine.store) == 0
        assert remote_id not in api.clusters
        assert len(result.warnings) == 2

    @pytest.mark.asyncio
    async def test_extension_and_grant_delete_make_no_calls(
        self, engine: Engine, api: MockRivestackState
    ) -> None:
        """Test that unsupported removals only drop state."""
        await converge(engine, STACK)
        api.reset_calls()
        doc = stack(extensions={}, grants={})

        result = await engine.apply(await engine.plan(parse_desired(doc)))

        assert result.ok
        assert api.mutating_calls == []
        assert "extension.vector" not in engine.store


class TestImport:
    """Tests for adopting existing remote objects."""

    @pytest.mark.asyncio
    async def test_import_then_plan(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that an imported cluster matching the declaration is left alone."""
        remote = api.add_cluster(name="prod", region="eu-central", node_count=1)

        await engine.import_resource("cluster", "main", str(remote.id))
        plan = await engine.plan(parse_desired({"clusters": STACK["clusters"]}))

        assert by_address(plan) == {"cluster.main": ActionType.NOOP}

    @pytest.mark.asyncio
    async def test_import_twice_refused(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that an address can only be imported once."""
        remote = api.add_cluster()
        await engine.import_resource("cluster", "main", str(remote.id))

        with pytest.raises(StateError):
            await engine.import_resource("cluster", "main", str(remote.id))

    @pytest.mark.asyncio
    async def test_import_malformed(self, engine: Engine, api: MockRivestackState) -> None:
        """Test that a malformed id fails without a remote call."""
        with pytest.raises(IdentifierError):
            await engine.import_resource("user", "app", "not-an-id")

        assert api.calls == []

    @pytest.mark.asyncio
    async def test_import_unknown_kind(self, engine: Engine) -> None:
        """Test that unknown kinds are rejected."""
        with pytest.raises(StateError) as exc_info:
            await engine.import_resource("widget", "x", "1")

        assert "Unknown resource kind" in str(exc_info.value)
