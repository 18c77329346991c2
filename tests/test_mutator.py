"""Tests for conflict-retrying mutations."""

from __future__ import annotations

import asyncio

import pytest
from rivestack_mock import MockRivestackClient, MockRivestackState

from rivestack.client import APIError, ConflictError
from rivestack.models import ConfigureRequest, ConfigUserRequest
from rivestack.mutator import call_with_conflict_retry, configure_with_retry
from rivestack.waiter import WaitCancelledError, WaitTimeoutError


def user_request(username: str = "app") -> ConfigureRequest:
    return ConfigureRequest(users=[ConfigUserRequest(username=username)])


class TestConfigureWithRetry:
    """Tests for the configure envelope with 409 absorption."""

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test that an idle cluster accepts the change with one call."""
        api = MockRivestackState()
        cluster = api.add_cluster()

        resp = await configure_with_retry(
            MockRivestackClient(api), cluster.id, user_request(), backoff=0.001, timeout=1.0
        )

        assert resp.users[0].username == "app"
        assert len(api.calls_to("configure_cluster")) == 1

    @pytest.mark.asyncio
    async def test_conflicts_absorbed(self) -> None:
        """Test that a busy cluster is retried until it accepts the change."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.fail_next("configure_cluster", ConflictError(409, "job running"), times=3)

        resp = await configure_with_retry(
            MockRivestackClient(api), cluster.id, user_request(), backoff=0.001, timeout=1.0
        )

        assert resp.users[0].password == "pw-app"
        assert len(api.calls_to("configure_cluster")) == 4
        assert api.clusters[cluster.id].find_user("app") is not None

    @pytest.mark.asyncio
    async def test_persistent_conflict_times_out(self) -> None:
        """Test that a cluster busy past the deadline raises a timeout."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.fail_next("configure_cluster", ConflictError(409, "job running"), times=1000)

        with pytest.raises(WaitTimeoutError) as exc_info:
            await configure_with_retry(
                MockRivestackClient(api), cluster.id, user_request(), backoff=0.005, timeout=0.03
            )

        assert isinstance(exc_info.value.last_error, ConflictError)
        assert api.clusters[cluster.id].find_user("app") is None

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self) -> None:
        """Test that non-conflict errors propagate after one call."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.fail_next("configure_cluster", APIError(422, "invalid username"))

        with pytest.raises(APIError) as exc_info:
            await configure_with_retry(
                MockRivestackClient(api), cluster.id, user_request(), backoff=0.001, timeout=1.0
            )

        assert exc_info.value.status_code == 422
        assert len(api.calls_to("configure_cluster")) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self) -> None:
        """Test that cancellation stops the retry loop."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.fail_next("configure_cluster", ConflictError(409, "job running"), times=1000)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(WaitCancelledError):
            await configure_with_retry(
                MockRivestackClient(api),
                cluster.id,
                user_request(),
                backoff=30.0,
                timeout=60.0,
                cancel=cancel,
            )


class TestCallWithConflictRetry:
    """Tests for the generic retry wrapper."""

    @pytest.mark.asyncio
    async def test_returns_call_result(self) -> None:
        """Test that the result of the successful call is returned."""
        attempts = 0

        async def call() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 2:
                raise ConflictError(409, "busy")
            return "ok"

        result = await call_with_conflict_retry(
            call, description="thing", backoff=0.001, timeout=1.0
        )

        assert result == "ok"
        assert attempts == 2
