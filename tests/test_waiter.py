"""Tests for bounded waits and the cluster/job pollers."""

from __future__ import annotations

import asyncio

import pytest
from rivestack_mock import MockRivestackClient, MockRivestackState

from rivestack.client import APIError, NotFoundError
from rivestack.models import Job
from rivestack.waiter import (
    ClusterFailedError,
    JobFailedError,
    Step,
    UnexpectedStatusError,
    WaitCancelledError,
    WaitTimeoutError,
    retry_until,
    wait_for_cluster_active,
    wait_for_cluster_deleted,
    wait_for_jobs,
)

FAST = {"interval": 0.001, "timeout": 1.0}


class TestRetryUntil:
    """Tests for the shared retry primitive."""

    @pytest.mark.asyncio
    async def test_done_after_pending_rounds(self) -> None:
        """Test that pending outcomes are retried until done."""
        calls = 0

        async def attempt() -> int:
            nonlocal calls
            calls += 1
            return calls

        def classify(result: int | None, error: BaseException | None) -> Step[int]:
            assert result is not None
            return Step.done(result * 10) if result >= 3 else Step.pending()

        value = await retry_until(attempt, classify, description="three rounds", **FAST)

        assert value == 30
        assert calls == 3

    @pytest.mark.asyncio
    async def test_timeout_keeps_last_error(self) -> None:
        """Test that the deadline error carries the last pending error."""
        busy = APIError(409, "busy")

        async def attempt() -> None:
            raise busy

        def classify(result: None, error: BaseException | None) -> Step[None]:
            return Step.pending(error)

        with pytest.raises(WaitTimeoutError) as exc_info:
            await retry_until(
                attempt, classify, interval=0.005, timeout=0.02, description="busy thing"
            )

        assert exc_info.value.last_error is busy
        assert exc_info.value.__cause__ is busy
        assert "busy thing" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_fail_propagates_immediately(self) -> None:
        """Test that Step.fail raises without further rounds."""
        calls = 0

        async def attempt() -> None:
            nonlocal calls
            calls += 1

        def classify(result: None, error: BaseException | None) -> Step[None]:
            return Step.fail(ValueError("broken"))

        with pytest.raises(ValueError):
            await retry_until(attempt, classify, description="broken", **FAST)

        assert calls == 1

    @pytest.mark.asyncio
    async def test_cancel_before_first_attempt(self) -> None:
        """Test that a set cancel event stops the wait before calling out."""
        cancel = asyncio.Event()
        cancel.set()
        calls = 0

        async def attempt() -> None:
            nonlocal calls
            calls += 1

        with pytest.raises(WaitCancelledError):
            await retry_until(
                attempt,
                lambda r, e: Step.pending(),
                description="never",
                cancel=cancel,
                **FAST,
            )

        assert calls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self) -> None:
        """Test that cancellation is honoured during a long poll interval."""
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        async def attempt() -> None:
            return None

        with pytest.raises(WaitCancelledError) as exc_info:
            await asyncio.wait_for(
                retry_until(
                    attempt,
                    lambda r, e: Step.pending(),
                    interval=30.0,
                    timeout=60.0,
                    description="slow thing",
                    cancel=cancel,
                ),
                timeout=5.0,
            )

        assert "slow thing" in str(exc_info.value)


class TestWaitForClusterActive:
    """Tests for the provisioning poller."""

    @pytest.mark.asyncio
    async def test_provisioning_then_active(self) -> None:
        """Test that provisioning is polled until active."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="provisioning")
        api.script_statuses(cluster.id, ["provisioning", "provisioning", "active"])

        result = await wait_for_cluster_active(MockRivestackClient(api), cluster.id, **FAST)

        assert result.status == "active"
        assert len(api.calls_to("get_cluster")) == 3

    @pytest.mark.asyncio
    async def test_failed_cluster(self) -> None:
        """Test that a failed cluster surfaces the remote message."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="failed", error_message="no capacity in region")

        with pytest.raises(ClusterFailedError) as exc_info:
            await wait_for_cluster_active(MockRivestackClient(api), cluster.id, **FAST)

        assert exc_info.value.remote_message == "no capacity in region"
        assert "no capacity in region" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_status(self) -> None:
        """Test that an unrecognised status fails the wait."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="hibernating")

        with pytest.raises(UnexpectedStatusError) as exc_info:
            await wait_for_cluster_active(MockRivestackClient(api), cluster.id, **FAST)

        assert exc_info.value.status == "hibernating"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test that a cluster stuck provisioning times out."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="provisioning")

        with pytest.raises(WaitTimeoutError):
            await wait_for_cluster_active(
                MockRivestackClient(api), cluster.id, interval=0.005, timeout=0.03
            )

    @pytest.mark.asyncio
    async def test_read_error_fails(self) -> None:
        """Test that a failing status read is not retried."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="provisioning")
        api.fail_next("get_cluster", APIError(500, "boom"))

        with pytest.raises(APIError):
            await wait_for_cluster_active(MockRivestackClient(api), cluster.id, **FAST)


class TestWaitForClusterDeleted:
    """Tests for the deletion poller."""

    @pytest.mark.asyncio
    async def test_not_found_is_success(self) -> None:
        """Test that a 404 ends the wait successfully."""
        api = MockRivestackState()

        await wait_for_cluster_deleted(MockRivestackClient(api), 999, **FAST)

        assert len(api.calls_to("get_cluster")) == 1

    @pytest.mark.asyncio
    async def test_deleting_window(self) -> None:
        """Test that the cluster is polled through its deletion window."""
        api = MockRivestackState()
        api.deleting_polls = 2
        cluster = api.add_cluster()
        client = MockRivestackClient(api)
        await client.delete_cluster(cluster.id)

        await wait_for_cluster_deleted(client, cluster.id, **FAST)

        assert len(api.calls_to("get_cluster")) == 3
        assert cluster.id not in api.clusters

    @pytest.mark.asyncio
    async def test_deleted_status_is_success(self) -> None:
        """Test that a deleted status ends the wait."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="deleted")

        await wait_for_cluster_deleted(MockRivestackClient(api), cluster.id, **FAST)

    @pytest.mark.asyncio
    async def test_unknown_status(self) -> None:
        """Test that an unrecognised status fails the wait."""
        api = MockRivestackState()
        cluster = api.add_cluster(status="migrating")

        with pytest.raises(UnexpectedStatusError):
            await wait_for_cluster_deleted(MockRivestackClient(api), cluster.id, **FAST)


class TestWaitForJobs:
    """Tests for the job poller."""

    @pytest.mark.asyncio
    async def test_no_jobs(self) -> None:
        """Test that an idle cluster returns after one poll."""
        api = MockRivestackState()
        cluster = api.add_cluster()

        await wait_for_jobs(MockRivestackClient(api), cluster.id, **FAST)

        assert len(api.calls_to("list_active_jobs")) == 1

    @pytest.mark.asyncio
    async def test_running_then_idle(self) -> None:
        """Test that running jobs are polled until none remain."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.script_jobs(
            cluster.id,
            [[Job(id=1, status="queued")], [Job(id=1, status="running")], []],
        )

        await wait_for_jobs(MockRivestackClient(api), cluster.id, **FAST)

        assert len(api.calls_to("list_active_jobs")) == 3

    @pytest.mark.asyncio
    async def test_failed_job(self) -> None:
        """Test that a failed job surfaces its remote error."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.script_jobs(
            cluster.id,
            [
                [Job(id=5, job_type="configure", status="running")],
                [Job(id=5, job_type="configure", status="failed", error_message="disk full")],
            ],
        )

        with pytest.raises(JobFailedError) as exc_info:
            await wait_for_jobs(MockRivestackClient(api), cluster.id, **FAST)

        assert exc_info.value.job_id == 5
        assert exc_info.value.remote_message == "disk full"

    @pytest.mark.asyncio
    async def test_unknown_job_status(self) -> None:
        """Test that an unrecognised job status fails the wait."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.script_jobs(cluster.id, [[Job(id=1, status="paused")]])

        with pytest.raises(UnexpectedStatusError):
            await wait_for_jobs(MockRivestackClient(api), cluster.id, **FAST)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test that jobs still running at the deadline time out."""
        api = MockRivestackState()
        cluster = api.add_cluster()
        api.script_jobs(cluster.id, [[Job(id=1, status="running")]] * 100)

        with pytest.raises(WaitTimeoutError):
            await wait_for_jobs(
                MockRivestackClient(api), cluster.id, interval=0.005, timeout=0.03
            )

    @pytest.mark.asyncio
    async def test_missing_cluster(self) -> None:
        """Test that polling a missing cluster propagates the 404."""
        api = MockRivestackState()

        with pytest.raises(NotFoundError):
            await wait_for_jobs(MockRivestackClient(api), 404, **FAST)
