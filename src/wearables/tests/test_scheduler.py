"""Tests for the background poll scheduler."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.wearables.base import OAuthCredential
from src.wearables.errors import RateLimited
from src.wearables.pipeline import WithingsPipeline
from src.wearables.sync.scheduler import PollScheduler
from src.wearables.tests.conftest import OTHER_USER_ID, TEST_USER_ID


@pytest.fixture
def scheduler(pipeline: WithingsPipeline, credential_store, clock) -> PollScheduler:
    return PollScheduler(
        credential_store,
        pipeline.orchestrator,
        interval_seconds=3600,
        max_concurrent=2,
        clock=clock,
    )


@pytest.fixture
def second_credential(credential_store, clock) -> OAuthCredential:
    credential = OAuthCredential(
        user_id=OTHER_USER_ID,
        provider="withings",
        provider_user_id="9990001",
        access_token="access-other",
        refresh_token="refresh-other",
        expires_at=clock() + timedelta(hours=2),
    )
    credential_store.rows[OTHER_USER_ID] = credential
    return credential


class TestPollScheduler:
    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler: PollScheduler, fake_adapter) -> None:
        assert await scheduler.run_once() == []
        assert fake_adapter.fetch_calls == []

    @pytest.mark.asyncio
    async def test_syncs_every_due_credential(
        self,
        scheduler: PollScheduler,
        connected_credential: OAuthCredential,
        second_credential: OAuthCredential,
        fake_adapter,
    ) -> None:
        outcomes = await scheduler.run_once()
        assert sorted(o.user_id for o in outcomes) == [TEST_USER_ID, OTHER_USER_ID]
        assert all(o.status == "success" for o in outcomes)
        assert {call[0] for call in fake_adapter.fetch_calls} == {"access-stored", "access-other"}

    @pytest.mark.asyncio
    async def test_recently_synced_skipped(
        self,
        scheduler: PollScheduler,
        connected_credential: OAuthCredential,
        second_credential: OAuthCredential,
        clock,
    ) -> None:
        second_credential.last_synced_at = clock() - timedelta(minutes=10)
        outcomes = await scheduler.run_once()
        assert [o.user_id for o in outcomes] == [TEST_USER_ID]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(
        self,
        scheduler: PollScheduler,
        connected_credential: OAuthCredential,
        second_credential: OAuthCredential,
        fake_adapter,
        credential_store,
    ) -> None:
        # Only the first fetch is rate limited
        original = fake_adapter.fetch_measure_groups
        calls = 0

        async def flaky(access_token, since, until=None):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RateLimited("601")
            return await original(access_token, since, until)

        fake_adapter.fetch_measure_groups = flaky
        outcomes = await scheduler.run_once()

        statuses = sorted(o.status for o in outcomes)
        assert statuses == ["rate_limited", "success"]
        assert len(credential_store.rows) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated_to_one_user(
        self,
        scheduler: PollScheduler,
        connected_credential: OAuthCredential,
        second_credential: OAuthCredential,
        credential_store,
    ) -> None:
        original = credential_store.mark_synced

        async def flaky_mark_synced(user_id, synced_at):
            if user_id == TEST_USER_ID:
                raise ConnectionError("connection reset")
            await original(user_id, synced_at)

        credential_store.mark_synced = flaky_mark_synced
        outcomes = {o.user_id: o.status for o in await scheduler.run_once()}

        assert outcomes == {TEST_USER_ID: "internal_error", OTHER_USER_ID: "success"}

    @pytest.mark.asyncio
    async def test_success_marks_synced(
        self, scheduler: PollScheduler, connected_credential: OAuthCredential, clock
    ) -> None:
        await scheduler.run_once()
        assert connected_credential.last_synced_at == clock()
        assert await scheduler.run_once() == []
