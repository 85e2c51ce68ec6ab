"""Tests for the sync engine.

Tests:
- Pushing queued changes and pulling them on another device
- Merge rules for concurrent local and remote changes
- Retry, failure tracking, parking and requeue
- Mutations landing while a push is in flight
- Promotion after confirmed approval, and its retries
- Remote change subscriptions
"""

import asyncio
from dataclasses import replace

import pytest

from mallex.errors import RemoteStoreError
from mallex.storage.local import MAX_SYNC_FAILURES
from mallex.types import Suggestion, SuggestionStatus

from conftest import FlakyRemoteStore


def _resolutions(result):
    return [c.resolution for c in result.conflicts]


class HookedRemoteStore(FlakyRemoteStore):
    """Runs a one-shot callback while an upsert is in flight."""

    def __init__(self):
        super().__init__()
        self.during_upsert = None

    async def upsert_suggestion(self, suggestion):
        hook, self.during_upsert = self.during_upsert, None
        if hook is not None:
            hook()
        await super().upsert_suggestion(suggestion)


@pytest.fixture
def devices(make_engine, tmp_path):
    """Two devices sharing one remote store."""
    return make_engine(tmp_dir=tmp_path), make_engine(tmp_dir=tmp_path)


class TestPushPull:
    @pytest.mark.asyncio
    async def test_new_suggestion_reaches_other_device(self, devices):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")

        pushed = await a.sync()
        pulled = await b.sync()

        assert pushed.success and pushed.pushed == 1
        assert pulled.pulled == 1
        assert b.get(s.id) == s
        assert b.unsynced_ids() == set()
        assert a.unsynced_ids() == set()

    @pytest.mark.asyncio
    async def test_pulled_records_keep_created_order(self, devices):
        a, b = devices
        x = a.add_suggestion("fate", "X")
        y = a.add_suggestion("fate", "Y")
        await a.sync()
        z = b.add_suggestion("fate", "Z")

        await b.refresh()

        assert [s.id for s in b.suggestions] == [z.id, y.id, x.id]

    @pytest.mark.asyncio
    async def test_remote_delete_reaches_other_device(self, devices):
        a, b = devices
        s = a.add_suggestion("fate", "Short-lived")
        await a.sync()
        await b.sync()

        a.remove(s.id)
        await a.sync()
        result = await b.sync()

        assert b.get(s.id) is None
        assert result.pulled == 1

    @pytest.mark.asyncio
    async def test_filtered_refresh_does_not_prune(self, devices):
        a, b = devices
        s = a.add_suggestion("fate", "Approve me")
        await a.sync()
        await b.sync()
        a.approve(s.id)
        await a.sync()

        await b.refresh(SuggestionStatus.PENDING)

        assert b.get(s.id).status is SuggestionStatus.PENDING

    @pytest.mark.asyncio
    async def test_sync_records_last_sync_time(self, engine, local_store):
        engine.add_suggestion("fate", "A")
        await engine.sync()
        assert local_store.get_last_sync_time() is not None

    @pytest.mark.asyncio
    async def test_sync_without_remote_reports_error(self, guest_engine):
        guest_engine.add_suggestion("fate", "Offline")

        result = await guest_engine.sync()

        assert not result.success
        assert result.errors == ["No remote store configured"]
        assert guest_engine.pending_sync_count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_syncs_push_once(self, engine, remote):
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)

        first, second = await asyncio.gather(engine.sync(), engine.sync())

        assert first.pushed + second.pushed == 1
        assert first.promoted + second.promoted == 1
        assert remote.calls["upsert_suggestion"] == 1
        assert len(await remote.list_tasks()) == 1


class TestMergeRules:
    @pytest.mark.asyncio
    async def test_remote_decision_wins_over_stale_local(self, devices):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")
        await a.sync()
        await b.sync()

        a.approve(s.id, note="fun")
        await a.sync()
        result = await b.sync()

        assert b.get(s.id).status is SuggestionStatus.APPROVED
        assert b.get(s.id).note == "fun"
        assert _resolutions(result) == ["remote_wins"]

    @pytest.mark.asyncio
    async def test_unsynced_local_change_wins(self, devices, remote):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")
        await a.sync()
        await b.sync()

        b.reject(s.id, note="no")
        result = await b.refresh()

        assert b.get(s.id).status is SuggestionStatus.REJECTED
        assert _resolutions(result) == ["local_pending_wins"]

        await b.sync()
        (stored,) = await remote.list_suggestions()
        assert stored.status is SuggestionStatus.REJECTED

    @pytest.mark.asyncio
    async def test_remote_decision_discards_stale_edit(self, devices, remote):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")
        await a.sync()
        await b.sync()

        a.reject(s.id)
        await a.sync()
        b.update_text(s.id, "Do eleven push-ups")
        result = await b.refresh()

        merged = b.get(s.id)
        assert merged.status is SuggestionStatus.REJECTED
        assert merged.text == "Do ten push-ups"
        assert _resolutions(result) == ["remote_terminal_wins"]
        assert b.unsynced_ids() == set()

        await b.sync()
        (stored,) = await remote.list_suggestions()
        assert stored.status is SuggestionStatus.REJECTED
        assert stored.text == "Do ten push-ups"

    @pytest.mark.asyncio
    async def test_terminal_local_never_regresses(self, engine, remote):
        s = engine.add_suggestion("fate", "Do ten push-ups")
        approved = engine.approve(s.id)
        await engine.sync()

        # A stale writer puts the pending version back
        await remote.upsert_suggestion(replace(approved, status=SuggestionStatus.PENDING))
        result = await engine.refresh()

        assert engine.get(s.id).status is SuggestionStatus.APPROVED
        assert _resolutions(result) == ["local_terminal_kept"]
        assert engine.unsynced_ids() == {s.id}

        await engine.sync()
        (stored,) = await remote.list_suggestions()
        assert stored.status is SuggestionStatus.APPROVED
        assert len(await remote.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_remote_delete_keeps_locally_changed_record(self, devices):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")
        await a.sync()
        await b.sync()

        b.update_text(s.id, "Do twelve push-ups")
        a.remove(s.id)
        await a.sync()
        await b.refresh()

        assert b.get(s.id).text == "Do twelve push-ups"

    def test_merge_remote_inserts_unknown(self, engine):
        incoming = Suggestion(id="r1", category_id="shame", text="Sing", created_at=5)

        assert engine.merge_remote(incoming) is True
        assert engine.get("r1") == incoming
        assert engine.unsynced_ids() == set()

    def test_merge_remote_delete_unknown_is_noop(self, engine):
        assert engine.merge_remote_delete("missing") is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failures_recovered_within_pass(self, engine, remote, sleep):
        remote.fail("upsert_suggestion", times=2)
        engine.add_suggestion("fate", "A")

        result = await engine.sync()

        assert result.success
        assert result.pushed == 1
        assert sleep.delays == [2, 4]
        assert remote.calls["upsert_suggestion"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_budget_keeps_change_queued(self, engine, remote, local_store):
        remote.fail_always("upsert_suggestion")
        s = engine.add_suggestion("fate", "A")

        result = await engine.sync()

        assert not result.success
        assert result.failed_ids == [s.id]
        assert "failed after 4 attempts" in result.errors[0]
        assert remote.calls["upsert_suggestion"] == 4
        (change,) = local_store.get_queued_changes()
        assert change.retry_count == 1
        assert engine.get(s.id) == s

        remote.heal("upsert_suggestion")
        retry = await engine.sync()

        assert retry.success
        assert engine.unsynced_ids() == set()
        assert [r.id for r in await remote.list_suggestions()] == [s.id]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self, engine, remote, sleep):
        remote.fail("upsert_suggestion", RemoteStoreError("permission-denied", "nope"))
        s = engine.add_suggestion("fate", "A")

        result = await engine.sync()

        assert result.failed_ids == [s.id]
        assert remote.calls["upsert_suggestion"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_repeated_failures_park_until_requeued(self, engine, remote):
        remote.fail_always("upsert_suggestion")
        s = engine.add_suggestion("fate", "A")

        for _ in range(MAX_SYNC_FAILURES):
            await engine.sync()
        calls = remote.calls["upsert_suggestion"]
        await engine.sync()

        assert remote.calls["upsert_suggestion"] == calls
        assert [c.record_id for c in engine.failed_changes()] == [s.id]
        assert engine.unsynced_ids() == {s.id}

        remote.heal("upsert_suggestion")
        assert engine.requeue_failed() == 1
        result = await engine.sync()

        assert result.success and result.pushed == 1
        assert engine.failed_changes() == []

    @pytest.mark.asyncio
    async def test_pull_failure_reported_after_push(self, engine, remote):
        remote.fail_always("list_suggestions")
        engine.add_suggestion("fate", "A")

        result = await engine.sync()

        assert result.pushed == 1
        assert any("Failed to pull" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_failed_delete_retried_next_pass(self, engine, remote):
        s = engine.add_suggestion("fate", "A")
        await engine.sync()
        remote.fail_always("delete_suggestion")

        engine.remove(s.id)
        first = await engine.sync()
        remote.heal("delete_suggestion")
        second = await engine.sync()

        assert first.failed_ids == [s.id]
        assert second.success
        assert await remote.list_suggestions() == []


class TestInFlightMutations:
    @pytest.fixture
    def hooked(self):
        return HookedRemoteStore()

    @pytest.mark.asyncio
    async def test_edit_during_push_is_pushed_next_pass(self, make_engine, local_store, hooked):
        engine = make_engine(local=local_store, remote=hooked)
        s = engine.add_suggestion("fate", "Original")
        hooked.during_upsert = lambda: engine.update_text(s.id, "Edited")

        await engine.sync()
        assert engine.unsynced_ids() == {s.id}

        await engine.sync()
        (stored,) = await hooked.list_suggestions()
        assert stored.text == "Edited"
        assert engine.unsynced_ids() == set()

    @pytest.mark.asyncio
    async def test_approval_during_push_promotes_once(self, make_engine, local_store, hooked):
        engine = make_engine(local=local_store, remote=hooked)
        s = engine.add_suggestion("fate", "Do ten push-ups")
        hooked.during_upsert = lambda: engine.approve(s.id)

        first = await engine.sync()
        second = await engine.sync()
        await engine.sync()

        assert first.promoted == 0
        assert second.promoted == 1
        assert [t.id for t in await hooked.list_tasks()] == [s.id]

    @pytest.mark.asyncio
    async def test_removal_during_approval_push_skips_promotion(
        self, make_engine, local_store, hooked
    ):
        engine = make_engine(local=local_store, remote=hooked)
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)
        hooked.during_upsert = lambda: engine.remove(s.id)

        await engine.sync()
        await engine.sync()

        assert await hooked.list_tasks() == []
        assert await hooked.list_suggestions() == []
        assert engine.pending_sync_count() == 0

    @pytest.mark.asyncio
    async def test_local_reset_during_approval_push_still_promotes(
        self, make_engine, local_store, hooked
    ):
        engine = make_engine(local=local_store, remote=hooked)
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)
        hooked.during_upsert = engine.clear_all_local

        first = await engine.sync()
        await engine.sync()

        assert first.promoted == 1
        assert [t.id for t in await hooked.list_tasks()] == [s.id]
        assert engine.get(s.id).status is SuggestionStatus.APPROVED
        assert engine.pending_sync_count() == 0


class TestPromotion:
    @pytest.mark.asyncio
    async def test_failed_promotion_keeps_approval_and_retries(self, engine, remote):
        remote.fail_always("save_task")
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)

        first = await engine.sync()

        assert not first.success
        assert first.promoted == 0
        assert engine.get(s.id).status is SuggestionStatus.APPROVED
        assert engine.unsynced_ids() == set()
        assert engine.unpromoted_ids() == {s.id}
        (stored,) = await remote.list_suggestions()
        assert stored.status is SuggestionStatus.APPROVED

        remote.heal("save_task")
        second = await engine.sync()

        assert second.success
        assert second.promoted == 1
        assert engine.unpromoted_ids() == set()
        assert len(await remote.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_existing_task_is_not_duplicated(self, engine, remote):
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)
        await engine.sync()

        # Another device promoted the same suggestion meanwhile
        engine.local.queue_change(
            "tasks",
            s.id,
            "promote",
            {"suggestion": {"id": s.id, "categoryId": "fate", "text": "Do ten push-ups",
                            "status": "approved", "createdAt": s.created_at},
             "moderator_id": "mod-2"},
        )
        result = await engine.sync()

        assert result.success
        assert result.promoted == 0
        assert len(await remote.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_promotion_survives_local_reset(self, engine, remote):
        remote.fail_always("save_task")
        s = engine.add_suggestion("fate", "Do ten push-ups")
        engine.approve(s.id)
        await engine.sync()

        engine.clear_all_local()
        remote.heal("save_task")
        result = await engine.sync()

        assert result.promoted == 1
        assert [t.id for t in await remote.list_tasks()] == [s.id]


class TestSubscription:
    @pytest.mark.asyncio
    async def test_remote_changes_are_merged(self, engine, remote):
        unsubscribe = engine.subscribe()
        incoming = Suggestion(id="r1", category_id="shame", text="Sing", created_at=5)

        await remote.upsert_suggestion(incoming)
        assert engine.get("r1") == incoming

        await remote.delete_suggestion("r1")
        assert engine.get("r1") is None

        unsubscribe()
        await remote.upsert_suggestion(incoming)
        assert engine.get("r1") is None

    @pytest.mark.asyncio
    async def test_pending_filter_sees_decisions(self, devices, remote):
        a, b = devices
        s = a.add_suggestion("fate", "Do ten push-ups")
        b.subscribe(SuggestionStatus.PENDING)

        await a.sync()
        assert b.get(s.id).status is SuggestionStatus.PENDING

        a.approve(s.id)
        await a.sync()
        assert b.get(s.id).status is SuggestionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_own_pushes_do_not_loop_back(self, engine, remote):
        engine.subscribe()
        s = engine.add_suggestion("fate", "A")

        result = await engine.sync()

        assert result.conflicts == []
        assert engine.get(s.id) == s
        assert engine.unsynced_ids() == set()
        assert remote.calls["upsert_suggestion"] == 1

    def test_subscribe_requires_remote(self, guest_engine):
        with pytest.raises(RuntimeError):
            guest_engine.subscribe()
