"""Sync engine for the suggestion mirror.

SyncEngine pushes queued local changes to the remote store through the
retry controller, dispatches promotions for approvals this device made,
and pulls the remote snapshot back for an id-keyed merge. It receives the
host lifecycle engine to reach the local store, the remote store, the
promoter and the merge logic.

A failed change stays queued with its failure count bumped; after
MAX_SYNC_FAILURES passes it is parked until ``requeue_failed()``.
Remote failures are reported in the SyncResult and never raised.
"""

import asyncio
import logging
from typing import Optional

from mallex.errors import PromotionFailed, RemoteStoreError, StorageCorrupt, SyncFailed
from mallex.types import (
    OP_DELETE,
    OP_PROMOTE,
    TARGET_SUGGESTIONS,
    TARGET_TASKS,
    QueuedChange,
    SuggestionStatus,
    SyncResult,
    utc_now,
)

from .local import MAX_SYNC_FAILURES
from .retry import with_retry
from .serializers import record_to_suggestion, suggestion_to_record

logger = logging.getLogger(__name__)

# Maximum queued changes pushed per pass
PUSH_BATCH_SIZE = 100


class SyncEngine:
    """Push/pull/merge for one lifecycle engine.

    Passes are serialised with an asyncio lock, so an explicit ``sync()``
    and a background pass never push the same change twice.

    Args:
        host: The SuggestionEngine that owns the collection.
    """

    def __init__(self, host):
        self._host = host
        self._lock = asyncio.Lock()

    async def _retry(self, operation, description: str):
        return await with_retry(
            operation,
            policy=self._host.retry_policy,
            sleep=self._host.sleep,
            description=description,
        )

    # === Core Push/Pull ===

    async def sync(self) -> SyncResult:
        """Push queued changes, run promotions, then pull and merge."""
        result = SyncResult()

        if self._host.remote is None:
            logger.debug("No remote store configured, skipping sync")
            result.errors.append("No remote store configured")
            return result

        async with self._lock:
            await self._push_suggestions(result)
            await self._push_promotions(result)
            await self._pull(result, status=None)

            if result.success or result.pushed > 0 or result.pulled > 0:
                self._host.local.set_meta("last_sync_time", utc_now())

        logger.info(
            f"Sync complete: pushed={result.pushed}, pulled={result.pulled}, "
            f"promoted={result.promoted}, conflicts={result.conflict_count}, "
            f"errors={len(result.errors)}"
        )
        return result

    async def pull(self, status: Optional[SuggestionStatus] = None) -> SyncResult:
        """Pull-only pass: merge a remote snapshot without pushing."""
        result = SyncResult()
        if self._host.remote is None:
            result.errors.append("No remote store configured")
            return result
        async with self._lock:
            await self._pull(result, status=status)
        return result

    def _record_failure(self, change: QueuedChange, error: Exception, result: SyncResult):
        retry_count = self._host.local.record_sync_failure(change.id, str(error))
        if retry_count >= MAX_SYNC_FAILURES:
            logger.warning(
                f"Change {change.operation}:{change.record_id} failed {retry_count} sync passes, "
                f"parking it until requeued"
            )
        result.errors.append(
            f"Failed to {change.operation} {change.record_id}: {error} "
            f"(failure {retry_count}/{MAX_SYNC_FAILURES})"
        )
        result.failed_ids.append(change.record_id)

    async def _push_suggestions(self, result: SyncResult) -> None:
        local = self._host.local
        queued = [
            c for c in local.get_queued_changes(limit=PUSH_BATCH_SIZE) if c.target == TARGET_SUGGESTIONS
        ]
        logger.debug(f"Pushing {len(queued)} queued suggestion changes")

        for change in queued:
            try:
                await self._push_suggestion(change, result)
            except (SyncFailed, RemoteStoreError) as e:
                self._record_failure(change, e, result)

    async def _push_suggestion(self, change: QueuedChange, result: SyncResult) -> None:
        local = self._host.local
        remote = self._host.remote

        if change.operation == OP_DELETE:
            await self._retry(
                lambda: remote.delete_suggestion(change.record_id),
                f"delete suggestion {change.record_id}",
            )
            local.clear_queued_change(change.id, change.revision)
            result.pushed += 1
            return

        record = self._host.get(change.record_id)
        if record is None:
            # Removed locally after the change was queued and the delete
            # replaced nothing (e.g. a local cache reset); nothing to push.
            logger.debug(f"Dropping upsert for vanished suggestion {change.record_id}")
            local.clear_queued_change(change.id, change.revision)
            return

        await self._retry(
            lambda: remote.upsert_suggestion(record),
            f"upsert suggestion {change.record_id}",
        )
        confirmed = local.clear_queued_change(change.id, change.revision)
        result.pushed += 1

        # Unconfirmed means either a newer local mutation replaced the entry
        # (it carries the promotion request forward) or a local reset
        # dropped it, in which case the approval still landed remotely.
        payload = change.payload or {}
        if not confirmed:
            confirmed = not local.has_pending_change(record.id, TARGET_SUGGESTIONS)
        if confirmed and payload.get("promote") and record.status is SuggestionStatus.APPROVED:
            local.queue_change(
                TARGET_TASKS,
                record.id,
                OP_PROMOTE,
                {
                    "suggestion": suggestion_to_record(record),
                    "moderator_id": payload.get("moderator_id"),
                },
            )
            logger.debug(f"Approval of {record.id} confirmed, promotion queued")

    async def _push_promotions(self, result: SyncResult) -> None:
        local = self._host.local
        queued = [
            c for c in local.get_queued_changes(limit=PUSH_BATCH_SIZE) if c.target == TARGET_TASKS
        ]
        for change in queued:
            try:
                await self._promote(change, result)
            except PromotionFailed as e:
                self._record_failure(change, e, result)

    async def _promote(self, change: QueuedChange, result: SyncResult) -> None:
        local = self._host.local
        promoter = self._host.promoter
        if promoter is None:
            logger.warning(f"No promoter configured, leaving promotion of {change.record_id} queued")
            return

        payload = change.payload or {}
        try:
            suggestion = record_to_suggestion(payload.get("suggestion"))
        except StorageCorrupt as e:
            logger.warning(f"Dropping unreadable promotion for {change.record_id}: {e}")
            local.clear_queued_change(change.id)
            return

        outcome = await promoter.promote(suggestion, payload.get("moderator_id"))
        local.clear_queued_change(change.id, change.revision)
        if getattr(outcome, "created", True):
            result.promoted += 1

    async def _pull(self, result: SyncResult, status: Optional[SuggestionStatus]) -> None:
        remote = self._host.remote
        try:
            records = await self._retry(
                lambda: remote.list_suggestions(status),
                "list suggestions",
            )
        except (SyncFailed, RemoteStoreError) as e:
            logger.error(f"Failed to pull suggestions: {e}")
            result.errors.append(f"Failed to pull suggestions: {e}")
            return

        pulled, conflicts = self._host.merge_remote_many(records, complete=status is None)
        result.pulled += pulled
        result.conflicts.extend(conflicts)
