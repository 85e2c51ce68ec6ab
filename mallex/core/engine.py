"""Suggestion lifecycle engine.

The engine owns the canonical in-memory suggestion collection. Every
mutation is validated, written to the local mirror together with its
queued remote change, and only then made visible through the derived
views. Remote synchronisation is asynchronous and never unwinds into the
synchronous API: local success is immediate, remote trouble shows up in
``last_sync_result`` and ``unsynced_ids()``.

State machine per suggestion::

    pending --approve--> approved
    pending --reject---> rejected

Both terminal states leave only through ``remove()``.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from mallex.core.validation import sanitize_string, validate_note, validate_suggestion_text
from mallex.errors import InvalidTransition, NotModeratorError, StorageCorrupt
from mallex.promotion import PromotionAdapter
from mallex.protocols import (
    ModeratorCheck,
    Promoter,
    RemoteSuggestionStore,
    TaskSink,
    Unsubscribe,
)
from mallex.storage.local import LocalSuggestionStore, PendingChange
from mallex.storage.retry import RetryPolicy, Sleep
from mallex.storage.sync_engine import SyncEngine
from mallex.types import (
    GUEST_IDENTITY,
    OP_DELETE,
    OP_UPSERT,
    TARGET_SUGGESTIONS,
    TARGET_TASKS,
    QueuedChange,
    Suggestion,
    SuggestionChange,
    SuggestionStatus,
    SyncConflict,
    SyncResult,
    now_ms,
)

logger = logging.getLogger(__name__)

Listener = Callable[["SuggestionEngine"], Any]


def _deny_all(identity: Optional[str]) -> bool:
    return False


class SuggestionEngine:
    """Creates, moderates and removes suggestions; keeps both stores in step.

    Args:
        local: Durable local mirror. Required.
        remote: Cross-device store. Without one the engine is local-only.
        promoter: Receives approved suggestions once their approval is
            confirmed remotely. Defaults to a PromotionAdapter over
            ``remote`` when the remote store is also a TaskSink.
        identity: Opaque identity of the acting user.
        is_moderator: Capability check for ``identity``.
        retry_policy: Retry budget for remote operations.
        sleep: Awaitable sleep used between retries (injectable for tests).
        clock: Returns the current time in epoch milliseconds.
        id_factory: Returns a fresh suggestion id.
        auto_sync: Schedule a background sync pass after each mutation
            when an event loop is running.
    """

    def __init__(
        self,
        local: LocalSuggestionStore,
        remote: Optional[RemoteSuggestionStore] = None,
        *,
        promoter: Optional[Promoter] = None,
        identity: Optional[str] = None,
        is_moderator: Optional[ModeratorCheck] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleep] = None,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        auto_sync: bool = False,
    ):
        self.local = local
        self.remote = remote
        self.identity = identity
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.auto_sync = auto_sync
        self.last_sync_result: Optional[SyncResult] = None

        if promoter is None and remote is not None and isinstance(remote, TaskSink):
            promoter = PromotionAdapter(remote, policy=self.retry_policy, sleep=sleep)
        self.promoter = promoter

        self._is_moderator = is_moderator or _deny_all
        self._clock = clock or now_ms
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._listeners: List[Listener] = []
        self._sync_engine = SyncEngine(self)
        self._sync_task: Optional[asyncio.Task] = None
        self._sync_again = False

        self._suggestions: List[Suggestion] = self._load()
        self._refresh_views()

    def _load(self) -> List[Suggestion]:
        try:
            suggestions = self.local.load()
        except StorageCorrupt as e:
            logger.warning(f"Local suggestions unreadable, starting with an empty collection: {e}")
            return []
        logger.debug(f"Loaded {len(suggestions)} suggestions from local mirror")
        return suggestions

    # === Derived Views ===

    def _refresh_views(self) -> None:
        self._index: Dict[str, Suggestion] = {s.id: s for s in self._suggestions}
        self._views = {
            status: tuple(s for s in self._suggestions if s.status is status)
            for status in SuggestionStatus
        }

    @property
    def suggestions(self) -> Tuple[Suggestion, ...]:
        """The full collection, most recent first."""
        return tuple(self._suggestions)

    @property
    def pending(self) -> Tuple[Suggestion, ...]:
        return self._views[SuggestionStatus.PENDING]

    @property
    def approved(self) -> Tuple[Suggestion, ...]:
        return self._views[SuggestionStatus.APPROVED]

    @property
    def rejected(self) -> Tuple[Suggestion, ...]:
        return self._views[SuggestionStatus.REJECTED]

    def by_status(self, status: SuggestionStatus) -> Tuple[Suggestion, ...]:
        return self._views[SuggestionStatus(status)]

    def get(self, suggestion_id: str) -> Optional[Suggestion]:
        return self._index.get(suggestion_id)

    def __len__(self) -> int:
        return len(self._suggestions)

    # === Listeners ===

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(engine)`` after every mutation. Returns an unsubscribe."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Suggestion listener failed: {e}", exc_info=True)

    # === Mutations ===

    def _commit(
        self,
        suggestions: List[Suggestion],
        changes: Iterable[PendingChange] = (),
        discard: Iterable[Tuple[str, str]] = (),
    ):
        """Persist, then publish. Nothing is visible if the local write fails."""
        changes = list(changes)
        self.local.save(suggestions, changes, discard)
        self._suggestions = suggestions
        self._refresh_views()
        self._notify()
        if changes:
            self._request_sync()

    def _replaced(self, updated: Suggestion) -> List[Suggestion]:
        return [updated if s.id == updated.id else s for s in self._suggestions]

    def _new_id(self) -> str:
        suggestion_id = self._id_factory()
        while suggestion_id in self._index:
            logger.warning(f"Generated duplicate suggestion id {suggestion_id}, retrying")
            suggestion_id = self._id_factory()
        return suggestion_id

    def add_suggestion(
        self, category_id: str, text: str, created_by: Optional[str] = GUEST_IDENTITY
    ) -> Suggestion:
        """Create a pending suggestion at the head of the collection.

        Returns as soon as the local mirror has recorded it; the remote
        write is queued.

        Raises:
            ValidationError: If ``text`` is empty after trimming.
        """
        text = validate_suggestion_text(text)
        category_id = sanitize_string(category_id, "category_id", 100).strip()

        suggestion = Suggestion(
            id=self._new_id(),
            category_id=category_id,
            text=text,
            status=SuggestionStatus.PENDING,
            created_at=self._clock(),
            created_by=created_by,
        )
        self._commit(
            [suggestion] + self._suggestions,
            [(TARGET_SUGGESTIONS, suggestion.id, OP_UPSERT, None)],
        )
        logger.info(f"Suggestion {suggestion.id} created in {category_id} by {created_by}")
        return suggestion

    create = add_suggestion

    @property
    def is_moderator(self) -> bool:
        return bool(self._is_moderator(self.identity))

    def _decide(
        self, suggestion_id: str, status: SuggestionStatus, note: Optional[str], action: str
    ) -> Optional[Suggestion]:
        if not self.is_moderator:
            raise NotModeratorError(self.identity)

        current = self._index.get(suggestion_id)
        if current is None:
            logger.debug(f"Ignoring {action} of unknown suggestion {suggestion_id}")
            return None
        if not current.is_pending:
            raise InvalidTransition(suggestion_id, current.status.value, action)

        updated = replace(current, status=status, note=validate_note(note))
        payload = None
        if status is SuggestionStatus.APPROVED:
            payload = {"promote": True, "moderator_id": self.identity}
        self._commit(
            self._replaced(updated),
            [(TARGET_SUGGESTIONS, suggestion_id, OP_UPSERT, payload)],
        )
        logger.info(f"Suggestion {suggestion_id} {status.value} by {self.identity}")
        return updated

    def approve(self, suggestion_id: str, note: Optional[str] = None) -> Optional[Suggestion]:
        """Move a pending suggestion to approved.

        Returns the updated suggestion, or None if the id is unknown.

        Raises:
            NotModeratorError: If the acting identity is not a moderator.
            InvalidTransition: If the suggestion is not pending.
        """
        return self._decide(suggestion_id, SuggestionStatus.APPROVED, note, "approve")

    def reject(self, suggestion_id: str, note: Optional[str] = None) -> Optional[Suggestion]:
        """Move a pending suggestion to rejected. Same contract as ``approve``."""
        return self._decide(suggestion_id, SuggestionStatus.REJECTED, note, "reject")

    def update_text(self, suggestion_id: str, text: str) -> bool:
        """Replace the text of a pending suggestion.

        Edits are trimmed and validated like creation. Returns False (and
        changes nothing) if the suggestion is unknown or no longer pending.
        """
        current = self._index.get(suggestion_id)
        if current is None or not current.is_pending:
            return False

        text = validate_suggestion_text(text)
        if text == current.text:
            return True
        self._commit(
            self._replaced(replace(current, text=text)),
            [(TARGET_SUGGESTIONS, suggestion_id, OP_UPSERT, None)],
        )
        return True

    def remove(self, suggestion_id: str) -> bool:
        """Delete a suggestion at any status. Removing an unknown id is a no-op."""
        if suggestion_id not in self._index:
            return False
        self._commit(
            [s for s in self._suggestions if s.id != suggestion_id],
            [(TARGET_SUGGESTIONS, suggestion_id, OP_DELETE, None)],
        )
        logger.info(f"Suggestion {suggestion_id} removed")
        return True

    def clear_all_local(self) -> None:
        """Empty the local mirror without touching the remote store.

        Unsynced suggestion writes are discarded. Queued promotions are
        kept: their approvals are already confirmed remotely.
        """
        dropped = self.local.clear_queue(TARGET_SUGGESTIONS)
        self.local.clear()
        self._suggestions = []
        self._refresh_views()
        self._notify()
        if dropped:
            logger.warning(f"Local reset discarded {dropped} unsynced suggestion changes")

    # === Remote Merge ===

    def merge_remote_many(
        self, records: Iterable[Suggestion], complete: bool = False
    ) -> Tuple[int, List[SyncConflict]]:
        """Merge remote records by id.

        - a remote moderation decision beats an unsynced edit of a local
          pending record; the edit is discarded
        - any other unsynced local change keeps the local version
        - a terminal local record is never moved back to pending; it is
          re-queued so the remote store converges
        - otherwise the remote version wins

        With ``complete`` the records are the whole remote collection, so a
        local record missing from them was deleted remotely and is dropped
        unless it has an unsynced change.

        Returns the number of records applied and the conflicts seen.
        """
        records = list(records)
        pending_ids: Set[str] = self.local.pending_record_ids(TARGET_SUGGESTIONS)
        items = list(self._suggestions)
        index = {s.id: s for s in items}
        requeue: List[PendingChange] = []
        discard: List[Tuple[str, str]] = []
        conflicts: List[SyncConflict] = []
        applied = 0

        for remote in records:
            local = index.get(remote.id)

            if (
                remote.id in pending_ids
                and local is not None
                and local.is_pending
                and remote.status.is_terminal
            ):
                conflicts.append(
                    SyncConflict(
                        remote.id, local.status.value, remote.status.value, "remote_terminal_wins"
                    )
                )
                discard.append((TARGET_SUGGESTIONS, remote.id))
                items = [remote if s.id == remote.id else s for s in items]
                index[remote.id] = remote
                applied += 1
                continue

            if remote.id in pending_ids:
                if local is not None and local != remote:
                    conflicts.append(
                        SyncConflict(
                            remote.id, local.status.value, remote.status.value, "local_pending_wins"
                        )
                    )
                continue

            if local is None:
                position = next(
                    (i for i, s in enumerate(items) if s.created_at < remote.created_at),
                    len(items),
                )
                items.insert(position, remote)
                index[remote.id] = remote
                applied += 1
                continue

            if local == remote:
                continue

            if local.status.is_terminal and not remote.status.is_terminal:
                conflicts.append(
                    SyncConflict(
                        remote.id, local.status.value, remote.status.value, "local_terminal_kept"
                    )
                )
                requeue.append((TARGET_SUGGESTIONS, remote.id, OP_UPSERT, None))
                continue

            if local.status is not remote.status:
                conflicts.append(
                    SyncConflict(remote.id, local.status.value, remote.status.value, "remote_wins")
                )
            items = [remote if s.id == remote.id else s for s in items]
            index[remote.id] = remote
            applied += 1

        if complete:
            seen = {r.id for r in records}
            stale = [s.id for s in items if s.id not in seen and s.id not in pending_ids]
            if stale:
                logger.info(f"Dropping {len(stale)} suggestions deleted remotely")
                items = [s for s in items if s.id not in stale]
                applied += len(stale)

        if applied or requeue:
            self._commit(items, requeue, discard)
        for conflict in conflicts:
            logger.info(
                f"Merge conflict on {conflict.record_id}: local={conflict.local_status} "
                f"remote={conflict.remote_status} -> {conflict.resolution}"
            )
        return applied, conflicts

    def merge_remote(self, suggestion: Suggestion) -> bool:
        """Merge one remote record. Returns True if local state changed."""
        applied, _ = self.merge_remote_many([suggestion])
        return applied > 0

    def merge_remote_delete(self, suggestion_id: str) -> bool:
        """Apply a remote deletion unless the record has an unsynced local change."""
        if suggestion_id not in self._index:
            return False
        if self.local.has_pending_change(suggestion_id, TARGET_SUGGESTIONS):
            logger.info(f"Keeping {suggestion_id} deleted remotely: it has unsynced local changes")
            return False
        self._commit([s for s in self._suggestions if s.id != suggestion_id])
        return True

    def apply_change(self, change: SuggestionChange) -> None:
        """Subscription callback for remote change notifications."""
        if change.kind == "delete":
            self.merge_remote_delete(change.suggestion.id)
        else:
            self.merge_remote(change.suggestion)

    def subscribe(self, status: Optional[SuggestionStatus] = None) -> Unsubscribe:
        """Merge the remote change stream (optionally filtered by status)."""
        if self.remote is None:
            raise RuntimeError("No remote store configured")
        return self.remote.on_change(status, self.apply_change)

    # === Sync ===

    async def sync(self) -> SyncResult:
        """Run one sync pass: push queued changes, promote, pull and merge."""
        result = await self._sync_engine.sync()
        self.last_sync_result = result
        return result

    async def refresh(self, status: Optional[SuggestionStatus] = None) -> SyncResult:
        """Pull a remote snapshot and merge it without pushing."""
        result = await self._sync_engine.pull(status)
        self.last_sync_result = result
        return result

    def _request_sync(self) -> None:
        if not self.auto_sync or self.remote is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_again = True
            return
        self._sync_task = loop.create_task(self._background_sync())

    async def _background_sync(self) -> None:
        while True:
            self._sync_again = False
            try:
                result = await self.sync()
            except Exception as e:
                logger.error(f"Background sync failed: {e}", exc_info=True)
                return
            if result.errors:
                logger.warning(f"Background sync left {len(result.errors)} change(s) unsynced")
            if not self._sync_again:
                return

    async def wait_for_sync(self) -> Optional[SyncResult]:
        """Wait for a scheduled background pass, if any."""
        while self._sync_task is not None and not self._sync_task.done():
            await self._sync_task
        return self.last_sync_result

    def requeue_failed(self) -> int:
        """Make parked changes eligible for the next sync pass."""
        count = self.local.requeue_failed()
        if count:
            self._request_sync()
        return count

    def unsynced_ids(self) -> Set[str]:
        """Ids of suggestions with a change the remote store has not confirmed."""
        return self.local.pending_record_ids(TARGET_SUGGESTIONS)

    def unpromoted_ids(self) -> Set[str]:
        return self.local.pending_record_ids(TARGET_TASKS)

    def pending_sync_count(self) -> int:
        return self.local.pending_count()

    def failed_changes(self) -> List[QueuedChange]:
        return self.local.get_failed_changes()
