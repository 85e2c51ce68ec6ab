"""
mallex Protocol Definitions
===========================

Interface contracts between the lifecycle engine and its collaborators.

Components and their roles:
- Engine:        Owns the canonical suggestion collection. The only writer.
- Local store:   Durable on-device mirror. Synchronous.
- Remote store:  Cross-device store the engine converges to. Asynchronous.
- Task sink:     The live task collection approved suggestions land in.
- Promoter:      Turns an approved suggestion into a task, idempotently.

Error handling:
- Remote implementations raise RemoteStoreError / TransientSyncError
  (see ``mallex.errors.remote_error``), never bare transport exceptions
- Promoters raise PromotionFailed
"""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from mallex.types import Suggestion, SuggestionChange, SuggestionStatus, Task

# Identity capability check supplied by the host application.
ModeratorCheck = Callable[[Optional[str]], bool]

ChangeCallback = Callable[[SuggestionChange], Any]
Unsubscribe = Callable[[], None]

# A zero-argument factory producing the awaitable for one remote attempt.
RemoteOperation = Callable[[], Awaitable[Any]]


# =============================================================================
# REMOTE STORE
# =============================================================================


@runtime_checkable
class RemoteSuggestionStore(Protocol):
    """Authoritative multi-device suggestion store.

    Implementations: InMemoryRemoteStore, HttpRemoteStore.
    """

    async def upsert_suggestion(self, suggestion: Suggestion) -> None:
        """Create or replace the record keyed by ``suggestion.id``."""
        ...

    async def delete_suggestion(self, suggestion_id: str) -> None:
        """Delete a record. Deleting a missing record is not an error."""
        ...

    async def list_suggestions(
        self, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]:
        """Snapshot read, most recent first, optionally filtered by status."""
        ...

    def on_change(
        self, status: Optional[SuggestionStatus], callback: ChangeCallback
    ) -> Unsubscribe:
        """Stream change notifications for records with ``status``."""
        ...


# =============================================================================
# LIVE TASKS
# =============================================================================


@runtime_checkable
class TaskSink(Protocol):
    """The live task collection."""

    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    async def save_task(self, task: Task) -> None:
        ...


@runtime_checkable
class Promoter(Protocol):
    """Converts an approved suggestion into a live task.

    Must be idempotent: promoting a suggestion whose id already exists in
    the task collection does not create a second task.
    """

    async def promote(self, suggestion: Suggestion, moderator_id: Optional[str]) -> Any:
        ...
