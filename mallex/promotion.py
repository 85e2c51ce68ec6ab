"""Promotion of approved suggestions into the live task collection.

A promoted task keeps the suggestion's id, which makes promotion
idempotent: if a task with that id already exists, promoting again is a
no-op. A failed promotion never touches the suggestion itself; the sync
engine keeps the promotion queued and retries it on the next pass.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from mallex.errors import (
    InvalidTransition,
    PromotionFailed,
    RemoteStoreError,
    StorageCorrupt,
    SyncFailed,
)
from mallex.protocols import TaskSink
from mallex.storage.retry import RetryPolicy, Sleep, with_retry
from mallex.types import Suggestion, SuggestionStatus, Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromotionOutcome:
    task: Task
    created: bool  # False when the task already existed


class PromotionAdapter:
    """Writes approved suggestions into a TaskSink, at most once per id.

    Args:
        sink: The live task collection.
        policy: Retry policy for the sink's remote calls.
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        sink: TaskSink,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleep] = None,
    ):
        self._sink = sink
        self._policy = policy
        self._sleep = sleep

    async def promote(self, suggestion: Suggestion, moderator_id: Optional[str]) -> PromotionOutcome:
        """Create the live task for an approved suggestion.

        Raises:
            InvalidTransition: If the suggestion is not approved.
            PromotionFailed: If the task collection could not be read or written.
        """
        if suggestion.status is not SuggestionStatus.APPROVED:
            raise InvalidTransition(suggestion.id, suggestion.status.value, "promote")

        try:
            existing = await with_retry(
                lambda: self._sink.get_task(suggestion.id),
                policy=self._policy,
                sleep=self._sleep,
                description=f"read task {suggestion.id}",
            )
            if existing is not None:
                logger.info(f"Suggestion {suggestion.id} already promoted, skipping")
                return PromotionOutcome(task=existing, created=False)

            task = Task.from_suggestion(suggestion, moderator_id)
            await with_retry(
                lambda: self._sink.save_task(task),
                policy=self._policy,
                sleep=self._sleep,
                description=f"write task {suggestion.id}",
            )
        except (SyncFailed, RemoteStoreError, StorageCorrupt) as e:
            logger.error(f"Failed to promote suggestion {suggestion.id}: {e}")
            raise PromotionFailed(suggestion.id, e) from e

        logger.info(f"Promoted suggestion {suggestion.id} to task (by {task.created_by})")
        return PromotionOutcome(task=task, created=True)

    # Collaborator-facing name used by the host application
    promote_to_task = promote


class InMemoryTaskStore:
    """In-process TaskSink."""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def save_task(self, task: Task) -> None:
        self._tasks[task.id] = task

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())
