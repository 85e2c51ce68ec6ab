"""In-process remote store.

Keeps the remote record layout (serialized dicts) in memory and notifies
subscribers synchronously on every write. Used for offline development,
for the CLI when no backend is configured, and by the test suite.
"""

import logging
from typing import Dict, List, Optional, Tuple

from mallex.protocols import ChangeCallback, Unsubscribe
from mallex.types import Suggestion, SuggestionChange, SuggestionStatus, Task

from .serializers import (
    record_to_suggestion,
    record_to_task,
    suggestion_to_record,
    task_to_record,
)

logger = logging.getLogger(__name__)


class InMemoryRemoteStore:
    """Dict-backed implementation of RemoteSuggestionStore and TaskSink."""

    def __init__(self):
        self._suggestions: Dict[str, dict] = {}
        self._tasks: Dict[str, dict] = {}
        self._subscribers: List[Tuple[Optional[SuggestionStatus], ChangeCallback]] = []

    # === Suggestions ===

    async def upsert_suggestion(self, suggestion: Suggestion) -> None:
        previous = self._suggestions.get(suggestion.id)
        self._suggestions[suggestion.id] = suggestion_to_record(suggestion)
        old_status = previous["status"] if previous else None
        self._notify(SuggestionChange("upsert", suggestion), old_status)

    async def delete_suggestion(self, suggestion_id: str) -> None:
        previous = self._suggestions.pop(suggestion_id, None)
        if previous is None:
            return
        self._notify(SuggestionChange("delete", record_to_suggestion(previous)), None)

    async def list_suggestions(
        self, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]:
        records = [
            r
            for r in self._suggestions.values()
            if status is None or r["status"] == SuggestionStatus(status).value
        ]
        records.sort(key=lambda r: r["createdAt"], reverse=True)
        return [record_to_suggestion(r) for r in records]

    def on_change(
        self, status: Optional[SuggestionStatus], callback: ChangeCallback
    ) -> Unsubscribe:
        entry = (SuggestionStatus(status) if status is not None else None, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def _notify(self, change: SuggestionChange, old_status: Optional[str]) -> None:
        # A subscriber filtered on a status also hears about records leaving it.
        for status, callback in list(self._subscribers):
            if (
                status is None
                or change.suggestion.status is status
                or old_status == status.value
            ):
                try:
                    callback(change)
                except Exception as e:
                    logger.error(f"Change subscriber failed: {e}", exc_info=True)

    # === Tasks ===

    async def get_task(self, task_id: str) -> Optional[Task]:
        return record_to_task(self._tasks.get(task_id))

    async def save_task(self, task: Task) -> None:
        self._tasks[task.id] = task_to_record(task)

    async def list_tasks(self) -> List[Task]:
        return [record_to_task(r) for r in self._tasks.values()]
