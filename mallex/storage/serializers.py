"""Record conversion between dataclasses and their persisted dict form.

The local mirror and the remote store share one record layout:
camelCase keys, ``createdAt`` as epoch milliseconds, optional fields
omitted when unset.
"""

import logging
from typing import Any, Dict, List, Optional

from mallex.errors import StorageCorrupt
from mallex.types import VALID_SUGGESTION_STATUSES, Suggestion, SuggestionStatus, Task

logger = logging.getLogger(__name__)


def suggestion_to_record(suggestion: Suggestion) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": suggestion.id,
        "categoryId": suggestion.category_id,
        "text": suggestion.text,
        "status": suggestion.status.value,
        "createdAt": suggestion.created_at,
    }
    if suggestion.note is not None:
        record["note"] = suggestion.note
    if suggestion.created_by is not None:
        record["createdBy"] = suggestion.created_by
    return record


def record_to_suggestion(record: Any) -> Suggestion:
    """Convert a persisted record into a Suggestion.

    Raises:
        StorageCorrupt: If the record is missing required fields or has
            values of the wrong type.
    """
    if not isinstance(record, dict):
        raise StorageCorrupt(f"Suggestion record must be an object, got {type(record).__name__}")

    try:
        suggestion_id = record["id"]
        category_id = record["categoryId"]
        text = record["text"]
        status = record.get("status", SuggestionStatus.PENDING.value)
        created_at = record.get("createdAt", 0)
    except KeyError as e:
        raise StorageCorrupt(f"Suggestion record missing field {e}") from e

    if not isinstance(suggestion_id, str) or not suggestion_id:
        raise StorageCorrupt("Suggestion record has an invalid id")
    if not isinstance(text, str) or not text.strip():
        raise StorageCorrupt(f"Suggestion {suggestion_id} has empty text")
    if status not in VALID_SUGGESTION_STATUSES:
        raise StorageCorrupt(f"Suggestion {suggestion_id} has unknown status {status!r}")
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        raise StorageCorrupt(f"Suggestion {suggestion_id} has invalid createdAt")
    for field_name in ("note", "createdBy"):
        value = record.get(field_name)
        if value is not None and not isinstance(value, str):
            raise StorageCorrupt(f"Suggestion {suggestion_id} has invalid {field_name}")

    return Suggestion(
        id=suggestion_id,
        category_id=str(category_id),
        text=text,
        status=SuggestionStatus(status),
        created_at=int(created_at),
        created_by=record.get("createdBy"),
        note=record.get("note"),
    )


def records_to_suggestions(records: Any) -> List[Suggestion]:
    """Convert a persisted array of records.

    Raises:
        StorageCorrupt: If ``records`` is not a list, contains an invalid
            record, or repeats an id.
    """
    if not isinstance(records, list):
        raise StorageCorrupt(f"Suggestion collection must be an array, got {type(records).__name__}")

    suggestions = [record_to_suggestion(r) for r in records]
    seen = set()
    for s in suggestions:
        if s.id in seen:
            raise StorageCorrupt(f"Duplicate suggestion id {s.id}")
        seen.add(s.id)
    return suggestions


def task_to_record(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "categoryId": task.category_id,
        "text": task.text,
        "status": task.status,
        "createdBy": task.created_by,
        "createdAt": task.created_at,
        "isActive": task.is_active,
    }


def record_to_task(record: Any) -> Optional[Task]:
    """Convert a task record; an empty body means no task.

    Raises:
        StorageCorrupt: If the record is not an object or has no id.
    """
    if not record:
        return None
    if not isinstance(record, dict):
        raise StorageCorrupt(f"Task record must be an object, got {type(record).__name__}")
    task_id = record.get("id")
    if not isinstance(task_id, str) or not task_id:
        raise StorageCorrupt("Task record has an invalid id")
    created_at = record.get("createdAt") or 0
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        raise StorageCorrupt(f"Task {task_id} has invalid createdAt")
    return Task(
        id=task_id,
        category_id=record.get("categoryId", ""),
        text=record.get("text", ""),
        status=record.get("status", SuggestionStatus.APPROVED.value),
        created_by=record.get("createdBy") or "system",
        created_at=int(created_at),
        is_active=bool(record.get("isActive", True)),
    )
