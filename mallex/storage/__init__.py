"""Mallex storage backends.

Local-first storage using SQLite, with remote stores reached through the
retry controller by the sync engine.
"""

from .http_remote import HttpRemoteStore, classify_http_status
from .local import MAX_SYNC_FAILURES, LocalSuggestionStore
from .remote import InMemoryRemoteStore
from .retry import RetryPolicy, is_retryable, with_retry
from .serializers import (
    record_to_suggestion,
    record_to_task,
    records_to_suggestions,
    suggestion_to_record,
    task_to_record,
)
from .sync_engine import SyncEngine

__all__ = [
    # Stores
    "LocalSuggestionStore",
    "InMemoryRemoteStore",
    "HttpRemoteStore",
    "classify_http_status",
    "MAX_SYNC_FAILURES",
    # Retry
    "RetryPolicy",
    "is_retryable",
    "with_retry",
    # Sync
    "SyncEngine",
    # Serialization
    "suggestion_to_record",
    "record_to_suggestion",
    "records_to_suggestions",
    "task_to_record",
    "record_to_task",
]
