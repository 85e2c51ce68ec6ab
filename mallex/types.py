"""
Shared types for mallex.

The dataclasses here are the vocabulary between the lifecycle engine,
the stores and the promotion adapter. Suggestions and tasks are frozen:
only the engine produces new versions of a suggestion (via
``dataclasses.replace``), everything else reads them.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None for empty or invalid input."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


# === Enums ===


class SuggestionStatus(str, Enum):
    """Moderation status of a suggestion."""

    PENDING = "pending"  # Awaiting a moderator
    APPROVED = "approved"  # Terminal, eligible for promotion
    REJECTED = "rejected"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self is not SuggestionStatus.PENDING


VALID_SUGGESTION_STATUSES = frozenset(s.value for s in SuggestionStatus)

# Challenge categories known to the app. The engine treats category ids as
# opaque; this set is only used by input layers (CLI) for validation.
KNOWN_CATEGORIES = frozenset(["fate", "seduce", "confess", "escalate", "shame"])

GUEST_IDENTITY = "guest"
SYSTEM_IDENTITY = "system"

# Sync queue targets and operations
TARGET_SUGGESTIONS = "suggestions"
TARGET_TASKS = "tasks"

OP_UPSERT = "upsert"
OP_DELETE = "delete"
OP_PROMOTE = "promote"


# === Records ===


@dataclass(frozen=True)
class Suggestion:
    """A user-submitted candidate challenge.

    Lifecycle: created ``pending`` by a submitter, moved once to
    ``approved`` or ``rejected`` by a moderator, optionally deleted at
    any status. ``text`` is only editable while pending and ``note`` is
    only written by a moderation decision.
    """

    id: str
    category_id: str
    text: str
    status: SuggestionStatus = SuggestionStatus.PENDING
    created_at: int = 0  # epoch millis
    created_by: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is SuggestionStatus.PENDING


@dataclass(frozen=True)
class Task:
    """A live challenge entry promoted from an approved suggestion.

    The task keeps the id of the suggestion it was promoted from, which is
    what makes promotion idempotent at the collection level.
    """

    id: str
    category_id: str
    text: str
    status: str = SuggestionStatus.APPROVED.value
    created_by: str = SYSTEM_IDENTITY
    created_at: int = 0
    is_active: bool = True

    @classmethod
    def from_suggestion(
        cls, suggestion: Suggestion, moderator_id: Optional[str], created_at: Optional[int] = None
    ) -> "Task":
        return cls(
            id=suggestion.id,
            category_id=suggestion.category_id,
            text=suggestion.text,
            created_by=moderator_id or SYSTEM_IDENTITY,
            created_at=created_at if created_at is not None else now_ms(),
        )


@dataclass(frozen=True)
class SuggestionChange:
    """A change notification delivered by a remote store subscription."""

    kind: str  # "upsert" or "delete"
    suggestion: Suggestion


# === Sync Types ===


@dataclass
class SyncConflict:
    """A merge decision where local and remote disagreed on a record."""

    record_id: str
    local_status: str
    remote_status: str
    resolution: str  # local_pending_wins, local_terminal_kept, remote_terminal_wins, remote_wins
    resolved_at: str = field(default_factory=utc_now)


@dataclass
class SyncResult:
    """Result of a sync pass."""

    pushed: int = 0  # Queued changes confirmed by the remote store
    pulled: int = 0  # Remote records applied locally
    promoted: int = 0  # Tasks created by promotion
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "pulled": self.pulled,
            "promoted": self.promoted,
            "conflicts": [
                {
                    "record_id": c.record_id,
                    "local_status": c.local_status,
                    "remote_status": c.remote_status,
                    "resolution": c.resolution,
                }
                for c in self.conflicts
            ],
            "errors": list(self.errors),
            "failed_ids": list(self.failed_ids),
        }


@dataclass
class QueuedChange:
    """A local mutation waiting to be written to the remote store."""

    id: int
    target: str  # "suggestions" or "tasks"
    record_id: str
    operation: str  # upsert, delete, promote
    payload: Optional[Dict[str, Any]] = None
    queued_at: Optional[datetime] = None
    # Bumped whenever a newer local mutation replaces this entry
    revision: int = 0
    # Failure tracking across sync passes
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
