"""Error taxonomy for mallex.

Validation, transition and permission errors are raised synchronously by
the lifecycle engine and never touch the network. Remote errors are
confined to the retry controller, the sync engine and the promotion
adapter; the engine's synchronous API never raises them.
"""

from typing import Optional

# Remote fault classifications that are worth retrying.
RETRYABLE_CODES = frozenset(
    [
        "unavailable",
        "deadline-exceeded",
        "internal",
        "resource-exhausted",
    ]
)


class MallexError(Exception):
    """Base for all mallex errors."""

    pass


class ValidationError(MallexError, ValueError):
    """Caller-correctable input error (e.g. empty suggestion text)."""

    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name


class InvalidTransition(MallexError):
    """A moderation action was attempted on a suggestion that is not pending."""

    def __init__(self, suggestion_id: str, current_status: str, action: str):
        super().__init__(
            f"Cannot {action} suggestion {suggestion_id}: status is {current_status}, "
            f"expected pending"
        )
        self.suggestion_id = suggestion_id
        self.current_status = current_status
        self.action = action


class NotModeratorError(MallexError):
    """A moderation decision was attempted without the moderator capability."""

    def __init__(self, identity: Optional[str]):
        super().__init__(f"Identity {identity or '<anonymous>'!r} is not a moderator")
        self.identity = identity


class StorageCorrupt(MallexError):
    """Local persisted data could not be read or parsed."""

    pass


class RemoteStoreError(MallexError):
    """A classified remote store fault.

    ``code`` follows the remote service's status vocabulary
    (``unavailable``, ``permission-denied``, ...).
    """

    def __init__(self, code: str, message: str):
        super().__init__(f"[{code}] {message}")
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


class TransientSyncError(RemoteStoreError):
    """A remote fault that is likely to succeed on retry."""

    pass


class SyncFailed(MallexError):
    """The retry budget for a remote operation was exhausted."""

    def __init__(self, description: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


class PromotionFailed(MallexError):
    """An approved suggestion could not be written to the live task collection."""

    def __init__(self, suggestion_id: str, cause: Optional[Exception] = None):
        super().__init__(f"Promotion of suggestion {suggestion_id} failed: {cause}")
        self.suggestion_id = suggestion_id
        self.cause = cause


def remote_error(code: str, message: str) -> RemoteStoreError:
    """Build the right remote error class for a classification code."""
    if code in RETRYABLE_CODES:
        return TransientSyncError(code, message)
    return RemoteStoreError(code, message)
