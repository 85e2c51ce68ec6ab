"""
Mallex - Suggestion lifecycle engine.

Community task suggestions with moderation, a durable local mirror and
eventual synchronisation to a shared remote store.
"""

from .core import SuggestionEngine
from .types import Suggestion, SuggestionStatus, SyncResult, Task

try:
    from importlib.metadata import version

    __version__ = version("mallex")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SuggestionEngine", "Suggestion", "SuggestionStatus", "SyncResult", "Task"]
