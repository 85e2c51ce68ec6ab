"""
Pytest fixtures and test configuration for Mallex tests.
"""

import itertools
from collections import Counter
from typing import Dict, List

import pytest

from mallex.core import SuggestionEngine
from mallex.errors import RemoteStoreError, TransientSyncError
from mallex.storage.local import LocalSuggestionStore
from mallex.storage.remote import InMemoryRemoteStore

MODERATOR = "mod-1"


def is_test_moderator(identity):
    return identity == MODERATOR


class RecordedSleep:
    """Awaitable stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyRemoteStore(InMemoryRemoteStore):
    """In-memory remote store that can be told to fail specific operations.

    ``fail(op, times=n)`` makes the next ``n`` calls of ``op`` raise;
    ``fail_always(op)`` makes every call raise until ``heal(op)``.
    """

    def __init__(self):
        super().__init__()
        self.calls: Counter = Counter()
        self._queued: Dict[str, List[RemoteStoreError]] = {}
        self._always: Dict[str, RemoteStoreError] = {}

    def fail(self, operation: str, error: RemoteStoreError = None, times: int = 1) -> None:
        error = error or TransientSyncError("unavailable", "service unavailable")
        self._queued.setdefault(operation, []).extend([error] * times)

    def fail_always(self, operation: str, error: RemoteStoreError = None) -> None:
        self._always[operation] = error or TransientSyncError("unavailable", "service unavailable")

    def heal(self, operation: str) -> None:
        self._always.pop(operation, None)
        self._queued.pop(operation, None)

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self._always:
            raise self._always[operation]
        queued = self._queued.get(operation)
        if queued:
            raise queued.pop(0)

    async def upsert_suggestion(self, suggestion):
        self._maybe_fail("upsert_suggestion")
        await super().upsert_suggestion(suggestion)

    async def delete_suggestion(self, suggestion_id):
        self._maybe_fail("delete_suggestion")
        await super().delete_suggestion(suggestion_id)

    async def list_suggestions(self, status=None):
        self._maybe_fail("list_suggestions")
        return await super().list_suggestions(status)

    async def get_task(self, task_id):
        self._maybe_fail("get_task")
        return await super().get_task(task_id)

    async def save_task(self, task):
        self._maybe_fail("save_task")
        await super().save_task(task)


@pytest.fixture(autouse=True)
def mallex_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.mallex and MALLEX_* settings."""
    home = tmp_path / "mallex-home"
    monkeypatch.setenv("MALLEX_HOME", str(home))
    for var in (
        "MALLEX_BACKEND_URL",
        "MALLEX_AUTH_TOKEN",
        "MALLEX_IDENTITY",
        "MALLEX_MODERATORS",
        "MALLEX_MAX_RETRIES",
        "MALLEX_DB_PATH",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "suggestions.db"


@pytest.fixture
def local_store(temp_db):
    return LocalSuggestionStore(db_path=temp_db)


@pytest.fixture
def remote():
    return FlakyRemoteStore()


@pytest.fixture
def sleep():
    return RecordedSleep()


@pytest.fixture
def make_engine(remote, sleep):
    """Factory for engines with deterministic ids and clock.

    Each call gets its own local store unless one is passed in; the remote
    store is shared, which is how two devices see each other.
    """
    ids = itertools.count(1)
    clock = itertools.count(1_700_000_000_000, 1000)
    stores = itertools.count(1)

    def factory(local=None, identity=MODERATOR, tmp_dir=None, **kwargs):
        if local is None:
            local = LocalSuggestionStore(db_path=tmp_dir / f"device-{next(stores)}.db")
        kwargs.setdefault("remote", remote)
        kwargs.setdefault("id_factory", lambda: f"s{next(ids)}")
        kwargs.setdefault("clock", lambda: next(clock))
        kwargs.setdefault("is_moderator", is_test_moderator)
        kwargs.setdefault("sleep", sleep)
        return SuggestionEngine(local, identity=identity, **kwargs)

    return factory


@pytest.fixture
def engine(make_engine, local_store):
    """Moderator engine wired to the in-memory remote store."""
    return make_engine(local=local_store)


@pytest.fixture
def guest_engine(make_engine, local_store):
    """Non-moderator engine with no remote store."""
    return make_engine(local=local_store, identity="guest", remote=None)
