"""Tests for the settings stores."""

import sqlite3

import pytest

import store
from store import LibsqlStore, MemoryStore, is_retryable_error, needs_connection_refresh


def test_memory_store_roundtrip():
    s = MemoryStore({"a": 1})
    assert s.get("a") == "1"
    assert s.get("missing") is None
    assert s.get("missing", "x") == "x"
    s.set("b", 42)
    assert s.get_int("b") == 42


def test_get_int_ignores_garbage():
    s = MemoryStore({"n": "abc"})
    assert s.get_int("n", 7) == 7
    assert s.get_int("missing", 3) == 3


@pytest.mark.parametrize("message,retryable,refresh", [
    ("502 Bad Gateway", True, False),
    ("database is locked", True, False),
    ("Hrana: stream not found", True, True),
    ("syntax error near SELECT", False, False),
])
def test_error_classification(message, retryable, refresh):
    error = RuntimeError(message)
    assert is_retryable_error(error) is retryable
    assert needs_connection_refresh(error) is refresh


class FlakyConnection:
    """sqlite3 connection that fails the first `failures` executes."""

    def __init__(self, failures, message="database is locked"):
        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self.failures = failures
        self.message = message

    def execute(self, *args):
        if self.failures:
            self.failures -= 1
            raise RuntimeError(self.message)
        return self._conn.execute(*args)

    def commit(self):
        return self._conn.commit()

    def close(self):
        return self._conn.close()


@pytest.fixture
def sqlite_store(monkeypatch):
    monkeypatch.setattr(LibsqlStore, "_connect", lambda self: sqlite3.connect(":memory:", check_same_thread=False))
    s = LibsqlStore(url="file:unused.db")
    yield s
    s.close()


def test_libsql_store_upserts(sqlite_store):
    assert sqlite_store.get("quota_units_used") is None
    sqlite_store.set("quota_units_used", 10)
    sqlite_store.set("quota_units_used", 25)
    assert sqlite_store.get("quota_units_used") == "25"
    assert sqlite_store.get_int("quota_units_used") == 25


def test_libsql_store_retries_transient_errors(monkeypatch):
    monkeypatch.setattr(store.time, "sleep", lambda s: None)
    conn = FlakyConnection(failures=0)
    monkeypatch.setattr(LibsqlStore, "_connect", lambda self: conn)
    s = LibsqlStore(url="file:unused.db")

    conn.failures = 2
    s.set("k", "v")
    assert s.get("k") == "v"


def test_libsql_store_raises_non_retryable(monkeypatch):
    conn = FlakyConnection(failures=0, message="no such table: settings")
    monkeypatch.setattr(LibsqlStore, "_connect", lambda self: conn)
    s = LibsqlStore(url="file:unused.db")

    conn.failures = 1
    with pytest.raises(RuntimeError):
        s.get("k")


def test_libsql_store_refreshes_connection_on_stream_errors(monkeypatch):
    monkeypatch.setattr(store.time, "sleep", lambda s: None)
    connections = []

    def connect(self):
        conn = FlakyConnection(failures=0, message="stream not found")
        connections.append(conn)
        return conn

    monkeypatch.setattr(LibsqlStore, "_connect", connect)
    s = LibsqlStore(url="file:unused.db")
    connections[0].failures = 1

    # the fresh connection has no settings table yet, so reads fail with a non-retryable error
    with pytest.raises(sqlite3.OperationalError):
        s.get("k")
    assert len(connections) == 2
