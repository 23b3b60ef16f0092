"""
Key-value settings store.

Holds small pieces of persistent state (the quota ledger and user settings)
behind a get/set interface. Two backends:
- LibsqlStore - Turso (libSQL) remote database or a local SQLite file
- MemoryStore - in-process dict, for tests and ephemeral runs

Configuration can be set via config/channels.yaml settings section or environment variables:
- store_url: Connection URL for Turso/libsql (default: file:data/settings.db)
- STORE_AUTH_TOKEN: Auth token (environment variable only, for security)
"""

import os
import threading
import time
from datetime import datetime
from typing import Optional

from config import get_config
from logger import get_logger

log = get_logger("store")


# Turso-specific error patterns that are retryable
RETRYABLE_ERROR_PATTERNS = [
    "502 Bad Gateway",
    "503 Service Unavailable",
    "504 Gateway Timeout",
    "Connection reset",
    "Connection refused",
    "Connection timed out",
    "Temporary failure",
    "Too many requests",
    "SQLITE_BUSY",
    "database is locked",
    "stream not found",
    "Stream already in use",
]

# Patterns that indicate the connection needs to be recreated
CONNECTION_REFRESH_PATTERNS = [
    "stream not found",
    "Stream already in use",
]


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable based on known patterns."""
    error_str = str(error).lower()
    return any(pattern.lower() in error_str for pattern in RETRYABLE_ERROR_PATTERNS)


def needs_connection_refresh(error: Exception) -> bool:
    """Check if an error indicates the connection needs to be recreated."""
    error_str = str(error).lower()
    return any(pattern.lower() in error_str for pattern in CONNECTION_REFRESH_PATTERNS)


class KeyValueStore:
    """Interface for the settings store."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            log.warning(f"Ignoring non-integer value for {key}: {value!r}")
            return default

    def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Dict-backed store. Thread-safe."""

    def __init__(self, initial: dict = None):
        self._data = {k: str(v) for k, v in (initial or {}).items()}
        self._lock = threading.Lock()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = str(value)


class LibsqlStore(KeyValueStore):
    """
    Settings table on a libsql connection with automatic retry logic.

    Handles transient Turso errors with exponential backoff and refreshes
    the connection on stream errors. Calls are serialized with a lock since
    the native libsql connection is not thread-safe.
    """

    def __init__(self, url: str = None, auth_token: str = None):
        cfg = get_config()
        self._url = url or cfg.store_url
        self._auth_token = auth_token if auth_token is not None else cfg.store_auth_token
        self._lock = threading.RLock()
        self._conn = self._connect()
        self._init_schema()

    def _connect(self):
        import libsql

        log.debug(f"Connecting to settings store: {self._url[:30]}...")
        if self._url.startswith("libsql://") or self._url.startswith("https://"):
            return libsql.connect(database=self._url, auth_token=self._auth_token)

        if self._url.startswith("file:"):
            filepath = self._url[5:]
            os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
        return libsql.connect(database=self._url)

    def _refresh_connection(self):
        """Recreate the underlying connection after stream errors."""
        log.info("Refreshing settings store connection after stream error")
        self._conn = self._connect()

    def _execute_with_refresh(self, method_name: str, *args):
        """Run a connection method with retry, refreshing the connection on stream errors.

        Takes the method name rather than a bound method so a refreshed
        connection is used on the next attempt.
        """
        cfg = get_config()
        max_retries = cfg.db_max_retries
        last_exception = None

        for attempt in range(max_retries + 1):
            try:
                with self._lock:
                    method = getattr(self._conn, method_name)
                    return method(*args)
            except Exception as e:
                if not is_retryable_error(e):
                    log.error(f"Non-retryable store error: {e}")
                    raise
                last_exception = e
                if attempt >= max_retries:
                    log.error(f"Store operation failed after {max_retries + 1} attempts: {e}")
                    raise
                delay = min(cfg.db_base_delay * (cfg.db_exponential_base ** attempt), cfg.db_max_delay)
                log.warning(f"Store error (attempt {attempt + 1}/{max_retries + 1}), "
                            f"retrying in {delay:.1f}s: {e}")
                time.sleep(delay)
                if needs_connection_refresh(e):
                    with self._lock:
                        self._refresh_connection()

        raise last_exception

    def _init_schema(self) -> None:
        self._execute_with_refresh("execute", """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT
            )
        """)
        self._execute_with_refresh("commit")

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            result = self._execute_with_refresh(
                "execute", "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        return result[0] if result else default

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._execute_with_refresh("execute", """
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, str(value), datetime.now().isoformat()))
            self._execute_with_refresh("commit")

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except Exception as e:
                log.debug(f"Closing settings store failed: {e}")
