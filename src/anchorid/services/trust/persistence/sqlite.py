"""SQLite persistence helpers for the trust control plane."""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, Iterator, Sequence

from ..errors import StoreUnavailable

__all__ = ["SQLitePersistence"]

_log = logging.getLogger("anchorid.trust.store")


class SQLitePersistence:
    """Connection wrapper that owns the schema and serializes units of work.

    Every write goes through :meth:`transaction`, which holds a process lock and
    opens the transaction with ``BEGIN IMMEDIATE`` so that concurrent writers
    (threads here, or other processes sharing the file) queue on the database
    write lock instead of interleaving check-then-act sequences.
    """

    _SCHEMA: Final[str] = """
    PRAGMA journal_mode=WAL;
    PRAGMA foreign_keys=ON;

    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        handle TEXT NOT NULL UNIQUE,
        avatar TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS devices (
        device_id TEXT PRIMARY KEY,
        profile_id TEXT,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 1,
        failed_auth_count INTEGER NOT NULL DEFAULT 0,
        last_failed_auth_at TEXT,
        window_failures INTEGER NOT NULL DEFAULT 0,
        window_started_at TEXT,
        window_requests INTEGER NOT NULL DEFAULT 0,
        request_window_started_at TEXT,
        is_suspicious INTEGER NOT NULL DEFAULT 0,
        is_revoked INTEGER NOT NULL DEFAULT 0,
        revoked_at TEXT,
        revoked_reason TEXT,
        user_agent TEXT,
        ip_address TEXT
    );

    CREATE TABLE IF NOT EXISTS admin_grants (
        profile_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        created_at TEXT NOT NULL,
        granted_by_profile_id TEXT
    );

    CREATE TABLE IF NOT EXISTS link_pins (
        id TEXT PRIMARY KEY,
        pin_hash TEXT NOT NULL,
        created_by_device_id TEXT NOT NULL,
        created_by_profile_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        redeemed_at TEXT,
        redeemed_by_device_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        revoked_at TEXT
    );

    CREATE TABLE IF NOT EXISTS security_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        severity TEXT NOT NULL,
        kind TEXT NOT NULL,
        device_id TEXT,
        profile_id TEXT,
        metadata_json TEXT NOT NULL,
        signature TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS rate_counters (
        bucket TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        window_start TEXT NOT NULL
    );

    CREATE TRIGGER IF NOT EXISTS security_events_no_update
        BEFORE UPDATE ON security_events
        BEGIN SELECT RAISE(ABORT, 'security events are append-only'); END;

    CREATE TRIGGER IF NOT EXISTS security_events_no_delete
        BEFORE DELETE ON security_events
        BEGIN SELECT RAISE(ABORT, 'security events are append-only'); END;

    CREATE TRIGGER IF NOT EXISTS devices_profile_immutable
        BEFORE UPDATE OF profile_id ON devices
        WHEN OLD.profile_id IS NOT NULL AND NEW.profile_id IS NOT OLD.profile_id
        BEGIN SELECT RAISE(ABORT, 'device profile binding is immutable'); END;

    CREATE TRIGGER IF NOT EXISTS devices_no_delete
        BEFORE DELETE ON devices
        BEGIN SELECT RAISE(ABORT, 'devices are never deleted'); END;

    CREATE INDEX IF NOT EXISTS idx_devices_profile
        ON devices(profile_id);

    CREATE INDEX IF NOT EXISTS idx_link_pins_live
        ON link_pins(is_active, redeemed_at, expires_at);

    CREATE INDEX IF NOT EXISTS idx_link_pins_creator
        ON link_pins(created_by_device_id);

    CREATE INDEX IF NOT EXISTS idx_security_events_created
        ON security_events(created_at);

    CREATE INDEX IF NOT EXISTS idx_security_events_device
        ON security_events(device_id, created_at);
    """

    _READ_ATTEMPTS: Final[int] = 4
    _READ_BACKOFF: Final[float] = 0.05

    def __init__(self, db_path: str | Path, *, busy_timeout: float = 5.0) -> None:
        self._path = Path(db_path)
        if not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                self._path,
                isolation_level=None,
                check_same_thread=False,
                timeout=busy_timeout,
            )
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable() from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _ensure_schema(self) -> None:
        self._conn.executescript(self._SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a serialized unit of work; nested calls join the outer one.

        Writes are never retried: a lock timeout or I/O failure rolls back and
        surfaces as :class:`StoreUnavailable`.
        """

        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                _log.warning("store busy: %s", exc)
                raise StoreUnavailable() from exc
            self._depth = 1
            try:
                yield self._conn
            except sqlite3.OperationalError as exc:
                self._rollback()
                _log.warning("transaction aborted: %s", exc)
                raise StoreUnavailable() from exc
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.OperationalError as exc:
                    self._rollback()
                    raise StoreUnavailable() from exc
            finally:
                self._depth = 0

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def read(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Execute a read-only query, retrying transient lock errors with backoff."""

        delay = self._READ_BACKOFF
        for attempt in range(1, self._READ_ATTEMPTS + 1):
            try:
                with self._lock:
                    return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.OperationalError as exc:
                if attempt == self._READ_ATTEMPTS:
                    _log.error("read failed after %d attempts: %s", attempt, exc)
                    raise StoreUnavailable() from exc
                _log.debug("read attempt %d failed: %s", attempt, exc)
                time.sleep(delay)
                delay *= 2
        raise StoreUnavailable()  # pragma: no cover - loop always returns or raises

    def read_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        rows = self.read(sql, params)
        return rows[0] if rows else None
