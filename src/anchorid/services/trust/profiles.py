"""Profile store protocol and the SQLite implementation sharing the trust database."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Callable, Protocol

from .errors import UnknownProfile
from .ids import ProfileId, generate_profile_id
from .models import Profile, encode_time
from .persistence.sqlite import SQLitePersistence

__all__ = ["ProfileStore", "SQLiteProfileStore"]


class ProfileStore(Protocol):
    """Read-only view of the profile owner consumed by the control plane."""

    def get(self, profile_id: str) -> Profile | None:
        ...


class SQLiteProfileStore:
    def __init__(self, store: SQLitePersistence, *, clock: Callable[[], datetime]) -> None:
        self._store = store
        self._clock = clock

    def get(self, profile_id: str) -> Profile | None:
        row = self._store.read_one("SELECT * FROM profiles WHERE id = ?", (profile_id,))
        return Profile.from_row(row) if row is not None else None

    def require(self, profile_id: str) -> Profile:
        profile = self.get(profile_id)
        if profile is None:
            raise UnknownProfile()
        return profile

    def create(self, handle: str, *, avatar: str | None = None, profile_id: str | None = None) -> Profile:
        handle = handle.strip()
        if not handle:
            raise ValueError("handle must not be empty")
        profile = Profile(
            id=ProfileId(profile_id) if profile_id else generate_profile_id(),
            handle=handle,
            avatar=avatar,
            created_at=self._clock(),
        )
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    "INSERT INTO profiles(id, handle, avatar, created_at) VALUES(?, ?, ?, ?)",
                    (profile.id, profile.handle, profile.avatar, encode_time(profile.created_at)),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"profile handle or id already taken: {handle}") from exc
        return profile
