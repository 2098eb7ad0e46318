from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Protocol, Set, Tuple

import aiosqlite

from .crypto import hash_password, verify_password
from .errors import DirectoryError

log = logging.getLogger("msgrelay.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    email         TEXT PRIMARY KEY,
    password_hash TEXT NOT NULL,
    online        INTEGER NOT NULL DEFAULT 0,
    created_at    INTEGER NOT NULL
);
"""


# scrypt blocks for tens of milliseconds; run it off the event loop
async def _hash(password: str) -> str:
    return await asyncio.get_running_loop().run_in_executor(None, hash_password, password)


async def _verify(password: str, encoded: str) -> bool:
    return await asyncio.get_running_loop().run_in_executor(None, verify_password, password, encoded)


class UserDirectory(Protocol):
    """Credential check and presence flag, as consumed by sessions."""

    async def authenticate(self, email: str, password: str) -> bool: ...

    async def set_presence(self, email: str, online: bool) -> None: ...


class SqliteUserDirectory:
    """User directory on an aiosqlite connection.

    Every backing-store failure is re-raised as DirectoryError.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    @classmethod
    async def open(cls, path: str = "msgrelay.db") -> "SqliteUserDirectory":
        try:
            db = await aiosqlite.connect(path)
            await db.executescript(SCHEMA)
            await db.commit()
        except aiosqlite.Error as exc:
            raise DirectoryError(f"cannot open user store {path}: {exc}") from exc
        log.info("User store opened at %s", path)
        return cls(db)

    async def close(self) -> None:
        await self.db.close()

    async def add_user(self, email: str, password: str, *, replace: bool = False) -> bool:
        verb = "INSERT OR REPLACE" if replace else "INSERT OR IGNORE"
        try:
            cur = await self.db.execute(
                f"{verb} INTO users(email, password_hash, online, created_at) VALUES(?,?,0,?)",
                (email, await _hash(password), int(time.time())),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc
        return cur.rowcount > 0

    async def remove_user(self, email: str) -> bool:
        try:
            cur = await self.db.execute("DELETE FROM users WHERE email=?", (email,))
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc
        return cur.rowcount > 0

    async def authenticate(self, email: str, password: str) -> bool:
        try:
            cur = await self.db.execute("SELECT password_hash FROM users WHERE email=?", (email,))
            row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc
        if row is None:
            return False
        return await _verify(password, row[0])

    async def set_presence(self, email: str, online: bool) -> None:
        try:
            await self.db.execute("UPDATE users SET online=? WHERE email=?", (1 if online else 0, email))
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc

    async def is_online(self, email: str) -> bool:
        try:
            cur = await self.db.execute("SELECT online FROM users WHERE email=?", (email,))
            row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc
        return bool(row and row[0])

    async def list_users(self) -> List[Tuple[str, bool]]:
        try:
            cur = await self.db.execute("SELECT email, online FROM users ORDER BY email")
            rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc
        return [(email, bool(online)) for email, online in rows]

    async def reset_presence(self) -> None:
        """Mark everyone offline; presence from a previous process is stale."""

        try:
            await self.db.execute("UPDATE users SET online=0")
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise DirectoryError(str(exc)) from exc


class MemoryUserDirectory:
    """In-process directory for tests and demos."""

    def __init__(self, users: Dict[str, str] | None = None) -> None:
        self._hashes: Dict[str, str] = {}
        self.online: Set[str] = set()
        for email, password in (users or {}).items():
            self._hashes[email] = hash_password(password)

    async def add_user(self, email: str, password: str, *, replace: bool = False) -> bool:
        if email in self._hashes and not replace:
            return False
        self._hashes[email] = await _hash(password)
        return True

    async def authenticate(self, email: str, password: str) -> bool:
        encoded = self._hashes.get(email)
        return encoded is not None and await _verify(password, encoded)

    async def set_presence(self, email: str, online: bool) -> None:
        if online:
            self.online.add(email)
        else:
            self.online.discard(email)

    async def is_online(self, email: str) -> bool:
        return email in self.online


__all__ = ["UserDirectory", "SqliteUserDirectory", "MemoryUserDirectory", "SCHEMA"]
