"""Key-value persistence for bot mode, per-account config and the sudo list.

One aiosqlite connection per store; every value is a JSON document keyed
by record name. Writes go through :meth:`KeyValueStore.atomic_write` so
two coroutines can never interleave inside one implicit transaction;
read-modify-write callers use :meth:`KeyValueStore.update` so the read
happens under the same lock.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from waswarm.logger import logger
from waswarm.types import PersistenceError
from waswarm.utils import clean_phone_number

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_UPSERT = (
    "INSERT INTO kv (key, value) VALUES (?, ?) "
    "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
)

MODE_KEY = "mode"
CONFIG_KEY = "config"
SUDO_KEY = "sudo"

type BotMode = Literal["private", "public"]


class KeyValueStore:
    """JSON documents in a single sqlite table."""

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._path)
        await self._db.execute(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _get_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("KeyValueStore not opened. Call open() first.")
        return self._db

    @asynccontextmanager
    async def atomic_write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection under the write lock; commit or roll back."""
        db = self._get_db()
        async with self._write_lock:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def get(self, key: str, default: Any = None) -> Any:
        return await self._read(self._get_db(), key, default)

    async def _read(self, db: aiosqlite.Connection, key: str, default: Any) -> Any:
        async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.error("Corrupt kv record, using default", key=key)
            return default

    async def set(self, key: str, value: Any) -> None:
        try:
            async with self.atomic_write() as db:
                await db.execute(_UPSERT, (key, json.dumps(value)))
        except sqlite3.Error as exc:
            logger.error("Failed to persist kv record", key=key, err=str(exc))
            raise PersistenceError(f"failed to write {key!r}") from exc

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read *key*, apply *fn* and write the result, all under the write lock.

        Returns the value written.
        """
        try:
            async with self.atomic_write() as db:
                value = fn(await self._read(db, key, default))
                await db.execute(_UPSERT, (key, json.dumps(value)))
        except sqlite3.Error as exc:
            logger.error("Failed to persist kv record", key=key, err=str(exc))
            raise PersistenceError(f"failed to write {key!r}") from exc
        return value


class ModeStore:
    """``{"mode": "private" | "public"}``."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    async def get(self) -> BotMode:
        data = await self._kv.get(MODE_KEY)
        if not data:
            await self._kv.set(MODE_KEY, {"mode": "private"})
            return "private"
        mode = data.get("mode")
        return "public" if mode == "public" else "private"

    async def set(self, mode: BotMode) -> None:
        if mode not in ("private", "public"):
            raise ValueError(f"unknown mode: {mode}")
        await self._kv.set(MODE_KEY, {"mode": mode})


def _users_doc(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("users"), dict):
        return {"users": {}}
    return data


class UserConfigStore:
    """Per-account behavior toggles stored as ``{"users": {account_id: {...}}}``."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    async def get(self, account_id: str) -> dict[str, Any]:
        cfg = _users_doc(await self._kv.get(CONFIG_KEY))
        return dict(cfg["users"].get(account_id) or {})

    async def update(self, account_id: str, **values: Any) -> dict[str, Any]:
        """Merge *values* into the account's record and return the result."""

        def _merge(data: Any) -> dict[str, Any]:
            cfg = _users_doc(data)
            cfg["users"][account_id] = {**(cfg["users"].get(account_id) or {}), **values}
            return cfg

        cfg = await self._kv.update(CONFIG_KEY, _merge)
        return dict(cfg["users"][account_id])

    async def is_enabled(self, account_id: str, flag: str) -> bool:
        return bool((await self.get(account_id)).get(flag, False))


class SudoStore:
    """Numbers allowed to run commands.

    The effective list is the configured ``[bot].sudo`` entries followed by
    the persisted ones; only the persisted part can be edited at runtime.
    """

    def __init__(self, kv: KeyValueStore, configured: Iterable[str] = ()) -> None:
        self._kv = kv
        self._configured = _dedupe(clean_phone_number(n) for n in configured)
        self._persisted: list[str] | None = None

    async def _load(self) -> list[str]:
        if self._persisted is None:
            self._persisted = _parse_sudo(await self._kv.get(SUDO_KEY, []))
        return self._persisted

    async def members(self) -> list[str]:
        return _dedupe([*self._configured, *(await self._load())])

    async def contains(self, number: str) -> bool:
        return bool(number) and number in await self.members()

    def is_configured(self, number: str) -> bool:
        return clean_phone_number(number) in self._configured

    async def add(self, number: str) -> bool:
        clean = clean_phone_number(number)
        if not clean:
            return False
        added = False

        def _append(raw: Any) -> list[str]:
            nonlocal added
            current = _parse_sudo(raw)
            added = clean not in current
            return [*current, clean] if added else current

        self._persisted = await self._kv.update(SUDO_KEY, _append, [])
        return added

    async def remove(self, number: str) -> bool:
        clean = clean_phone_number(number)
        if not clean:
            return False
        removed = False

        def _drop(raw: Any) -> list[str]:
            nonlocal removed
            current = _parse_sudo(raw)
            removed = clean in current
            return [n for n in current if n != clean]

        self._persisted = await self._kv.update(SUDO_KEY, _drop, [])
        return removed


def _parse_sudo(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return _dedupe(clean_phone_number(n) for n in raw)


def _dedupe(numbers: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for n in numbers:
        if n:
            seen.setdefault(n, None)
    return list(seen)
