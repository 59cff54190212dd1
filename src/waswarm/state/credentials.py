"""Per-account credential persistence.

Layout under the sessions root::

    sessions/
        237600000001/
            creds.json      # CredentialRecord
            neonize.db      # transport key material (owned by the transport)

Writes for one account are serialized by a per-account lock and land via
atomic rename; writes for different accounts proceed independently.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from collections import defaultdict
from pathlib import Path
from typing import Any

from waswarm.logger import logger
from waswarm.types import CredentialRecord, PersistenceError
from waswarm.utils import now_iso, write_json_atomic

CREDS_FILE = "creds.json"
_ACCOUNT_DIR = re.compile(r"^[0-9]+$")

_RECORD_FIELDS = frozenset({"registered", "jid", "lid", "push_name"})


class CredentialStore:
    """Write-through cache of :class:`CredentialRecord` keyed by account id."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._cache: dict[str, CredentialRecord] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def session_dir(self, account_id: str) -> Path:
        return self.root / account_id

    async def load(self, account_id: str) -> CredentialRecord | None:
        cached = self._cache.get(account_id)
        if cached is not None:
            return cached
        path = self.session_dir(account_id) / CREDS_FILE
        try:
            raw = await asyncio.to_thread(path.read_text)
        except (FileNotFoundError, NotADirectoryError):
            return None
        try:
            record = CredentialRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            logger.error("Unreadable credential record", account=account_id, err=str(exc))
            return None
        self._cache[account_id] = record
        return record

    async def save(self, account_id: str, blob: dict[str, Any]) -> CredentialRecord:
        """Merge *blob* into the stored record and persist it.

        Known keys update the record's fields; anything else goes to
        ``extra``. Raises PersistenceError if the write fails.
        """
        async with self._locks[account_id]:
            current = await self.load(account_id) or CredentialRecord(account_id=account_id)
            updated = CredentialRecord.from_dict(current.to_dict())
            for key, value in blob.items():
                if key in _RECORD_FIELDS:
                    setattr(updated, key, value)
                else:
                    updated.extra[key] = value
            updated.updated_at = now_iso()
            path = self.session_dir(account_id) / CREDS_FILE
            try:
                await asyncio.to_thread(write_json_atomic, path, updated.to_dict())
            except OSError as exc:
                logger.error("Failed to persist credentials", account=account_id, err=str(exc))
                raise PersistenceError(f"failed to write credentials for {account_id}") from exc
            self._cache[account_id] = updated
            return updated

    async def delete(self, account_id: str) -> None:
        """Remove the account's whole session directory."""
        async with self._locks[account_id]:
            self._cache.pop(account_id, None)
            target = self.session_dir(account_id)
            try:
                await asyncio.to_thread(shutil.rmtree, target)
            except FileNotFoundError:
                return
            except OSError as exc:
                logger.error("Failed to delete credentials", account=account_id, err=str(exc))
                raise PersistenceError(f"failed to delete credentials for {account_id}") from exc
            logger.info("Credentials deleted", account=account_id)

    async def list_known_accounts(self) -> list[str]:
        def _scan() -> list[str]:
            if not self.root.is_dir():
                return []
            return sorted(
                p.name for p in self.root.iterdir() if p.is_dir() and _ACCOUNT_DIR.match(p.name)
            )

        return await asyncio.to_thread(_scan)
