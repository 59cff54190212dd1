"""Shared utility functions.

Phone number / JID helpers used by the supervisor, the authorization gate
and the HTTP surface, plus atomic JSON writes for the credential store.
"""

from __future__ import annotations

import json
import os
import re
from collections import OrderedDict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_NON_DIGITS = re.compile(r"[^0-9]")

USER_SERVER = "s.whatsapp.net"
LID_SERVER = "lid"


def clean_phone_number(number: str | int | None) -> str:
    """Strip everything but digits: ``"+237 6 57"`` → ``"237657"``."""
    if number is None:
        return ""
    return _NON_DIGITS.sub("", str(number))


def bare_number(jid: str | None) -> str:
    """Digits of the user part of a JID, without server or device suffix.

    ``"237600:12@s.whatsapp.net"`` → ``"237600"``
    """
    if not jid:
        return ""
    user = str(jid).split("@", 1)[0]
    user = user.split(":", 1)[0]
    return clean_phone_number(user)


def user_jid(number: str) -> str:
    return f"{clean_phone_number(number)}@{USER_SERVER}"


def linked_identity(lid: str | None) -> str | None:
    """Canonical ``<user>@lid`` form of a linked id, or None."""
    if not lid:
        return None
    user = lid.split("@", 1)[0].split(":", 1)[0]
    if not user:
        return None
    return f"{user}@{LID_SERVER}"


def format_pairing_code(code: str) -> str:
    """Group a pairing code in blocks of four for display."""
    compact = code.replace("-", "").replace(" ", "")
    return " ".join(compact[i : i + 4] for i in range(0, len(compact), 4)) or code


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def write_json_atomic(path: Path, data: Any, *, indent: int | None = 2) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    os.replace(tmp, path)


def lru_put[K, V](cache: OrderedDict[K, V], key: K, value: V, limit: int) -> None:
    """Insert *key* as most recent and evict the oldest entries beyond *limit*."""
    cache[key] = value
    cache.move_to_end(key)
    while len(cache) > max(1, limit):
        cache.popitem(last=False)
