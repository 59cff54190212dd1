"""In-memory registry of account sessions.

Each entry is an immutable record replaced wholesale on every change, so
readers never observe a half-updated session across a suspension point.
Only the supervisor writes; everyone else reads :class:`SessionView`
snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from waswarm.types import ConnectionHandle, SessionView


@dataclass(frozen=True)
class _Entry:
    account_id: str
    handle: ConnectionHandle
    connected: bool
    retry_count: int
    generation: int

    def view(self) -> SessionView:
        return SessionView(
            account_id=self.account_id,
            connected=self.connected,
            retry_count=self.retry_count,
        )


class SessionRegistry:
    """account id → current connection handle, connected flag, retry counter."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def register(
        self,
        account_id: str,
        handle: ConnectionHandle,
        *,
        connected: bool = False,
        retry_count: int = 0,
        generation: int = 0,
    ) -> SessionView:
        """Install *handle* as the authoritative connection for the account.

        Replaces any previous entry; the caller owns closing the old handle.
        """
        entry = _Entry(
            account_id=account_id,
            handle=handle,
            connected=connected,
            retry_count=0 if connected else retry_count,
            generation=generation,
        )
        self._entries[account_id] = entry
        return entry.view()

    def lookup(self, account_id: str) -> SessionView | None:
        entry = self._entries.get(account_id)
        return entry.view() if entry else None

    def handle(self, account_id: str) -> ConnectionHandle | None:
        entry = self._entries.get(account_id)
        return entry.handle if entry else None

    def generation(self, account_id: str) -> int | None:
        entry = self._entries.get(account_id)
        return entry.generation if entry else None

    def mark_connected(self, account_id: str) -> bool:
        """Set connected and reset the retry counter. False if absent."""
        entry = self._entries.get(account_id)
        if entry is None:
            return False
        self._entries[account_id] = replace(entry, connected=True, retry_count=0)
        return True

    def mark_disconnected(self, account_id: str) -> bool:
        entry = self._entries.get(account_id)
        if entry is None:
            return False
        self._entries[account_id] = replace(entry, connected=False)
        return True

    def begin_retry(self, account_id: str) -> SessionView | None:
        """Count one more reconnect attempt. None if absent."""
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        updated = replace(entry, connected=False, retry_count=entry.retry_count + 1)
        self._entries[account_id] = updated
        return updated.view()

    def remove(self, account_id: str) -> SessionView | None:
        """Drop the entry and return its last snapshot, or None if absent."""
        entry = self._entries.pop(account_id, None)
        return entry.view() if entry else None

    def list_all(self) -> list[SessionView]:
        return [entry.view() for entry in self._entries.values()]

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
