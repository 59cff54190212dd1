"""Shared test fixtures for waswarm."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from waswarm.types import (
    ConnectionListener,
    ConnectionUpdate,
    CredentialRecord,
    DisconnectCause,
    GroupMetadata,
    InboundEvent,
    MessageRef,
    TransportOpenError,
)

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "sessions_dir", "db_path", "static_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (bot, sessions, etc.) and cached property
    overrides (project_root, sessions_dir, db_path, static_dir).

    Usage::

        s = make_settings(sessions_dir=tmp_path / "sessions")
        s = make_settings(sessions=SessionsConfig(max_retries=2))
    """
    from waswarm.config import (
        BehaviorsConfig,
        BotConfig,
        LoggingConfig,
        ServerConfig,
        SessionsConfig,
        Settings,
        StorageConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "bot": BotConfig(),
        "sessions": SessionsConfig(retry_delay=0.0, pairing_wait=0.0),
        "server": ServerConfig(),
        "storage": StorageConfig(),
        "logging": LoggingConfig(),
        "behaviors": BehaviorsConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate* holds (scheduled reconnects, bus tasks)."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def make_event(
    *,
    account_id: str = "237600000001",
    chat_id: str = "237600000009@s.whatsapp.net",
    sender_id: str | None = None,
    message: dict[str, Any] | None = None,
    text: str | None = None,
    from_me: bool = False,
    message_id: str = "MSG1",
    push_name: str | None = "Alice",
) -> InboundEvent:
    if message is None and text is not None:
        message = {"conversation": text}
    return InboundEvent(
        account_id=account_id,
        ref=MessageRef(
            chat_id=chat_id,
            message_id=message_id,
            sender_id=sender_id if sender_id is not None else chat_id,
            from_me=from_me,
        ),
        message=message,
        push_name=push_name,
        timestamp=None,
    )


class FakeConnection:
    """In-memory ConnectionHandle recording everything sent through it."""

    def __init__(self, account_id: str, *, self_lid: str | None = None) -> None:
        self.account_id = account_id
        self._self_lid = self_lid
        self.sent: list[tuple[str, str]] = []
        self.read: list[MessageRef] = []
        self.reactions: list[tuple[MessageRef, str]] = []
        self.groups: dict[str, GroupMetadata] = {}
        self.closed = False
        self.logged_out = False
        self.send_error: Exception | None = None

    @property
    def self_id(self) -> str | None:
        return f"{self.account_id}@s.whatsapp.net"

    @property
    def self_lid(self) -> str | None:
        return self._self_lid

    async def send(self, conversation_id: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((conversation_id, text))

    async def mark_read(self, ref: MessageRef) -> None:
        self.read.append(ref)

    async def react(self, ref: MessageRef, emoji: str) -> None:
        self.reactions.append((ref, emoji))

    async def group_metadata(self, conversation_id: str) -> GroupMetadata:
        return self.groups[conversation_id]

    async def close(self, *, logout: bool = False) -> None:
        self.closed = True
        self.logged_out = self.logged_out or logout


class FakeTransport:
    """Transport double. Opens succeed and report "open" unless told otherwise."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.listeners: list[ConnectionListener] = []
        self.open_calls: list[tuple[str, CredentialRecord | None]] = []
        self.pairing_requests: list[str] = []
        self.released: list[str] = []
        self.open_failures = 0
        self.failing_accounts: set[str] = set()
        self.auto_open = True
        self.close_during_open: DisconnectCause | None = None
        self.open_gate: asyncio.Event | None = None
        self.pairing_code = "ABCD1234"

    async def open(
        self,
        account_id: str,
        credentials: CredentialRecord | None,
        listener: ConnectionListener,
    ) -> FakeConnection:
        self.open_calls.append((account_id, credentials))
        if account_id in self.failing_accounts or self.open_failures > 0:
            self.open_failures = max(0, self.open_failures - 1)
            raise TransportOpenError(f"{account_id}: refused")
        if self.open_gate is not None:
            await self.open_gate.wait()
        conn = FakeConnection(account_id)
        self.connections.append(conn)
        self.listeners.append(listener)
        if self.auto_open:
            await listener.on_connection_update(ConnectionUpdate(state="open"))
        if self.close_during_open is not None:
            await listener.on_connection_update(
                ConnectionUpdate(state="close", cause=self.close_during_open)
            )
        return conn

    async def request_pairing_code(self, account_id: str, listener: ConnectionListener) -> str:
        self.pairing_requests.append(account_id)
        await listener.on_credentials_update(
            {"registered": True, "jid": f"{account_id}@s.whatsapp.net", "lid": "98765@lid"}
        )
        return self.pairing_code

    async def release_pairing(self, account_id: str) -> None:
        self.released.append(account_id)

    async def drop(self, cause: DisconnectCause = DisconnectCause.CONNECTION_LOST) -> None:
        """Report a close on the most recent connection."""
        await self.listeners[-1].on_connection_update(ConnectionUpdate(state="close", cause=cause))


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("waswarm.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sessions_root(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
async def kv(tmp_path: Path):
    from waswarm.state.kv import KeyValueStore

    store = KeyValueStore(tmp_path / "waswarm.db")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def plugin_context(kv, transport, sessions_root):
    """PluginContext wired to a real supervisor over the fake transport."""
    from waswarm.config import get_settings
    from waswarm.messaging.authorization import AuthorizationGate
    from waswarm.plugin import PluginContext
    from waswarm.sessions.supervisor import ConnectionSupervisor
    from waswarm.state.credentials import CredentialStore
    from waswarm.state.kv import ModeStore, SudoStore, UserConfigStore

    sudo = SudoStore(kv, ["237600000002"])
    return PluginContext(
        settings=get_settings(),
        supervisor=ConnectionSupervisor(transport, CredentialStore(sessions_root)),
        gate=AuthorizationGate(sudo),
        sudo=sudo,
        mode=ModeStore(kv),
        user_config=UserConfigStore(kv),
    )
