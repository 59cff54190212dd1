"""Data models and transport-facing protocols for waswarm."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from waswarm.messaging.commands import CommandContext


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WaswarmError(Exception):
    """Base class for errors raised by waswarm."""


class InvalidAccountError(WaswarmError):
    """The given phone number contains no digits."""


class SessionNotFoundError(WaswarmError):
    """No session is registered for the account."""


class SessionNotConnectedError(WaswarmError):
    """The session exists but its connection is not open."""


class TransportOpenError(WaswarmError):
    """The transport could not open a connection for the account."""


class PersistenceError(WaswarmError):
    """A credential or key-value write failed."""


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionView:
    """Read-only snapshot of one registry entry."""

    account_id: str
    connected: bool
    retry_count: int


class DisconnectCause(enum.StrEnum):
    LOGGED_OUT = "logged_out"
    CONNECTION_LOST = "connection_lost"
    CONNECT_FAILURE = "connect_failure"
    REPLACED = "replaced"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectionUpdate:
    state: Literal["connecting", "open", "close"]
    cause: DisconnectCause | None = None
    detail: str | None = None

    @property
    def is_logged_out(self) -> bool:
        return self.state == "close" and self.cause == DisconnectCause.LOGGED_OUT


@dataclass
class CredentialRecord:
    """Authentication metadata persisted per account.

    The transport keeps its own key material next to this record; the core
    only reads ``registered`` and the linked identity.
    """

    account_id: str
    registered: bool = False
    jid: str | None = None
    lid: str | None = None
    push_name: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "registered": self.registered,
            "jid": self.jid,
            "lid": self.lid,
            "push_name": self.push_name,
            "updated_at": self.updated_at,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CredentialRecord:
        return cls(
            account_id=str(raw["account_id"]),
            registered=bool(raw.get("registered", False)),
            jid=raw.get("jid"),
            lid=raw.get("lid"),
            push_name=raw.get("push_name"),
            updated_at=raw.get("updated_at"),
            extra=dict(raw.get("extra") or {}),
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageRef:
    """Enough of a message key to read-receipt or react to it."""

    chat_id: str
    message_id: str
    sender_id: str
    from_me: bool = False


@dataclass(frozen=True)
class InboundEvent:
    """One message as delivered by the transport.

    ``message`` is the message body as a plain mapping using the WhatsApp
    protobuf field names (``conversation``, ``extendedTextMessage`` ...).
    """

    account_id: str
    ref: MessageRef
    message: dict[str, Any] | None
    push_name: str | None = None
    timestamp: float | None = None

    @property
    def chat_id(self) -> str:
        return self.ref.chat_id

    @property
    def sender_id(self) -> str:
        return self.ref.sender_id or self.ref.chat_id

    @property
    def from_me(self) -> bool:
        return self.ref.from_me

    @property
    def is_group(self) -> bool:
        return self.ref.chat_id.endswith("@g.us")

    @property
    def is_status(self) -> bool:
        return self.ref.chat_id == "status@broadcast"


@dataclass(frozen=True)
class GroupParticipant:
    id: str
    name: str | None = None
    admin: bool = False


@dataclass(frozen=True)
class GroupMetadata:
    id: str
    subject: str
    participants: tuple[GroupParticipant, ...] = ()


# ---------------------------------------------------------------------------
# Transport capability
# ---------------------------------------------------------------------------


class ConnectionListener(Protocol):
    """Callbacks a transport invokes for one connection."""

    async def on_connection_update(self, update: ConnectionUpdate) -> None: ...

    async def on_credentials_update(self, blob: dict[str, Any]) -> None: ...

    async def on_message(self, event: InboundEvent) -> None: ...


@runtime_checkable
class ConnectionHandle(Protocol):
    """A live connection owned by exactly one account session."""

    account_id: str

    @property
    def self_id(self) -> str | None: ...

    @property
    def self_lid(self) -> str | None: ...

    async def send(self, conversation_id: str, text: str) -> None: ...

    async def mark_read(self, ref: MessageRef) -> None: ...

    async def react(self, ref: MessageRef, emoji: str) -> None: ...

    async def group_metadata(self, conversation_id: str) -> GroupMetadata: ...

    async def close(self, *, logout: bool = False) -> None: ...


class Transport(Protocol):
    """Opens connections and issues pairing codes."""

    async def open(
        self,
        account_id: str,
        credentials: CredentialRecord | None,
        listener: ConnectionListener,
    ) -> ConnectionHandle: ...

    async def request_pairing_code(self, account_id: str, listener: ConnectionListener) -> str: ...

    async def release_pairing(self, account_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

type CommandFn = Callable[["CommandContext", list[str]], Awaitable[None]]


@dataclass(frozen=True)
class Command:
    """A named command plugins contribute to the command table."""

    name: str
    execute: CommandFn
    description: str = ""
    owner_only: bool = False
