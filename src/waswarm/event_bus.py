"""Lightweight asyncio event bus for intra-process pub/sub.

Auto-behaviors subscribe to :class:`InboundMessageEvent`; session lifecycle
transitions are published here too so other components can observe them
without holding a reference to the supervisor.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from waswarm.logger import logger
from waswarm.types import ConnectionHandle, DisconnectCause, InboundEvent

# --- Event types ---


@dataclass(frozen=True)
class InboundMessageEvent:
    """A message arrived on one account's connection.

    ``text`` is the normalized text, or None for textless messages.
    """

    event: InboundEvent
    text: str | None
    connection: ConnectionHandle

    @property
    def account_id(self) -> str:
        return self.event.account_id


@dataclass(frozen=True)
class SessionOpenedEvent:
    account_id: str


@dataclass(frozen=True)
class SessionClosedEvent:
    account_id: str
    cause: DisconnectCause | None
    will_retry: bool


@dataclass(frozen=True)
class SessionAbandonedEvent:
    """Terminal: the session was removed from the registry."""

    account_id: str
    reason: str  # "logged_out" | "max_retries"


@dataclass(frozen=True)
class PairingCodeEvent:
    account_id: str
    code: str


type Event = (
    InboundMessageEvent
    | SessionOpenedEvent
    | SessionClosedEvent
    | SessionAbandonedEvent
    | PairingCodeEvent
)
type Listener = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in list(self._listeners[type(event)]):
            task = asyncio.ensure_future(_safe_call(listener, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight listener calls (used at shutdown and in tests)."""
        if not self._pending:
            return
        await asyncio.wait(list(self._pending), timeout=timeout)


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning(
            "EventBus listener error",
            event=type(event).__name__,
            listener=getattr(listener, "__qualname__", repr(listener)),
            err=str(exc),
        )
