"""Inbound message pipeline.

transport → supervisor → :class:`InboundDispatcher`:

1. skip events with no message body
2. normalize text and publish an :class:`InboundMessageEvent` (observers)
3. skip the command path for status broadcasts and textless messages
4. authorize the sender, build a :class:`CommandContext` and hand it to the
   router on its own task so a slow command never delays the next message
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict

from waswarm.config import get_settings
from waswarm.event_bus import EventBus, InboundMessageEvent
from waswarm.logger import logger
from waswarm.messaging.authorization import AuthorizationGate
from waswarm.messaging.commands import CommandContext, CommandRouter
from waswarm.messaging.normalizer import extract_text
from waswarm.state.credentials import CredentialStore
from waswarm.types import ConnectionHandle, InboundEvent
from waswarm.utils import lru_put


class InboundDispatcher:
    """Turns transport message events into observer events and commands."""

    def __init__(
        self,
        bus: EventBus,
        gate: AuthorizationGate,
        router: CommandRouter,
        credentials: CredentialStore,
        *,
        group_cache_size: int | None = None,
        group_subject_ttl: float | None = None,
    ) -> None:
        behaviors = get_settings().behaviors
        self._bus = bus
        self._gate = gate
        self._router = router
        self._credentials = credentials
        self._group_names: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._group_cache_size = (
            behaviors.group_cache_size if group_cache_size is None else group_cache_size
        )
        self._group_subject_ttl = (
            behaviors.group_subject_ttl if group_subject_ttl is None else group_subject_ttl
        )
        self._tasks: set[asyncio.Task[bool]] = set()

    async def __call__(self, event: InboundEvent, connection: ConnectionHandle) -> None:
        await self.handle(event, connection)

    async def handle(self, event: InboundEvent, connection: ConnectionHandle) -> None:
        if not event.message:
            return

        text = extract_text(event.message)
        self._bus.emit(InboundMessageEvent(event=event, text=text, connection=connection))

        if event.is_status or not text:
            return

        logger.info(
            "Message received",
            account=event.account_id,
            chat=await self._chat_label(event, connection),
            sender=event.sender_id,
            name=event.push_name,
            text=text[:80],
        )
        if not text.startswith(self._router.prefix):
            return

        own_lid = connection.self_lid
        if own_lid is None:
            creds = await self._credentials.load(event.account_id)
            own_lid = creds.lid if creds else None

        if not await self._gate.is_authorized(event, own_lid=own_lid):
            logger.debug(
                "Ignoring command from unauthorized sender",
                account=event.account_id,
                sender=event.sender_id,
            )
            return

        ctx = CommandContext(
            account_id=event.account_id,
            remote_conversation_id=event.chat_id,
            sender_id=event.sender_id,
            is_group=event.is_group,
            text=text,
            is_from_self=event.from_me,
            is_owner=await self._gate.is_owner(event.sender_id),
            connection=connection,
            event=event,
            push_name=event.push_name,
        )
        task = asyncio.ensure_future(self._router.dispatch(ctx))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _chat_label(self, event: InboundEvent, connection: ConnectionHandle) -> str:
        if not event.is_group:
            return event.chat_id
        cached = self._group_names.get(event.chat_id)
        if cached is not None and time.monotonic() - cached[1] < self._group_subject_ttl:
            return cached[0]
        try:
            meta = await connection.group_metadata(event.chat_id)
        except Exception as exc:
            logger.debug("Group metadata lookup failed", chat=event.chat_id, err=str(exc))
            return cached[0] if cached is not None else event.chat_id
        lru_put(
            self._group_names,
            event.chat_id,
            (meta.subject, time.monotonic()),
            self._group_cache_size,
        )
        return meta.subject

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for running commands (used at shutdown and in tests)."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)
