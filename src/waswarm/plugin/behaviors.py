"""Built-in auto-behaviors.

Each behavior is its own plugin: an observer of the inbound message
stream plus an owner command of the same name that switches it on or off
for the account it was sent to (``.autoread on``). Behaviors are off until
enabled; the toggle lives in the per-account user config record.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Mapping
from typing import Any

import pluggy

from waswarm.event_bus import InboundMessageEvent
from waswarm.logger import logger
from waswarm.messaging.commands import CommandContext
from waswarm.messaging.normalizer import leaf_kind, unwrap
from waswarm.plugin import PluginContext
from waswarm.types import Command
from waswarm.utils import bare_number, linked_identity, lru_put, user_jid

hookimpl = pluggy.HookimplMarker("waswarm")

_ON = ("on", "enable", "true", "1")
_OFF = ("off", "disable", "false", "0")


class _Behavior:
    """Toggle command + guarded observer. Subclasses implement :meth:`run`."""

    name: str
    description: str = ""

    def __init__(self) -> None:
        self._context: PluginContext | None = None

    @property
    def context(self) -> PluginContext:
        if self._context is None:
            raise RuntimeError(f"{self.name} plugin used before hooks were called")
        return self._context

    @hookimpl
    def waswarm_commands(self, context: PluginContext) -> list[Command]:
        self._context = context
        return [
            Command(
                self.name,
                self.toggle,
                f"{self.description} ({self.name} on|off)",
                owner_only=True,
            )
        ]

    @hookimpl
    def waswarm_auto_behaviors(self, context: PluginContext) -> list[Any]:
        self._context = context
        return [self.observe]

    async def toggle(self, ctx: CommandContext, args: list[str]) -> None:
        store = self.context.user_config
        if not args:
            state = "on" if await store.is_enabled(ctx.account_id, self.name) else "off"
            await ctx.reply(f"{self.name} is {state}")
            return
        choice = args[0].lower()
        if choice not in _ON + _OFF:
            await ctx.reply(f"Usage: {self.name} on|off")
            return
        enabled = choice in _ON
        await store.update(ctx.account_id, **{self.name: enabled})
        logger.info("Behavior toggled", behavior=self.name, account=ctx.account_id, enabled=enabled)
        await ctx.reply(f"{self.name} {'enabled' if enabled else 'disabled'}")

    async def observe(self, ev: InboundMessageEvent) -> None:
        if not await self.context.user_config.is_enabled(ev.account_id, self.name):
            return
        await self.run(ev)

    async def run(self, ev: InboundMessageEvent) -> None:
        raise NotImplementedError


class AutoStatusPlugin(_Behavior):
    """View and react to status updates."""

    name = "autostatus"
    description = "View and react to statuses"

    async def run(self, ev: InboundMessageEvent) -> None:
        event = ev.event
        if not event.is_status or event.from_me:
            return
        await ev.connection.mark_read(event.ref)
        await ev.connection.react(event.ref, self.context.settings.behaviors.status_emoji)
        logger.debug("Status viewed", account=ev.account_id, sender=event.sender_id)


class AutoReadPlugin(_Behavior):
    name = "autoread"
    description = "Mark incoming messages read"

    async def run(self, ev: InboundMessageEvent) -> None:
        event = ev.event
        if event.from_me or event.is_status:
            return
        await ev.connection.mark_read(event.ref)


class WelcomePlugin(_Behavior):
    """Greet each private-chat sender once per process lifetime.

    Only active while the bot is in public mode. A failed send leaves the
    sender ungreeted so the next message tries again.
    """

    name = "welcome"
    description = "Greet new private chats"

    def __init__(self) -> None:
        super().__init__()
        self._greeted: OrderedDict[tuple[str, str], None] = OrderedDict()

    async def run(self, ev: InboundMessageEvent) -> None:
        event = ev.event
        if event.from_me or event.is_group or event.is_status:
            return
        key = (ev.account_id, bare_number(event.sender_id))
        if key in self._greeted:
            return
        if await self.context.mode.get() != "public":
            return
        behaviors = self.context.settings.behaviors
        await ev.connection.send(event.chat_id, behaviors.welcome_text)
        lru_put(self._greeted, key, None, behaviors.welcome_cache_size)


class AntiDeletePlugin(_Behavior):
    """Repost deleted messages to the account's own chat."""

    name = "antidelete"
    description = "Keep deleted messages"

    def __init__(self) -> None:
        super().__init__()
        self._cache: OrderedDict[tuple[str, str, str], tuple[str, str]] = OrderedDict()

    async def observe(self, ev: InboundMessageEvent) -> None:
        # Cache regardless of the toggle so that enabling it covers recent messages.
        self._remember(ev)
        await super().observe(ev)

    def _remember(self, ev: InboundMessageEvent) -> None:
        if not ev.text or ev.event.is_status:
            return
        key = (ev.account_id, ev.event.chat_id, ev.event.ref.message_id)
        limit = self.context.settings.behaviors.antidelete_cache_size
        lru_put(self._cache, key, (ev.event.sender_id, ev.text), limit)

    async def run(self, ev: InboundMessageEvent) -> None:
        revoked_id = revoked_message_id(ev.event.message)
        if revoked_id is None:
            return
        cached = self._cache.pop((ev.account_id, ev.event.chat_id, revoked_id), None)
        if cached is None:
            logger.debug("Revoked message not cached", account=ev.account_id, message_id=revoked_id)
            return
        sender, text = cached
        report = f"Deleted message from {bare_number(sender)} in {ev.event.chat_id}:\n{text}"
        await ev.connection.send(user_jid(ev.account_id), report)


class MentionPlugin(_Behavior):
    name = "mention"
    description = "Answer when mentioned"

    async def run(self, ev: InboundMessageEvent) -> None:
        event = ev.event
        if event.from_me or event.is_status:
            return
        own_lid = linked_identity(ev.connection.self_lid)
        for jid in mentioned_jids(event.message):
            if bare_number(jid) == ev.account_id or (own_lid and linked_identity(jid) == own_lid):
                reply = self.context.settings.behaviors.mention_reply
                await ev.connection.send(event.chat_id, reply)
                return


def revoked_message_id(message: Mapping[str, Any] | None) -> str | None:
    """Id of the message a revoke protocol message deletes, else None."""
    if leaf_kind(message) != "protocolMessage":
        return None
    protocol = (unwrap(message) or {}).get("protocolMessage") or {}
    kind = protocol.get("type")
    key = protocol.get("key") or {}
    if kind not in ("REVOKE", 0, None):
        return None
    return key.get("ID") or key.get("id") or None


def mentioned_jids(message: Mapping[str, Any] | None) -> list[str]:
    """JIDs listed in the leaf message's context info."""
    leaf = unwrap(message)
    if not leaf:
        return []
    for value in leaf.values():
        if not isinstance(value, Mapping):
            continue
        info = value.get("contextInfo")
        if isinstance(info, Mapping):
            return list(info.get("mentionedJID") or info.get("mentionedJid") or [])
    return []
