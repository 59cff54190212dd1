"""Built-in prefix commands: ping, menu, mode, sudo, sessions."""

from __future__ import annotations

import time

import pluggy

from waswarm.messaging.commands import CommandContext
from waswarm.plugin import PluginContext
from waswarm.types import Command
from waswarm.utils import clean_phone_number

hookimpl = pluggy.HookimplMarker("waswarm")


class BuiltinCommands:
    def __init__(self, plugins: PluginContext) -> None:
        self._plugins = plugins

    def commands(self) -> list[Command]:
        return [
            Command("ping", self.ping, "Check that the bot answers"),
            Command("menu", self.menu, "List available commands"),
            Command("mode", self.mode, "Show or set public/private mode", owner_only=True),
            Command("sudo", self.sudo, "sudo add|del|list <number>", owner_only=True),
            Command("sessions", self.sessions, "List managed sessions", owner_only=True),
        ]

    async def ping(self, ctx: CommandContext, args: list[str]) -> None:
        sent_at = ctx.event.timestamp
        if sent_at is None:
            await ctx.reply("Pong!")
            return
        latency_ms = max(0, int((time.time() - sent_at) * 1000))
        await ctx.reply(f"Pong! {latency_ms} ms")

    async def menu(self, ctx: CommandContext, args: list[str]) -> None:
        table = self._plugins.command_table or {}
        prefix = self._plugins.settings.bot.prefix
        lines = [f"{self._plugins.settings.bot.name} commands"]
        for name in sorted(table):
            command = table[name]
            if command.owner_only and not (ctx.is_owner or ctx.is_from_self):
                continue
            entry = f"{prefix}{name}"
            if command.description:
                entry = f"{entry}: {command.description}"
            lines.append(entry)
        await ctx.reply("\n".join(lines))

    async def mode(self, ctx: CommandContext, args: list[str]) -> None:
        store = self._plugins.mode
        if not args:
            await ctx.reply(f"Mode: {await store.get()}")
            return
        wanted = args[0].lower()
        if wanted not in ("public", "private"):
            await ctx.reply("Usage: mode public|private")
            return
        await store.set(wanted)
        await ctx.reply(f"Mode set to {wanted}")

    async def sudo(self, ctx: CommandContext, args: list[str]) -> None:
        store = self._plugins.sudo
        action = args[0].lower() if args else "list"
        if action == "list":
            members = await store.members()
            await ctx.reply("\n".join(["Sudo list", *members]) if members else "Sudo list is empty")
            return

        number = clean_phone_number("".join(args[1:]))
        if action not in ("add", "del") or not number:
            await ctx.reply("Usage: sudo add|del|list <number>")
            return
        if action == "add":
            added = await store.add(number)
            await ctx.reply(f"{number} added to sudo" if added else f"{number} is already sudo")
            return
        if await store.remove(number):
            await ctx.reply(f"{number} removed from sudo")
        elif store.is_configured(number):
            await ctx.reply(f"{number} is set in the config file and can't be removed here")
        else:
            await ctx.reply(f"{number} is not in sudo")

    async def sessions(self, ctx: CommandContext, args: list[str]) -> None:
        views = self._plugins.supervisor.list_all()
        if not views:
            await ctx.reply("No sessions")
            return
        lines = [
            f"{v.account_id}: {'connected' if v.connected else 'disconnected'}"
            + (f" (retry {v.retry_count})" if v.retry_count else "")
            for v in sorted(views, key=lambda v: v.account_id)
        ]
        await ctx.reply("\n".join(lines))


class BuiltinCommandsPlugin:
    @hookimpl
    def waswarm_commands(self, context: PluginContext) -> list[Command]:
        return BuiltinCommands(context).commands()
