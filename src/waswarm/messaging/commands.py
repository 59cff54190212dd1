"""Prefix commands: context, table and router.

The command table is assembled once at startup from an ordered list of
descriptors (later registrations replace earlier ones with the same name)
and is read-only afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType

from waswarm.config import get_settings
from waswarm.logger import logger
from waswarm.types import Command, ConnectionHandle, InboundEvent


def format_command_reply(text: str) -> str:
    """Quote every line as ``> _`line`_``."""
    return "\n".join(f"> _`{line}`_" for line in text.split("\n"))


@dataclass(frozen=True)
class CommandContext:
    """Everything a command may know about the message that invoked it."""

    account_id: str
    remote_conversation_id: str
    sender_id: str
    is_group: bool
    text: str | None
    is_from_self: bool
    is_owner: bool
    connection: ConnectionHandle
    event: InboundEvent
    push_name: str | None = None

    async def reply(self, text: str) -> None:
        await self.connection.send(self.remote_conversation_id, format_command_reply(text))


def parse_command(text: str | None, prefix: str) -> tuple[str, list[str]] | None:
    """Split ``"<prefix>name a b"`` into ``("name", ["a", "b"])``."""
    if not text or not text.startswith(prefix):
        return None
    parts = text[len(prefix) :].strip().split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandTable(Mapping[str, Command]):
    """Immutable name → Command mapping."""

    def __init__(self, commands: Mapping[str, Command]) -> None:
        self._commands = MappingProxyType(dict(commands))

    def __getitem__(self, name: str) -> Command:
        return self._commands[name.lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._commands

    def __iter__(self) -> Iterator[str]:
        return iter(self._commands)

    def __len__(self) -> int:
        return len(self._commands)


class CommandTableBuilder:
    """Collect descriptors in registration order; last writer wins."""

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}

    def add(self, command: Command) -> CommandTableBuilder:
        name = command.name.strip().lower()
        if not name:
            raise ValueError("command name must not be empty")
        if name in self._commands:
            logger.debug("Command overridden", command=name)
        self._commands[name] = replace(command, name=name)
        return self

    def extend(self, commands: Iterable[Command]) -> CommandTableBuilder:
        for command in commands:
            self.add(command)
        return self

    def build(self) -> CommandTable:
        return CommandTable(self._commands)


class CommandRouter:
    """Route prefixed text to a registered command.

    Unknown names are ignored without a reply. Errors raised by a command
    are logged and answered with one generic failure reply.
    """

    def __init__(
        self,
        table: CommandTable,
        *,
        prefix: str | None = None,
        failure_reply: str | None = None,
    ) -> None:
        s = get_settings().bot
        self.table = table
        self.prefix = prefix if prefix is not None else s.prefix
        self.failure_reply = failure_reply if failure_reply is not None else s.failure_reply

    def resolve(self, text: str | None) -> tuple[Command, list[str]] | None:
        parsed = parse_command(text, self.prefix)
        if parsed is None:
            return None
        name, args = parsed
        command = self.table.get(name)
        if command is None:
            return None
        return command, args

    async def dispatch(self, ctx: CommandContext) -> bool:
        """Run the command named by ``ctx.text``. True if one was executed."""
        resolved = self.resolve(ctx.text)
        if resolved is None:
            return False
        command, args = resolved
        if command.owner_only and not (ctx.is_owner or ctx.is_from_self):
            logger.info("Owner-only command refused", command=command.name, account=ctx.account_id)
            return False

        logger.info(
            "Running command",
            command=command.name,
            account=ctx.account_id,
            chat=ctx.remote_conversation_id,
        )
        try:
            await command.execute(ctx, args)
        except Exception:
            logger.exception("Command failed", command=command.name, account=ctx.account_id)
            try:
                await ctx.reply(self.failure_reply)
            except Exception as exc:
                logger.error(
                    "Failed to send failure reply", command=command.name, err=str(exc)
                )
        return True
