"""Application orchestrator: wires stores, plugins, supervisor and HTTP."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from waswarm.config import get_settings
from waswarm.event_bus import (
    EventBus,
    InboundMessageEvent,
    PairingCodeEvent,
    SessionAbandonedEvent,
)
from waswarm.http_server import start_http_server
from waswarm.logger import logger, set_level
from waswarm.messaging.authorization import AuthorizationGate
from waswarm.messaging.commands import CommandRouter
from waswarm.messaging.dispatch import InboundDispatcher
from waswarm.plugin import (
    PluginContext,
    build_command_table,
    collect_auto_behaviors,
    get_plugin_manager,
)
from waswarm.sessions.supervisor import ConnectionSupervisor
from waswarm.state import CredentialStore, KeyValueStore, ModeStore, SudoStore, UserConfigStore
from waswarm.types import Transport

_FORCE_EXIT_AFTER = 12.0


class WaswarmApp:
    """Owns all runtime state and wires subsystems."""

    def __init__(self, transport: Transport | None = None) -> None:
        s = get_settings()
        self.settings = s
        self.bus = EventBus()
        self.kv = KeyValueStore(s.db_path)
        self.credentials = CredentialStore(s.sessions_dir)
        self.sudo = SudoStore(self.kv, s.bot.sudo)
        self.mode = ModeStore(self.kv)
        self.user_config = UserConfigStore(self.kv)
        self.gate = AuthorizationGate(self.sudo, s.bot.owner)
        self._transport = transport
        self.supervisor: ConnectionSupervisor | None = None
        self.dispatcher: InboundDispatcher | None = None
        self._http_runner: Any | None = None
        self._shutting_down = False
        self._stopped = asyncio.Event()

    def _create_transport(self) -> Transport:
        from waswarm.transport.neonize import NeonizeTransport

        return NeonizeTransport(self.settings.sessions_dir)

    async def setup(self) -> None:
        """Open storage, load plugins and build the inbound pipeline."""
        set_level(self.settings.logging.level)
        await self.kv.open()
        logger.info("Database initialized", path=str(self.settings.db_path))

        transport = self._transport if self._transport is not None else self._create_transport()
        self.supervisor = ConnectionSupervisor(transport, self.credentials, bus=self.bus)

        context = PluginContext(
            settings=self.settings,
            supervisor=self.supervisor,
            gate=self.gate,
            sudo=self.sudo,
            mode=self.mode,
            user_config=self.user_config,
        )
        pm = get_plugin_manager()
        table = build_command_table(pm, context)
        for behavior in collect_auto_behaviors(pm, context):
            self.bus.subscribe(InboundMessageEvent, behavior)

        self.bus.subscribe(PairingCodeEvent, self._on_pairing_code)
        self.bus.subscribe(SessionAbandonedEvent, self._on_abandoned)

        router = CommandRouter(table)
        self.dispatcher = InboundDispatcher(self.bus, self.gate, router, self.credentials)
        self.supervisor.set_message_handler(self.dispatcher)

    async def _on_pairing_code(self, event: PairingCodeEvent) -> None:
        print(f"\nPairing code for {event.account_id}: {event.code}\n", flush=True)

    async def _on_abandoned(self, event: SessionAbandonedEvent) -> None:
        if event.reason == "logged_out":
            logger.warning(
                "Session logged out; pair it again with `waswarm pair`",
                account=event.account_id,
            )

    async def start_sessions(self, pair_number: str | None = None) -> None:
        """Start every persisted session, then pair a new number if asked.

        Without an explicit number, ``[bot].number`` is paired when no
        session could be started.
        """
        assert self.supervisor is not None
        views = await self.supervisor.start_all_sessions()
        number = pair_number or (None if views else self.settings.bot.number)
        if not number:
            return
        try:
            await self.supervisor.start_pairing(number)
        except Exception as exc:
            logger.error("Pairing failed", number=number, err=str(exc))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        # Hard-exit watchdog in case a transport disconnect hangs.
        loop = asyncio.get_running_loop()
        loop.call_later(_FORCE_EXIT_AFTER, lambda: os._exit(1))

        await self.stop()

    async def stop(self) -> None:
        if self._http_runner:
            await self._http_runner.cleanup()
            self._http_runner = None
        if self.supervisor is not None:
            await self.supervisor.close_all_sessions()
        if self.dispatcher is not None:
            await self.dispatcher.drain(timeout=5.0)
        await self.bus.drain(timeout=5.0)
        await self.kv.close()
        self._stopped.set()

    async def run(self, pair_number: str | None = None) -> None:
        """Main entry point: startup sequence, then wait for a signal."""
        await self.setup()
        assert self.supervisor is not None

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        await self.start_sessions(pair_number)

        if self.settings.server.enabled:
            self._http_runner = await start_http_server(self.supervisor)

        logger.info(
            "waswarm running",
            sessions=len(self.supervisor.list_all()),
            prefix=self.settings.bot.prefix,
        )
        await self._stopped.wait()
        logger.info("waswarm stopped")
