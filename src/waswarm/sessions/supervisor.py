"""Connection supervisor: one reconnect state machine per account.

States per account::

    Connecting → Open → Closed ─┬─ Reconnecting → Connecting ...
                                ├─ Abandoned   (retries exhausted)
                                └─ Abandoned   (logged out, never retried)

Every connection attempt gets a generation number. Transport callbacks
carry the generation of the attempt that produced them, so events from a
replaced or removed connection are ignored instead of mutating the
registry. A scheduled reconnect re-checks the registry before acting so
it never resurrects a session that was closed while it slept.

asyncio.ensure_future doesn't run the coroutine synchronously, so the
pending-reconnect task is recorded by the synchronous caller and removed
by the task itself once it wakes.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from waswarm.config import get_settings
from waswarm.event_bus import (
    EventBus,
    PairingCodeEvent,
    SessionAbandonedEvent,
    SessionClosedEvent,
    SessionOpenedEvent,
)
from waswarm.logger import logger
from waswarm.sessions.registry import SessionRegistry
from waswarm.state.credentials import CredentialStore
from waswarm.types import (
    ConnectionHandle,
    ConnectionUpdate,
    DisconnectCause,
    InboundEvent,
    InvalidAccountError,
    PersistenceError,
    SessionNotConnectedError,
    SessionNotFoundError,
    SessionView,
    Transport,
    TransportOpenError,
)
from waswarm.utils import clean_phone_number, format_pairing_code

type MessageHandler = Callable[[InboundEvent, ConnectionHandle], Awaitable[None]]


class _SessionListener:
    """Transport callbacks for one connection attempt."""

    def __init__(self, supervisor: ConnectionSupervisor, account_id: str, generation: int) -> None:
        self._supervisor = supervisor
        self.account_id = account_id
        self.generation = generation
        self.handle: ConnectionHandle | None = None
        self.opened = False
        self.close_update: ConnectionUpdate | None = None

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        await self._supervisor._on_connection_update(self, update)

    async def on_credentials_update(self, blob: dict[str, Any]) -> None:
        await self._supervisor._persist_credentials(self.account_id, blob)

    async def on_message(self, event: InboundEvent) -> None:
        await self._supervisor._on_message(self, event)


class _PairingListener:
    """Callbacks for the short-lived pairing connection: credentials only."""

    def __init__(self, supervisor: ConnectionSupervisor, account_id: str) -> None:
        self._supervisor = supervisor
        self.account_id = account_id

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        logger.debug("Pairing connection update", account=self.account_id, state=update.state)

    async def on_credentials_update(self, blob: dict[str, Any]) -> None:
        await self._supervisor._persist_credentials(self.account_id, blob)

    async def on_message(self, event: InboundEvent) -> None:
        return None


class ConnectionSupervisor:
    """Creates, supervises and reconnects one connection per account.

    The supervisor is the only writer of the :class:`SessionRegistry`;
    other components get read-only :class:`SessionView` snapshots.
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        *,
        registry: SessionRegistry | None = None,
        bus: EventBus | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        pairing_wait: float | None = None,
        purge_credentials_on_logout: bool | None = None,
    ) -> None:
        s = get_settings().sessions
        self._transport = transport
        self._credentials = credentials
        self._registry = registry if registry is not None else SessionRegistry()
        self._bus = bus if bus is not None else EventBus()
        self.max_retries = s.max_retries if max_retries is None else max_retries
        self.retry_delay = s.retry_delay if retry_delay is None else retry_delay
        self.pairing_wait = s.pairing_wait if pairing_wait is None else pairing_wait
        self.purge_credentials_on_logout = (
            s.purge_credentials_on_logout
            if purge_credentials_on_logout is None
            else purge_credentials_on_logout
        )
        self._generations = itertools.count(1)
        self._current: dict[str, int] = {}
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._start_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._message_handler: MessageHandler | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def bus(self) -> EventBus:
        return self._bus

    def set_message_handler(self, fn: MessageHandler) -> None:
        """Register the callback that receives every inbound message."""
        self._message_handler = fn

    def lookup(self, number: str) -> SessionView | None:
        return self._registry.lookup(clean_phone_number(number))

    def list_all(self) -> list[SessionView]:
        return self._registry.list_all()

    def has_pending_reconnect(self, account_id: str) -> bool:
        task = self._pending.get(account_id)
        return task is not None and not task.done()

    async def send(self, number: str, conversation_id: str, text: str) -> None:
        """Send through the account's live connection."""
        account_id = clean_phone_number(number)
        view = self._registry.lookup(account_id)
        handle = self._registry.handle(account_id)
        if view is None or handle is None:
            raise SessionNotFoundError(account_id)
        if not view.connected:
            raise SessionNotConnectedError(account_id)
        await handle.send(conversation_id, text)

    # ------------------------------------------------------------------
    # Starting sessions
    # ------------------------------------------------------------------

    async def start_pairing(self, number: str) -> SessionView:
        """Start (or return) the session for *number*, pairing it if needed."""
        account_id = clean_phone_number(number)
        if not account_id:
            raise InvalidAccountError(f"no digits in {number!r}")

        async with self._start_locks[account_id]:
            existing = self._registry.lookup(account_id)
            if existing is not None and existing.connected:
                logger.info("Session already connected", account=account_id)
                return existing
            if existing is not None and self.has_pending_reconnect(account_id):
                logger.info("Session reconnect already pending", account=account_id)
                return existing

            logger.info("Starting session", account=account_id)
            creds = await self._credentials.load(account_id)
            if creds is None or not creds.registered:
                await self._pair(account_id)

            stale = self._registry.handle(account_id)
            if stale is not None:
                self._current.pop(account_id, None)
                await _close_quietly(stale, account_id)
            view = await self._connect(account_id, retry_count=0)
            logger.info("Session initialized", account=account_id)
            return view

    async def _pair(self, account_id: str) -> None:
        listener = _PairingListener(self, account_id)
        try:
            code = await self._transport.request_pairing_code(account_id, listener)
        except Exception:
            logger.exception("Pairing code request failed", account=account_id)
            with contextlib.suppress(Exception):
                await self._transport.release_pairing(account_id)
            raise
        logger.info("Pairing code issued", account=account_id, code=format_pairing_code(code))
        logger.info(
            "Enter the code on WhatsApp > Linked devices > Link with phone number",
            account=account_id,
            wait_seconds=self.pairing_wait,
        )
        self._bus.emit(PairingCodeEvent(account_id=account_id, code=code))
        try:
            await asyncio.sleep(self.pairing_wait)
        finally:
            await self._transport.release_pairing(account_id)

    async def start_all_sessions(self) -> list[SessionView]:
        """Start every account with persisted credentials, concurrently.

        One account failing does not affect the others; it is simply left
        out of the registry.
        """
        accounts = await self._credentials.list_known_accounts()
        if not accounts:
            logger.warning("No existing sessions found", root=str(self._credentials.root))
            return []
        logger.info("Starting existing sessions", count=len(accounts))
        await asyncio.gather(*(self._start_isolated(a) for a in accounts))
        views = self.list_all()
        logger.info("Sessions active", count=len(views))
        return views

    async def _start_isolated(self, account_id: str) -> None:
        try:
            await self.start_pairing(account_id)
        except Exception as exc:
            logger.error("Automatic session start failed", account=account_id, err=str(exc))

    async def _connect(self, account_id: str, *, retry_count: int) -> SessionView:
        generation = next(self._generations)
        self._current[account_id] = generation
        listener = _SessionListener(self, account_id, generation)
        creds = await self._credentials.load(account_id)
        try:
            handle = await self._transport.open(account_id, creds, listener)
        except TransportOpenError:
            raise
        except Exception as exc:
            raise TransportOpenError(f"{account_id}: {exc}") from exc

        if self._current.get(account_id) != generation:
            # Closed or restarted while the transport was opening.
            logger.info("Discarding superseded connection", account=account_id)
            await _close_quietly(handle, account_id)
            raise TransportOpenError(f"{account_id}: superseded while opening")

        listener.handle = handle
        opened = listener.opened and listener.close_update is None
        view = self._registry.register(
            account_id,
            handle,
            connected=opened,
            retry_count=retry_count,
            generation=generation,
        )
        if opened:
            self._announce_open(account_id)
        if listener.close_update is not None:
            await self._handle_close(account_id, listener.close_update.cause)
            return self._registry.lookup(account_id) or view
        return view

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _is_current(self, listener: _SessionListener) -> bool:
        return self._current.get(listener.account_id) == listener.generation

    async def _on_connection_update(
        self, listener: _SessionListener, update: ConnectionUpdate
    ) -> None:
        account_id = listener.account_id
        if not self._is_current(listener):
            logger.debug("Ignoring update from stale connection", account=account_id)
            return

        if update.state == "open":
            listener.opened = True
            if listener.handle is not None and self._registry.mark_connected(account_id):
                self._announce_open(account_id)
            return

        if update.state != "close" or listener.close_update is not None:
            return
        listener.close_update = update
        if listener.handle is None:
            # _connect has not registered this attempt yet; it will see close_update.
            return
        await self._handle_close(account_id, update.cause)

    def _announce_open(self, account_id: str) -> None:
        logger.info("Session connected", account=account_id)
        self._bus.emit(SessionOpenedEvent(account_id=account_id))

    async def _handle_close(self, account_id: str, cause: DisconnectCause | None) -> None:
        view = self._registry.lookup(account_id)
        if view is None:
            return
        self._registry.mark_disconnected(account_id)

        if cause == DisconnectCause.LOGGED_OUT:
            logger.warning("Session logged out, not reconnecting", account=account_id)
            self._bus.emit(SessionClosedEvent(account_id=account_id, cause=cause, will_retry=False))
            await self._abandon(account_id, "logged_out")
            return

        if view.retry_count >= self.max_retries:
            logger.error(
                "Maximum reconnect attempts reached",
                account=account_id,
                max_retries=self.max_retries,
            )
            self._bus.emit(SessionClosedEvent(account_id=account_id, cause=cause, will_retry=False))
            await self._abandon(account_id, "max_retries")
            return

        retry = self._registry.begin_retry(account_id)
        generation = self._registry.generation(account_id)
        if retry is None or generation is None:
            return
        logger.warning(
            "Session disconnected, scheduling reconnect",
            account=account_id,
            cause=str(cause) if cause else None,
            attempt=retry.retry_count,
            max_retries=self.max_retries,
            delay=self.retry_delay,
        )
        self._bus.emit(SessionClosedEvent(account_id=account_id, cause=cause, will_retry=True))
        self._cancel_pending(account_id)
        self._pending[account_id] = asyncio.ensure_future(
            self._reconnect(account_id, generation, retry.retry_count)
        )

    async def _reconnect(self, account_id: str, generation: int, attempt: int) -> None:
        try:
            await asyncio.sleep(self.retry_delay)
        finally:
            if self._pending.get(account_id) is asyncio.current_task():
                del self._pending[account_id]

        if self._registry.generation(account_id) != generation:
            logger.info("Reconnect skipped, session removed or replaced", account=account_id)
            return

        logger.info(
            "Reconnecting", account=account_id, attempt=attempt, max_retries=self.max_retries
        )
        stale = self._registry.handle(account_id)
        if stale is not None:
            self._current.pop(account_id, None)
            await _close_quietly(stale, account_id)
        if self._registry.generation(account_id) != generation:
            return
        try:
            await self._connect(account_id, retry_count=attempt)
        except Exception as exc:
            logger.error("Reconnect failed", account=account_id, attempt=attempt, err=str(exc))
            if self._registry.generation(account_id) == generation:
                await self._handle_close(account_id, DisconnectCause.CONNECT_FAILURE)

    async def _abandon(self, account_id: str, reason: str) -> None:
        self._cancel_pending(account_id)
        self._current.pop(account_id, None)
        handle = self._registry.handle(account_id)
        self._registry.remove(account_id)
        if handle is not None:
            await _close_quietly(handle, account_id)
        logger.warning("Session abandoned", account=account_id, reason=reason)
        self._bus.emit(SessionAbandonedEvent(account_id=account_id, reason=reason))
        if reason == "logged_out" and self.purge_credentials_on_logout:
            with contextlib.suppress(PersistenceError):
                await self._credentials.delete(account_id)

    async def _persist_credentials(self, account_id: str, blob: dict[str, Any]) -> None:
        try:
            await self._credentials.save(account_id, blob)
        except PersistenceError:
            # Already logged at error level by the store; nothing to retry here.
            return

    async def _on_message(self, listener: _SessionListener, event: InboundEvent) -> None:
        if not self._is_current(listener):
            logger.debug("Dropping message from stale connection", account=listener.account_id)
            return
        if listener.handle is None:
            logger.warning(
                "Dropping message received before registration", account=listener.account_id
            )
            return
        if self._message_handler is None:
            return
        try:
            await self._message_handler(event, listener.handle)
        except Exception:
            logger.exception(
                "Unhandled error in message handler",
                account=listener.account_id,
                message_id=event.ref.message_id,
            )

    # ------------------------------------------------------------------
    # Closing sessions
    # ------------------------------------------------------------------

    def _cancel_pending(self, account_id: str) -> None:
        task = self._pending.pop(account_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def close_session(self, number: str, *, logout: bool = False) -> bool:
        """Remove the session and close its connection. False if absent."""
        account_id = clean_phone_number(number)
        self._cancel_pending(account_id)
        self._current.pop(account_id, None)
        handle = self._registry.handle(account_id)
        if self._registry.remove(account_id) is None or handle is None:
            return False
        try:
            await handle.close(logout=logout)
        except Exception as exc:
            logger.error("Error while closing session", account=account_id, err=str(exc))
            return False
        logger.info("Session closed", account=account_id, logout=logout)
        return True

    async def close_all_sessions(self) -> None:
        logger.info("Closing all sessions", count=len(self._registry))
        accounts = [v.account_id for v in self._registry.list_all()]
        for account_id in list(self._pending):
            self._cancel_pending(account_id)
        await asyncio.gather(
            *(self.close_session(a) for a in accounts), return_exceptions=True
        )
        logger.info("All sessions closed")


async def _close_quietly(handle: ConnectionHandle, account_id: str) -> None:
    try:
        await handle.close()
    except Exception as exc:
        logger.debug(
            "Ignoring error while closing stale connection", account=account_id, err=str(exc)
        )
