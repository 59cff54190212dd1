"""WhatsApp transport using neonize (whatsmeow Python bindings).

One ``NewAClient`` per account, each with its own session database under
``sessions/<account>/neonize.db``. neonize events are translated into
:class:`ConnectionUpdate`, credential blobs and :class:`InboundEvent`
for the supervisor's listener.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import sys
from pathlib import Path
from typing import Any

import qrcode
from google.protobuf.json_format import MessageToDict
from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.proto.Neonize_pb2 import JID
from neonize.utils.enum import ReceiptType
from neonize.utils.jid import Jid2String, build_jid

from waswarm.logger import logger
from waswarm.types import (
    ConnectionListener,
    ConnectionUpdate,
    CredentialRecord,
    DisconnectCause,
    GroupMetadata,
    GroupParticipant,
    InboundEvent,
    MessageRef,
    TransportOpenError,
)

SESSION_DB = "neonize.db"


def _bind_loop() -> None:
    # neonize keeps module-level loop references; patch both modules so
    # events and internal tasks bind to the running loop.
    loop = asyncio.get_running_loop()
    neonize_events.event_global_loop = loop
    neonize_client.event_global_loop = loop


def _parse_jid(jid_str: str) -> JID:
    if "@" not in jid_str:
        return build_jid(jid_str)
    user, server = jid_str.split("@", 1)
    return build_jid(user, server)


def _device_ids(client: NewAClient) -> tuple[str | None, str | None]:
    device = getattr(client, "me", None)
    jid = getattr(device, "JID", None)
    lid = getattr(device, "LID", None)
    return (
        Jid2String(jid) if jid is not None and jid.User else None,
        Jid2String(lid) if lid is not None and lid.User else None,
    )


def _print_qr(qr_data: bytes) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(qr_data)
    qr.make()
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    print(buf.getvalue(), file=sys.stderr, flush=True)


def to_inbound_event(account_id: str, message: MessageEv) -> InboundEvent:
    info = message.Info
    source = info.MessageSource
    ts = float(info.Timestamp) if info.Timestamp else None
    if ts is not None and ts > 1e10:
        ts = ts / 1000
    body = MessageToDict(message.Message, preserving_proto_field_name=True)
    return InboundEvent(
        account_id=account_id,
        ref=MessageRef(
            chat_id=Jid2String(source.Chat),
            message_id=info.ID,
            sender_id=Jid2String(source.Sender),
            from_me=bool(source.IsFromMe),
        ),
        message=body or None,
        push_name=info.Pushname or None,
        timestamp=ts,
    )


class NeonizeConnection:
    """Connection handle wrapping one running ``NewAClient``."""

    def __init__(self, account_id: str, client: NewAClient) -> None:
        self.account_id = account_id
        self._client = client
        self._idle_task: asyncio.Task[Any] | None = None
        self._closed = False

    @property
    def self_id(self) -> str | None:
        return _device_ids(self._client)[0]

    @property
    def self_lid(self) -> str | None:
        return _device_ids(self._client)[1]

    async def start(self) -> None:
        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())

    async def send(self, conversation_id: str, text: str) -> None:
        await self._client.send_message(_parse_jid(conversation_id), text)

    async def mark_read(self, ref: MessageRef) -> None:
        await self._client.mark_read(
            ref.message_id,
            chat=_parse_jid(ref.chat_id),
            sender=_parse_jid(ref.sender_id),
            receipt=ReceiptType.READ,
        )

    async def react(self, ref: MessageRef, emoji: str) -> None:
        chat = _parse_jid(ref.chat_id)
        sender = _parse_jid(ref.sender_id)
        reaction_msg = await self._client.build_reaction(chat, sender, ref.message_id, emoji)
        await self._client.send_message(chat, reaction_msg)

    async def group_metadata(self, conversation_id: str) -> GroupMetadata:
        info = await self._client.get_group_info(_parse_jid(conversation_id))
        return GroupMetadata(
            id=conversation_id,
            subject=info.GroupName.Name,
            participants=tuple(
                GroupParticipant(id=Jid2String(p.JID), admin=bool(p.IsAdmin))
                for p in info.Participants
            ),
        )

    async def close(self, *, logout: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        if logout:
            try:
                await self._client.logout()
            except Exception as exc:
                logger.warning("Logout failed", account=self.account_id, err=str(exc))
        if self._idle_task is not None:
            self._idle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._idle_task
        with contextlib.suppress(Exception):
            await self._client.disconnect()


class NeonizeTransport:
    """Opens neonize clients and issues phone-number pairing codes."""

    def __init__(self, sessions_root: Path, *, pairing_timeout: float = 60.0) -> None:
        self.sessions_root = sessions_root
        self.pairing_timeout = pairing_timeout
        self._pairing: dict[str, NeonizeConnection] = {}

    def _new_client(self, account_id: str) -> NewAClient:
        _bind_loop()
        session_dir = self.sessions_root / account_id
        session_dir.mkdir(parents=True, exist_ok=True)
        return NewAClient(str(session_dir / SESSION_DB))

    def _register_events(
        self, client: NewAClient, account_id: str, listener: ConnectionListener
    ) -> None:
        async def _credentials_from(c: NewAClient) -> None:
            jid, lid = _device_ids(c)
            await listener.on_credentials_update({"registered": True, "jid": jid, "lid": lid})

        @client.event(ConnectedEv)
        async def on_connected(c: NewAClient, _ev: ConnectedEv) -> None:
            await _credentials_from(c)
            await listener.on_connection_update(ConnectionUpdate(state="open"))

        @client.event(PairStatusEv)
        async def on_pair_status(c: NewAClient, ev: PairStatusEv) -> None:
            logger.info("WhatsApp paired", account=account_id, user=ev.ID.User)
            await _credentials_from(c)

        @client.event(DisconnectedEv)
        async def on_disconnected(_c: NewAClient, _ev: DisconnectedEv) -> None:
            await listener.on_connection_update(
                ConnectionUpdate(state="close", cause=DisconnectCause.CONNECTION_LOST)
            )

        @client.event(LoggedOutEv)
        async def on_logged_out(_c: NewAClient, ev: LoggedOutEv) -> None:
            await listener.on_credentials_update({"registered": False})
            await listener.on_connection_update(
                ConnectionUpdate(
                    state="close",
                    cause=DisconnectCause.LOGGED_OUT,
                    detail=str(getattr(ev, "Reason", "")) or None,
                )
            )

        @client.event(ConnectFailureEv)
        async def on_connect_failure(_c: NewAClient, ev: ConnectFailureEv) -> None:
            await listener.on_connection_update(
                ConnectionUpdate(
                    state="close",
                    cause=DisconnectCause.CONNECT_FAILURE,
                    detail=str(getattr(ev, "Reason", "")) or None,
                )
            )

        @client.event(MessageEv)
        async def on_message(_c: NewAClient, message: MessageEv) -> None:
            try:
                event = to_inbound_event(account_id, message)
            except Exception:
                logger.exception(
                    "Failed to decode message",
                    account=account_id,
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )
                return
            await listener.on_message(event)

        @client.event.qr
        async def on_qr(_c: NewAClient, qr_data: bytes) -> None:
            logger.warning("Session not linked, scan the QR code to link it", account=account_id)
            _print_qr(qr_data)

    async def open(
        self,
        account_id: str,
        credentials: CredentialRecord | None,
        listener: ConnectionListener,
    ) -> NeonizeConnection:
        logger.debug(
            "Opening neonize client",
            account=account_id,
            registered=bool(credentials and credentials.registered),
        )
        client = self._new_client(account_id)
        self._register_events(client, account_id, listener)
        await listener.on_connection_update(ConnectionUpdate(state="connecting"))
        connection = NeonizeConnection(account_id, client)
        try:
            await connection.start()
        except Exception as exc:
            await connection.close()
            raise TransportOpenError(f"{account_id}: {exc}") from exc
        return connection

    async def request_pairing_code(self, account_id: str, listener: ConnectionListener) -> str:
        await self.release_pairing(account_id)
        client = self._new_client(account_id)
        self._register_events(client, account_id, listener)
        code_ready: asyncio.Future[str] = asyncio.get_running_loop().create_future()

        @client.event.paircode
        async def on_paircode(_c: NewAClient, code: str, connected: bool = True) -> None:
            if not code_ready.done():
                code_ready.set_result(code)

        connection = NeonizeConnection(account_id, client)
        self._pairing[account_id] = connection
        try:
            await client.PairPhone(account_id, True)
            return await asyncio.wait_for(code_ready, timeout=self.pairing_timeout)
        except Exception:
            await self.release_pairing(account_id)
            raise

    async def release_pairing(self, account_id: str) -> None:
        connection = self._pairing.pop(account_id, None)
        if connection is not None:
            await connection.close()
