"""Tests for the built-in auto-behaviors and their toggle commands."""

from __future__ import annotations

import pytest
from conftest import FakeConnection, make_event

from waswarm.event_bus import InboundMessageEvent
from waswarm.messaging.commands import CommandContext, format_command_reply
from waswarm.plugin.behaviors import (
    AntiDeletePlugin,
    AutoReadPlugin,
    AutoStatusPlugin,
    MentionPlugin,
    WelcomePlugin,
    mentioned_jids,
    revoked_message_id,
)
from waswarm.utils import user_jid

ACCOUNT = "237650000001"
PEER = "237600000009@s.whatsapp.net"
GROUP = "120363000000000000@g.us"


def _bind(plugin, plugin_context):
    plugin.waswarm_commands(context=plugin_context)
    return plugin


async def _enable(plugin, plugin_context) -> None:
    await plugin_context.user_config.update(ACCOUNT, **{plugin.name: True})


def _inbound(connection: FakeConnection, **kwargs) -> InboundMessageEvent:
    kwargs.setdefault("account_id", ACCOUNT)
    event = make_event(**kwargs)
    text = (event.message or {}).get("conversation")
    return InboundMessageEvent(event=event, text=text, connection=connection)


def _toggle_ctx(connection: FakeConnection) -> CommandContext:
    event = make_event(account_id=ACCOUNT, text=".autoread on", from_me=True)
    return CommandContext(
        account_id=ACCOUNT,
        remote_conversation_id=event.chat_id,
        sender_id=event.sender_id,
        is_group=False,
        text=".autoread on",
        is_from_self=True,
        is_owner=False,
        connection=connection,
        event=event,
    )


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection(ACCOUNT)


class TestToggle:
    async def test_on_off_and_status(self, plugin_context, connection):
        plugin = _bind(AutoReadPlugin(), plugin_context)
        ctx = _toggle_ctx(connection)

        await plugin.toggle(ctx, ["on"])
        assert await plugin_context.user_config.is_enabled(ACCOUNT, "autoread")
        await plugin.toggle(ctx, [])
        await plugin.toggle(ctx, ["OFF"])
        await plugin.toggle(ctx, ["maybe"])

        assert [text for _, text in connection.sent] == [
            format_command_reply("autoread enabled"),
            format_command_reply("autoread is on"),
            format_command_reply("autoread disabled"),
            format_command_reply("Usage: autoread on|off"),
        ]
        assert not await plugin_context.user_config.is_enabled(ACCOUNT, "autoread")

    def test_toggle_command_is_owner_only(self, plugin_context):
        [command] = AutoReadPlugin().waswarm_commands(context=plugin_context)
        assert command.name == "autoread"
        assert command.owner_only is True

    async def test_unbound_plugin_raises(self, connection):
        with pytest.raises(RuntimeError):
            await AutoReadPlugin().observe(_inbound(connection, text="hi"))


class TestAutoRead:
    async def test_off_by_default(self, plugin_context, connection):
        plugin = _bind(AutoReadPlugin(), plugin_context)
        await plugin.observe(_inbound(connection, text="hi"))
        assert connection.read == []

    async def test_marks_incoming_read(self, plugin_context, connection):
        plugin = _bind(AutoReadPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        ev = _inbound(connection, text="hi")

        await plugin.observe(ev)
        await plugin.observe(_inbound(connection, text="mine", from_me=True))

        assert connection.read == [ev.event.ref]

    async def test_enabled_per_account(self, plugin_context):
        plugin = _bind(AutoReadPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        other = FakeConnection("237650000002")

        await plugin.observe(_inbound(other, account_id="237650000002", text="hi"))

        assert other.read == []


class TestAutoStatus:
    async def test_views_and_reacts_to_status(self, plugin_context, connection):
        plugin = _bind(AutoStatusPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        ev = _inbound(
            connection, chat_id="status@broadcast", sender_id=PEER, message={"imageMessage": {}}
        )

        await plugin.observe(ev)

        assert connection.read == [ev.event.ref]
        assert connection.reactions == [
            (ev.event.ref, plugin_context.settings.behaviors.status_emoji)
        ]

    async def test_ignores_regular_chats(self, plugin_context, connection):
        plugin = _bind(AutoStatusPlugin(), plugin_context)
        await _enable(plugin, plugin_context)

        await plugin.observe(_inbound(connection, text="hi"))

        assert connection.reactions == []


class TestWelcome:
    async def test_greets_once_in_public_mode(self, plugin_context, connection):
        plugin = _bind(WelcomePlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        await plugin_context.mode.set("public")

        await plugin.observe(_inbound(connection, text="hello"))
        await plugin.observe(_inbound(connection, text="hello again"))

        assert connection.sent == [(PEER, plugin_context.settings.behaviors.welcome_text)]

    async def test_silent_in_private_mode(self, plugin_context, connection):
        plugin = _bind(WelcomePlugin(), plugin_context)
        await _enable(plugin, plugin_context)

        await plugin.observe(_inbound(connection, text="hello"))

        assert connection.sent == []

    async def test_groups_ignored(self, plugin_context, connection):
        plugin = _bind(WelcomePlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        await plugin_context.mode.set("public")

        await plugin.observe(_inbound(connection, chat_id=GROUP, sender_id=PEER, text="hi"))

        assert connection.sent == []

    async def test_failed_greeting_retried(self, plugin_context, connection):
        plugin = _bind(WelcomePlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        await plugin_context.mode.set("public")

        connection.send_error = ConnectionError("offline")
        with pytest.raises(ConnectionError):
            await plugin.observe(_inbound(connection, text="hello"))
        connection.send_error = None
        await plugin.observe(_inbound(connection, text="hello again"))
        await plugin.observe(_inbound(connection, text="and again"))

        assert connection.sent == [(PEER, plugin_context.settings.behaviors.welcome_text)]

    async def test_greeted_senders_bounded(self, plugin_context, connection, monkeypatch):
        monkeypatch.setattr(plugin_context.settings.behaviors, "welcome_cache_size", 1)
        plugin = _bind(WelcomePlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        await plugin_context.mode.set("public")
        other = "237600000008@s.whatsapp.net"

        for sender in (PEER, other, PEER):
            await plugin.observe(_inbound(connection, chat_id=sender, sender_id=sender, text="hi"))

        assert [chat for chat, _ in connection.sent] == [PEER, other, PEER]
        assert list(plugin._greeted) == [(ACCOUNT, "237600000009")]


class TestAntiDelete:
    @staticmethod
    def _revoke(message_id: str) -> dict:
        return {"protocolMessage": {"type": "REVOKE", "key": {"ID": message_id}}}

    async def test_reposts_deleted_text_to_own_chat(self, plugin_context, connection):
        plugin = _bind(AntiDeletePlugin(), plugin_context)
        await _enable(plugin, plugin_context)

        await plugin.observe(_inbound(connection, text="secret", message_id="M1"))
        await plugin.observe(_inbound(connection, message=self._revoke("M1"), message_id="M2"))

        assert connection.sent == [
            (user_jid(ACCOUNT), f"Deleted message from 237600000009 in {PEER}:\nsecret")
        ]

    async def test_caches_while_disabled(self, plugin_context, connection):
        plugin = _bind(AntiDeletePlugin(), plugin_context)

        await plugin.observe(_inbound(connection, text="early", message_id="M1"))
        await _enable(plugin, plugin_context)
        await plugin.observe(_inbound(connection, message=self._revoke("M1"), message_id="M2"))

        assert len(connection.sent) == 1

    async def test_uncached_revoke_ignored(self, plugin_context, connection):
        plugin = _bind(AntiDeletePlugin(), plugin_context)
        await _enable(plugin, plugin_context)

        await plugin.observe(_inbound(connection, message=self._revoke("GONE")))

        assert connection.sent == []

    async def test_cache_bounded(self, plugin_context, connection, monkeypatch):
        monkeypatch.setattr(plugin_context.settings.behaviors, "antidelete_cache_size", 1)
        plugin = _bind(AntiDeletePlugin(), plugin_context)
        await _enable(plugin, plugin_context)

        await plugin.observe(_inbound(connection, text="old", message_id="M1"))
        await plugin.observe(_inbound(connection, text="new", message_id="M2"))
        await plugin.observe(_inbound(connection, message=self._revoke("M1"), message_id="M3"))

        assert connection.sent == []


class TestMention:
    async def test_replies_when_number_mentioned(self, plugin_context, connection):
        plugin = _bind(MentionPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        message = {
            "extendedTextMessage": {
                "text": "@bot hi",
                "contextInfo": {"mentionedJID": [user_jid(ACCOUNT)]},
            }
        }

        await plugin.observe(_inbound(connection, chat_id=GROUP, sender_id=PEER, message=message))

        assert connection.sent == [(GROUP, plugin_context.settings.behaviors.mention_reply)]

    async def test_replies_when_linked_identity_mentioned(self, plugin_context):
        connection = FakeConnection(ACCOUNT, self_lid="4242:3@lid")
        plugin = _bind(MentionPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        message = {
            "extendedTextMessage": {"text": "hi", "contextInfo": {"mentionedJid": ["4242@lid"]}}
        }

        await plugin.observe(_inbound(connection, chat_id=GROUP, sender_id=PEER, message=message))

        assert len(connection.sent) == 1

    async def test_other_mentions_ignored(self, plugin_context, connection):
        plugin = _bind(MentionPlugin(), plugin_context)
        await _enable(plugin, plugin_context)
        message = {"extendedTextMessage": {"text": "hi", "contextInfo": {"mentionedJID": [PEER]}}}

        await plugin.observe(_inbound(connection, chat_id=GROUP, sender_id=PEER, message=message))

        assert connection.sent == []


class TestMessageHelpers:
    def test_revoked_id_through_wrapper(self):
        message = {
            "ephemeralMessage": {"message": {"protocolMessage": {"type": 0, "key": {"id": "X"}}}}
        }
        assert revoked_message_id(message) == "X"

    def test_non_revoke_protocol_message(self):
        message = {"protocolMessage": {"type": "EPHEMERAL_SETTING", "key": {"ID": "X"}}}
        assert revoked_message_id(message) is None

    def test_plain_text_is_not_revoke(self):
        assert revoked_message_id({"conversation": "hi"}) is None

    def test_mentions_absent(self):
        assert mentioned_jids({"conversation": "hi"}) == []
        assert mentioned_jids(None) == []
