"""Inbound pipeline: normalize, authorize, route."""

from waswarm.messaging.authorization import AuthorizationGate, authorize
from waswarm.messaging.commands import (
    CommandContext,
    CommandRouter,
    CommandTable,
    CommandTableBuilder,
    format_command_reply,
)
from waswarm.messaging.dispatch import InboundDispatcher
from waswarm.messaging.normalizer import extract_text, unwrap

__all__ = [
    "AuthorizationGate",
    "CommandContext",
    "CommandRouter",
    "CommandTable",
    "CommandTableBuilder",
    "InboundDispatcher",
    "authorize",
    "extract_text",
    "format_command_reply",
    "unwrap",
]
