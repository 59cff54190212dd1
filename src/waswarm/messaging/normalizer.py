"""Message normalization: unwrap container envelopes, extract command text.

Messages arrive as mappings keyed by WhatsApp protobuf field names. Some
shapes only wrap another message (ephemeral, view-once, document with
caption); those are peeled until a leaf shape remains. Text is then taken
from the first populated field in :data:`TEXT_FIELDS`.

Field spellings differ between protobuf definitions (``selectedButtonId``
vs ``selectedButtonID``), so each path step lists every accepted key.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NamedTuple

_MAX_DEPTH = 8

# container kind → key of the wrapped message
CONTAINERS: dict[str, str] = {
    "ephemeralMessage": "message",
    "viewOnceMessage": "message",
    "viewOnceMessageV2": "message",
    "viewOnceMessageV2Extension": "message",
    "documentWithCaptionMessage": "message",
}


class TextField(NamedTuple):
    kind: str
    path: tuple[tuple[str, ...], ...]


# Priority order: the first populated field wins.
TEXT_FIELDS: tuple[TextField, ...] = (
    TextField("conversation", (("conversation",),)),
    TextField("extendedTextMessage", (("extendedTextMessage",), ("text",))),
    TextField("imageMessage", (("imageMessage",), ("caption",))),
    TextField("videoMessage", (("videoMessage",), ("caption",))),
    TextField(
        "buttonsResponseMessage",
        (("buttonsResponseMessage",), ("selectedButtonId", "selectedButtonID")),
    ),
    TextField(
        "listResponseMessage",
        (
            ("listResponseMessage",),
            ("singleSelectReply",),
            ("selectedRowId", "selectedRowID"),
        ),
    ),
    TextField(
        "templateButtonReplyMessage",
        (("templateButtonReplyMessage",), ("selectedId", "selectedID")),
    ),
    TextField("reactionMessage", (("reactionMessage",), ("text",))),
    TextField(
        "interactiveResponseMessage",
        (
            ("interactiveResponseMessage",),
            ("nativeFlowResponseMessage",),
            ("paramsJson", "paramsJSON"),
        ),
    ),
)


def _container_payload(message: Mapping[str, Any]) -> Mapping[str, Any] | None:
    for kind, inner_key in CONTAINERS.items():
        wrapper = message.get(kind)
        if isinstance(wrapper, Mapping):
            inner = wrapper.get(inner_key)
            if isinstance(inner, Mapping):
                return inner
    return None


def unwrap(message: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    """Peel container shapes until a leaf message remains."""
    if message is None:
        return None
    current = message
    for _ in range(_MAX_DEPTH):
        inner = _container_payload(current)
        if inner is None:
            return current
        current = inner
    return current


def _follow(message: Mapping[str, Any], path: tuple[tuple[str, ...], ...]) -> Any:
    node: Any = message
    for step in path:
        if not isinstance(node, Mapping):
            return None
        node = next((node[key] for key in step if node.get(key) is not None), None)
    return node


def pick_text(leaf: Mapping[str, Any] | None) -> str | None:
    """Text of a leaf message, or None when no known field is populated."""
    if not leaf:
        return None
    for field in TEXT_FIELDS:
        value = _follow(leaf, field.path)
        if isinstance(value, str) and value:
            return value
    return None


def extract_text(message: Mapping[str, Any] | None) -> str | None:
    """Unwrap *message* and extract its canonical text."""
    return pick_text(unwrap(message))


def leaf_kind(message: Mapping[str, Any] | None) -> str | None:
    """Name of the leaf content shape (``"conversation"``, ``"protocolMessage"`` ...)."""
    leaf = unwrap(message)
    if not leaf:
        return None
    for key, value in leaf.items():
        if key == "messageContextInfo":
            continue
        if value not in (None, "", {}):
            return key
    return None
