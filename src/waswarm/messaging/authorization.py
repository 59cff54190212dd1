"""Who may run commands on an account.

A sender is authorized when any of these hold:

- the message came from the account itself (``from_me``)
- the sender's bare number is the owner or in the sudo list
- the sender's linked identity (``<user>@lid``) is the account's own
"""

from __future__ import annotations

from collections.abc import Collection

from waswarm.state.kv import SudoStore
from waswarm.types import InboundEvent
from waswarm.utils import LID_SERVER, bare_number, clean_phone_number, linked_identity


def sender_linked_identity(sender_id: str | None) -> str | None:
    if not sender_id or not sender_id.endswith(f"@{LID_SERVER}"):
        return None
    return linked_identity(sender_id)


def authorize(
    *,
    from_me: bool,
    sender_id: str,
    sudo: Collection[str],
    owner: str | None = None,
    own_lid: str | None = None,
) -> bool:
    """Pure authorization decision; see module docstring."""
    if from_me:
        return True
    number = bare_number(sender_id)
    if number and (number == owner or number in sudo):
        return True
    own = linked_identity(own_lid)
    return own is not None and sender_linked_identity(sender_id) == own


class AuthorizationGate:
    """Binds :func:`authorize` to the persisted sudo list and owner."""

    def __init__(self, sudo: SudoStore, owner: str | None = None) -> None:
        self._sudo = sudo
        self._owner = clean_phone_number(owner) or None

    async def owner(self) -> str | None:
        """Configured owner, else the first sudo entry."""
        if self._owner:
            return self._owner
        members = await self._sudo.members()
        return members[0] if members else None

    async def is_owner(self, sender_id: str) -> bool:
        owner = await self.owner()
        return owner is not None and bare_number(sender_id) == owner

    async def is_authorized(self, event: InboundEvent, *, own_lid: str | None) -> bool:
        return authorize(
            from_me=event.from_me,
            sender_id=event.sender_id,
            sudo=await self._sudo.members(),
            owner=await self.owner(),
            own_lid=own_lid,
        )
