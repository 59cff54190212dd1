"""Session lifecycle: registry and connection supervisor."""

from waswarm.sessions.registry import SessionRegistry
from waswarm.sessions.supervisor import ConnectionSupervisor

__all__ = ["ConnectionSupervisor", "SessionRegistry"]
