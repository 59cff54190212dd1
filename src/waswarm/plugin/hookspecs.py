"""Pluggy hook specifications for waswarm plugins.

All hooks use the "waswarm" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("waswarm")


class WaswarmSpec:
    """Hook specifications for waswarm plugins.

    A single plugin can implement both hooks, e.g. an auto-behavior that
    also contributes the owner command that toggles it.
    """

    @hookspec
    def waswarm_commands(self, context: Any) -> list[Any] | None:
        """Contribute prefix commands.

        Args:
            context: PluginContext with settings, stores and the supervisor

        Returns:
            List of :class:`waswarm.types.Command` descriptors, or None.
            When two plugins register the same name the one registered
            later wins (built-ins first, then entry-point plugins).
        """

    @hookspec
    def waswarm_auto_behaviors(self, context: Any) -> list[Any] | None:
        """Contribute observers of the inbound message stream.

        Args:
            context: PluginContext with settings, stores and the supervisor

        Returns:
            List of async callables taking one
            :class:`waswarm.event_bus.InboundMessageEvent`, or None.
            Each is subscribed to the event bus and fails independently.
        """
