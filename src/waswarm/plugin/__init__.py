"""Plugin system for waswarm.

Plugins contribute prefix commands and auto-behaviors (observers of the
inbound message stream). Built on pluggy.

Usage:
    from waswarm.plugin import get_plugin_manager

    pm = get_plugin_manager()
    table = build_command_table(pm, context)
    behaviors = collect_auto_behaviors(pm, context)
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pluggy

from waswarm.config import Settings, get_settings
from waswarm.logger import logger
from waswarm.messaging.commands import CommandTable, CommandTableBuilder
from waswarm.plugin.hookspecs import WaswarmSpec

if TYPE_CHECKING:
    from waswarm.messaging.authorization import AuthorizationGate
    from waswarm.sessions.supervisor import ConnectionSupervisor
    from waswarm.state.kv import ModeStore, SudoStore, UserConfigStore

__all__ = [
    "PluginContext",
    "build_command_table",
    "collect_auto_behaviors",
    "get_plugin_manager",
]

type AutoBehavior = Callable[[Any], Coroutine[Any, Any, None]]

# Static registry of built-in plugins.
# Each entry: (module_path, class_name, config_key)
# config_key is checked against [plugins.<key>].enabled in config.toml.
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("waswarm.plugin.builtin_commands", "BuiltinCommandsPlugin", "commands"),
    ("waswarm.plugin.behaviors", "AutoStatusPlugin", "autostatus"),
    ("waswarm.plugin.behaviors", "AutoReadPlugin", "autoread"),
    ("waswarm.plugin.behaviors", "WelcomePlugin", "welcome"),
    ("waswarm.plugin.behaviors", "AntiDeletePlugin", "antidelete"),
    ("waswarm.plugin.behaviors", "MentionPlugin", "mention"),
]


@dataclass
class PluginContext:
    """What plugins get to work with.

    ``command_table`` is filled in once the table has been built so that
    commands like ``menu`` can list their siblings.
    """

    settings: Settings
    supervisor: ConnectionSupervisor
    gate: AuthorizationGate
    sudo: SudoStore
    mode: ModeStore
    user_config: UserConfigStore
    command_table: CommandTable | None = None


def get_plugin_manager() -> pluggy.PluginManager:
    """Create and configure the plugin manager.

    Discovers plugins from the static registry and entry points.
    All hook specifications are validated at registration time.
    """
    pm = pluggy.PluginManager("waswarm")
    pm.add_hookspecs(WaswarmSpec)

    s = get_settings()

    for module_path, class_name, config_key in _BUILTIN_PLUGIN_SPECS:
        plugin_cfg = s.plugins.get(config_key)
        if plugin_cfg is not None and not plugin_cfg.enabled:
            logger.info("Plugin disabled via config", plugin=config_key)
            continue

        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{config_key}")
            logger.debug("Registered built-in plugin", name=config_key)
        except Exception:
            logger.exception("Failed to load built-in plugin", plugin=config_key)

    # Third-party plugins register via the "waswarm" entry point group.
    discovered = pm.load_setuptools_entrypoints("waswarm")
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    for name, plugin in list(pm.list_name_plugin()):
        if name.startswith("builtin-"):
            continue
        plugin_cfg = s.plugins.get(name)
        if plugin_cfg is not None and not plugin_cfg.enabled:
            pm.unregister(plugin=plugin)
            logger.info("Plugin disabled via config", plugin=name)

    # Some entrypoint loaders return plugin classes instead of instances,
    # which then fail hook invocation with missing `self`.
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            plugin_name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Unregistered invalid class-based plugin object", plugin=plugin_name)

    plugin_names = [pm.get_name(p) for p in pm.get_plugins()]
    logger.info("Plugin manager ready", plugins=plugin_names)
    return pm


def build_command_table(pm: pluggy.PluginManager, context: PluginContext) -> CommandTable:
    """Build the read-only command table from every plugin's commands.

    pluggy returns results last-registered first; they are reversed so
    that later registrations override earlier ones.
    """
    builder = CommandTableBuilder()
    for commands in reversed(pm.hook.waswarm_commands(context=context)):
        builder.extend(commands)
    table = builder.build()
    context.command_table = table
    logger.info("Command table built", commands=sorted(table))
    return table


def collect_auto_behaviors(pm: pluggy.PluginManager, context: PluginContext) -> list[AutoBehavior]:
    behaviors: list[AutoBehavior] = []
    for contributed in reversed(pm.hook.waswarm_auto_behaviors(context=context)):
        behaviors.extend(contributed)
    return behaviors
