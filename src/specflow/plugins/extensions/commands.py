from __future__ import annotations

import inspect
import logging
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from specflow.errors import RegistrationConflictError
from specflow.plugins.registry import PluginRegistry
from specflow.plugins.types import (
    CommandArgs,
    CommandExecutionResult,
    CommandRegistration,
    RegisteredCommand,
)

if TYPE_CHECKING:
    from specflow.plugins.context import PluginContext

logger = logging.getLogger(__name__)

CORE_COMMAND_NAMES = frozenset(
    {
        "init",
        "start",
        "resume",
        "retry",
        "status",
        "list",
        "abort",
        "approve",
        "reject",
        "pause",
        "pr",
        "merge",
        "archive",
        "help",
        "plugin",
    }
)


class CommandExtension:
    def __init__(
        self,
        registry: PluginRegistry,
        *,
        core_command_names: Iterable[str] = CORE_COMMAND_NAMES,
    ) -> None:
        self.registry = registry
        self.core_command_names = frozenset(core_command_names)

    def register_command(
        self, plugin_name: str, registration: CommandRegistration
    ) -> RegisteredCommand:
        name = registration.name
        if name in self.core_command_names:
            logger.warning(
                '[plugin:%s] Command "%s" conflicts with a core command', plugin_name, name
            )
            raise RegistrationConflictError(
                f'Command name "{name}" is reserved by the core', plugin_name=plugin_name
            )
        existing = self.registry.get_command(name)
        if existing is not None:
            logger.warning(
                '[plugin:%s] Command "%s" conflicts with plugin "%s"',
                plugin_name,
                name,
                existing.plugin_name,
            )
            raise RegistrationConflictError(
                f'Command "{name}" is already registered by plugin "{existing.plugin_name}"',
                plugin_name=plugin_name,
            )
        return self.registry.register_command(plugin_name, registration)

    def get_command(self, name: str) -> RegisteredCommand | None:
        return self.registry.get_command(name)

    def all_commands(self) -> list[RegisteredCommand]:
        return self.registry.all_commands()

    async def execute_command(
        self,
        name: str,
        positional: Sequence[str] = (),
        options: Mapping[str, Any] | None = None,
        context: PluginContext | None = None,
    ) -> CommandExecutionResult:
        entry = self.registry.get_command(name)
        if entry is None:
            return CommandExecutionResult(False, error=f'Command "{name}" not found')

        args = CommandArgs(
            positional=tuple(positional),
            options=MappingProxyType(dict(options or {})),
            context=context,
        )
        try:
            outcome = entry.registration.handler(args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error('[plugin:%s] Command "%s" failed: %s', entry.plugin_name, name, exc)
            return CommandExecutionResult(False, plugin_name=entry.plugin_name, error=str(exc))
        return CommandExecutionResult(True, plugin_name=entry.plugin_name)
