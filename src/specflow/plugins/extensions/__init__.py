from __future__ import annotations

from dataclasses import dataclass

from specflow.plugins.extensions.agents import CORE_AGENT_NAMES, AgentExtension
from specflow.plugins.extensions.commands import CORE_COMMAND_NAMES, CommandExtension
from specflow.plugins.extensions.hooks import (
    DEFAULT_HOOK_TIMEOUT_SECONDS,
    HookRunner,
    HookTimeoutError,
)
from specflow.plugins.extensions.services import CORE_SERVICE_NAMES, ServiceExtension
from specflow.plugins.extensions.templates import TemplateExtension
from specflow.plugins.registry import PluginRegistry


@dataclass(slots=True)
class ExtensionSet:
    """The registry plus the five extension-point services built on top of it."""

    registry: PluginRegistry
    commands: CommandExtension
    agents: AgentExtension
    hooks: HookRunner
    services: ServiceExtension
    templates: TemplateExtension

    @classmethod
    def create(
        cls,
        registry: PluginRegistry | None = None,
        *,
        hook_timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
    ) -> ExtensionSet:
        registry = registry or PluginRegistry()
        return cls(
            registry=registry,
            commands=CommandExtension(registry),
            agents=AgentExtension(registry),
            hooks=HookRunner(registry, timeout_seconds=hook_timeout_seconds),
            services=ServiceExtension(registry),
            templates=TemplateExtension(registry),
        )


__all__ = [
    "CORE_AGENT_NAMES",
    "CORE_COMMAND_NAMES",
    "CORE_SERVICE_NAMES",
    "DEFAULT_HOOK_TIMEOUT_SECONDS",
    "AgentExtension",
    "CommandExtension",
    "ExtensionSet",
    "HookRunner",
    "HookTimeoutError",
    "ServiceExtension",
    "TemplateExtension",
]
