from __future__ import annotations

import inspect
import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from specflow.errors import RegistrationConflictError
from specflow.plugins.registry import PluginRegistry
from specflow.plugins.types import (
    AgentAdapterResult,
    AgentCapability,
    AgentInvocationResult,
    AgentInvokeOptions,
    AgentRegistration,
    RegisteredAgent,
)

logger = logging.getLogger(__name__)

CORE_AGENT_NAMES = frozenset({"claude", "gemini", "codex"})


class AgentExtension:
    def __init__(
        self,
        registry: PluginRegistry,
        *,
        core_agent_names: Iterable[str] = CORE_AGENT_NAMES,
    ) -> None:
        self.registry = registry
        self.core_agent_names = frozenset(core_agent_names)

    def register_agent(self, plugin_name: str, registration: AgentRegistration) -> RegisteredAgent:
        name = registration.name
        if name in self.core_agent_names:
            logger.warning(
                '[plugin:%s] Agent "%s" conflicts with a built-in agent', plugin_name, name
            )
            raise RegistrationConflictError(
                f'Agent name "{name}" is reserved by the core', plugin_name=plugin_name
            )
        existing = self.registry.get_agent(name)
        if existing is not None:
            logger.warning(
                '[plugin:%s] Agent "%s" conflicts with plugin "%s"',
                plugin_name,
                name,
                existing.plugin_name,
            )
            raise RegistrationConflictError(
                f'Agent "{name}" is already registered by plugin "{existing.plugin_name}"',
                plugin_name=plugin_name,
            )
        return self.registry.register_agent(plugin_name, registration)

    def get_agent(self, name: str) -> RegisteredAgent | None:
        return self.registry.get_agent(name)

    def all_agents(self) -> list[RegisteredAgent]:
        return self.registry.all_agents()

    def get_agent_capabilities(self, name: str) -> list[AgentCapability]:
        entry = self.registry.get_agent(name)
        if entry is None:
            return []
        try:
            return list(entry.registration.adapter.get_capabilities())
        except Exception as exc:
            logger.error(
                '[plugin:%s] Agent "%s" failed to report capabilities: %s',
                entry.plugin_name,
                name,
                exc,
            )
            return []

    def configure_agent(self, name: str, config: Mapping[str, Any]) -> bool:
        entry = self.registry.get_agent(name)
        if entry is None:
            return False
        try:
            entry.registration.adapter.configure(MappingProxyType(dict(config)))
        except Exception as exc:
            logger.error(
                '[plugin:%s] Agent "%s" rejected configuration: %s', entry.plugin_name, name, exc
            )
            return False
        return True

    async def invoke_agent(self, name: str, options: AgentInvokeOptions) -> AgentInvocationResult:
        entry = self.registry.get_agent(name)
        if entry is None:
            return AgentInvocationResult(False, error=f'Agent "{name}" not found')
        try:
            outcome = entry.registration.adapter.invoke(options)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.error('[plugin:%s] Agent "%s" failed: %s', entry.plugin_name, name, exc)
            return AgentInvocationResult(False, plugin_name=entry.plugin_name, error=str(exc))

        if isinstance(outcome, AgentAdapterResult):
            result = outcome
        elif isinstance(outcome, Mapping):
            result = AgentAdapterResult(
                success=bool(outcome.get("success")),
                output=str(outcome.get("output") or ""),
                error=outcome.get("error"),
            )
        else:
            return AgentInvocationResult(
                False,
                plugin_name=entry.plugin_name,
                error=f'Agent "{name}" returned an unsupported result: {type(outcome).__name__}',
            )
        return AgentInvocationResult(
            success=result.success,
            output=result.output,
            plugin_name=entry.plugin_name,
            error=result.error,
        )
