from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Iterable
from types import MappingProxyType
from typing import Any

from specflow.errors import RegistrationConflictError, ServiceResolutionError
from specflow.plugins.registry import PluginRegistry
from specflow.plugins.types import RegisteredService, ServiceRegistration

logger = logging.getLogger(__name__)

CORE_SERVICE_NAMES = frozenset(
    {
        "AgentInvoker",
        "PhaseExecutor",
        "StateManager",
        "FlowController",
        "GitStatusChecker",
        "PRStatusFetcher",
        "TemplateService",
    }
)


class ServiceExtension:
    """Lazily instantiates plugin services and disposes the ones that were built."""

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        core_service_names: Iterable[str] = CORE_SERVICE_NAMES,
    ) -> None:
        self.registry = registry
        self.core_service_names = frozenset(core_service_names)
        self._lock = threading.RLock()

    def register_service(
        self, plugin_name: str, registration: ServiceRegistration
    ) -> RegisteredService:
        name = registration.name
        if name in self.core_service_names:
            logger.warning(
                '[plugin:%s] Service "%s" conflicts with a core service', plugin_name, name
            )
            raise RegistrationConflictError(
                f'Service name "{name}" is reserved by the core', plugin_name=plugin_name
            )
        existing = self.registry.get_service_entry(name)
        if existing is not None:
            logger.warning(
                '[plugin:%s] Service "%s" conflicts with plugin "%s"',
                plugin_name,
                name,
                existing.plugin_name,
            )
            raise RegistrationConflictError(
                f'Service "{name}" is already registered by plugin "{existing.plugin_name}"',
                plugin_name=plugin_name,
            )
        return self.registry.register_service(plugin_name, registration)

    def has_service(self, name: str) -> bool:
        return self.registry.has_service(name)

    def resolve_service(self, name: str) -> Any:
        with self._lock:
            return self._resolve(name, [])

    def _resolve(self, name: str, stack: list[str]) -> Any:
        if name in stack:
            cycle = " -> ".join([*stack[stack.index(name):], name])
            raise ServiceResolutionError(f"Circular dependency detected: {cycle}")
        entry = self.registry.get_service_entry(name)
        if entry is None:
            if stack:
                raise ServiceResolutionError(
                    f'Service "{stack[-1]}" depends on missing service "{name}"'
                )
            raise ServiceResolutionError(f'Service "{name}" not found')
        if entry.instantiated:
            return entry.instance

        stack.append(name)
        try:
            resolved = {
                dependency: self._resolve(dependency, stack)
                for dependency in entry.registration.dependencies
            }
        finally:
            stack.pop()

        instance = entry.registration.factory(MappingProxyType(resolved))
        entry.instance = instance
        entry.instantiated = True
        logger.debug("[plugin:%s] Instantiated service %s", entry.plugin_name, name)
        return instance

    async def _dispose(self, entry: RegisteredService) -> None:
        dispose = entry.registration.dispose
        if dispose is None:
            return
        outcome = dispose()
        if inspect.isawaitable(outcome):
            await outcome

    async def dispose_services(self, entries: Iterable[RegisteredService]) -> list[str]:
        """Dispose instantiated entries; returns the names whose disposal failed."""
        failures: list[str] = []
        for entry in entries:
            if not entry.instantiated:
                continue
            name = entry.registration.name
            try:
                await self._dispose(entry)
            except Exception as exc:
                failures.append(name)
                logger.error(
                    '[plugin:%s] Failed to dispose service "%s": %s', entry.plugin_name, name, exc
                )
            finally:
                entry.instance = None
                entry.instantiated = False
        return failures

    async def dispose_plugin_services(self, plugin_name: str) -> list[str]:
        return await self.dispose_services(self.registry.services_for(plugin_name))
