from __future__ import annotations

import itertools
import logging
import threading

from specflow.errors import RegistrationConflictError
from specflow.plugins.types import (
    AgentRegistration,
    CommandRegistration,
    HookRegistration,
    HookTiming,
    RegisteredAgent,
    RegisteredCommand,
    RegisteredHook,
    RegisteredPlugin,
    RegisteredService,
    RegisteredTemplate,
    ServiceRegistration,
    TemplateCategory,
    TemplateRegistration,
)

logger = logging.getLogger(__name__)


def namespaced_template_name(plugin_name: str, template_name: str) -> str:
    return f"{plugin_name}/{template_name}"


class PluginRegistry:
    """In-memory store of plugin registrations keyed by extension kind.

    The registry answers lookups and keeps keys unique. Reserved names,
    execution order and lifecycle policy belong to the extension services.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._plugins: dict[str, RegisteredPlugin] = {}
        self._commands: dict[str, RegisteredCommand] = {}
        self._agents: dict[str, RegisteredAgent] = {}
        self._hooks: list[RegisteredHook] = []
        self._services: dict[str, RegisteredService] = {}
        self._templates: dict[str, RegisteredTemplate] = {}
        self._hook_order = itertools.count()

    # Plugins

    def register_plugin(self, plugin: RegisteredPlugin) -> None:
        with self._lock:
            if plugin.name in self._plugins:
                raise RegistrationConflictError(
                    f'Plugin "{plugin.name}" is already registered', plugin_name=plugin.name
                )
            self._plugins[plugin.name] = plugin

    def get_plugin(self, name: str) -> RegisteredPlugin | None:
        return self._plugins.get(name)

    def all_plugins(self) -> list[RegisteredPlugin]:
        return list(self._plugins.values())

    def unregister_plugin(self, name: str) -> list[RegisteredService]:
        """Drop every registration owned by ``name``; return its service entries.

        Callers dispose the returned services. The registry never calls plugin code.
        """
        with self._lock:
            self._plugins.pop(name, None)
            for key in [k for k, v in self._commands.items() if v.plugin_name == name]:
                del self._commands[key]
            for key in [k for k, v in self._agents.items() if v.plugin_name == name]:
                del self._agents[key]
            self._hooks = [hook for hook in self._hooks if hook.plugin_name != name]
            removed = [entry for entry in self._services.values() if entry.plugin_name == name]
            for entry in removed:
                del self._services[entry.registration.name]
            for key in [k for k, v in self._templates.items() if v.plugin_name == name]:
                del self._templates[key]
        logger.debug("Unregistered plugin %s", name)
        return removed

    # Commands

    def register_command(
        self, plugin_name: str, registration: CommandRegistration
    ) -> RegisteredCommand:
        with self._lock:
            existing = self._commands.get(registration.name)
            if existing is not None:
                raise RegistrationConflictError(
                    f'Command "{registration.name}" is already registered '
                    f'by plugin "{existing.plugin_name}"',
                    plugin_name=plugin_name,
                )
            entry = RegisteredCommand(plugin_name, registration)
            self._commands[registration.name] = entry
            return entry

    def get_command(self, name: str) -> RegisteredCommand | None:
        return self._commands.get(name)

    def all_commands(self) -> list[RegisteredCommand]:
        return list(self._commands.values())

    # Agents

    def register_agent(self, plugin_name: str, registration: AgentRegistration) -> RegisteredAgent:
        with self._lock:
            existing = self._agents.get(registration.name)
            if existing is not None:
                raise RegistrationConflictError(
                    f'Agent "{registration.name}" is already registered '
                    f'by plugin "{existing.plugin_name}"',
                    plugin_name=plugin_name,
                )
            entry = RegisteredAgent(plugin_name, registration)
            self._agents[registration.name] = entry
            return entry

    def get_agent(self, name: str) -> RegisteredAgent | None:
        return self._agents.get(name)

    def all_agents(self) -> list[RegisteredAgent]:
        return list(self._agents.values())

    # Hooks

    def register_hook(self, plugin_name: str, registration: HookRegistration) -> RegisteredHook:
        with self._lock:
            entry = RegisteredHook(plugin_name, registration, next(self._hook_order))
            self._hooks.append(entry)
            return entry

    def get_hooks(self, phase: str, timing: HookTiming) -> list[RegisteredHook]:
        """Hooks bound to exactly ``phase`` and ``timing``, in registration order."""
        return [
            hook
            for hook in self._hooks
            if hook.registration.phase == phase and hook.registration.timing == timing
        ]

    # Services

    def register_service(
        self, plugin_name: str, registration: ServiceRegistration
    ) -> RegisteredService:
        with self._lock:
            existing = self._services.get(registration.name)
            if existing is not None:
                raise RegistrationConflictError(
                    f'Service "{registration.name}" is already registered '
                    f'by plugin "{existing.plugin_name}"',
                    plugin_name=plugin_name,
                )
            entry = RegisteredService(plugin_name, registration)
            self._services[registration.name] = entry
            return entry

    def get_service_entry(self, name: str) -> RegisteredService | None:
        return self._services.get(name)

    def has_service(self, name: str) -> bool:
        return name in self._services

    def services_for(self, plugin_name: str) -> list[RegisteredService]:
        return [entry for entry in self._services.values() if entry.plugin_name == plugin_name]

    # Templates

    def register_template(
        self, plugin_name: str, registration: TemplateRegistration
    ) -> RegisteredTemplate:
        namespaced = namespaced_template_name(plugin_name, registration.name)
        with self._lock:
            if namespaced in self._templates:
                raise RegistrationConflictError(
                    f'Template "{namespaced}" is already registered', plugin_name=plugin_name
                )
            entry = RegisteredTemplate(plugin_name, namespaced, registration)
            self._templates[namespaced] = entry
            return entry

    def get_templates(self, category: TemplateCategory | None = None) -> list[RegisteredTemplate]:
        return [
            entry
            for entry in self._templates.values()
            if category is None or entry.registration.category == category
        ]

    def get_template(self, namespaced_name: str) -> RegisteredTemplate | None:
        return self._templates.get(namespaced_name)
