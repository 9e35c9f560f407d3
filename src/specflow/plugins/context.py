from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from specflow.errors import ExtensionPointError
from specflow.plugins.extensions import ExtensionSet
from specflow.plugins.types import (
    AgentRegistration,
    CommandRegistration,
    ExtensionPoint,
    HookRegistration,
    ServiceRegistration,
    TemplateRegistration,
    freeze_mapping,
)

logger = logging.getLogger("specflow.plugins")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class PluginContext:
    """The API surface a plugin sees inside ``activate(context)``.

    Registrations are attributed to the plugin and limited to the extension
    points its manifest declares.
    """

    def __init__(
        self,
        *,
        plugin_name: str,
        plugin_version: str,
        extensions: ExtensionSet,
        declared_points: Iterable[ExtensionPoint],
        cli_version: str,
        config: Mapping[str, Any] | None = None,
        project_config: Mapping[str, Any] | None = None,
    ) -> None:
        self.plugin_name = plugin_name
        self.plugin_version = plugin_version
        self.config = freeze_mapping(config)
        self._extensions = extensions
        self._declared_points = frozenset(declared_points)
        self._used_points: set[ExtensionPoint] = set()
        self._cli_version = cli_version
        self._project_config = freeze_mapping(project_config) if project_config else None

    @property
    def used_extension_points(self) -> frozenset[ExtensionPoint]:
        return frozenset(self._used_points)

    def _claim(self, point: ExtensionPoint) -> None:
        if point not in self._declared_points:
            raise ExtensionPointError(
                f'Plugin "{self.plugin_name}" registered {point} but its manifest '
                f"declares only: {', '.join(sorted(self._declared_points)) or 'nothing'}",
                plugin_name=self.plugin_name,
            )
        self._used_points.add(point)

    def register_command(self, registration: CommandRegistration) -> None:
        self._claim("commands")
        self._extensions.commands.register_command(self.plugin_name, registration)

    def register_agent(self, registration: AgentRegistration) -> None:
        self._claim("agents")
        self._extensions.agents.register_agent(self.plugin_name, registration)

    def register_hook(self, registration: HookRegistration) -> None:
        self._claim("hooks")
        self._extensions.hooks.register_hook(self.plugin_name, registration)

    def register_service(self, registration: ServiceRegistration) -> None:
        self._claim("services")
        self._extensions.services.register_service(self.plugin_name, registration)

    def register_template(self, registration: TemplateRegistration) -> None:
        self._claim("templates")
        self._extensions.templates.register_template(self.plugin_name, registration)

    def get_service(self, name: str) -> Any:
        return self._extensions.services.resolve_service(name)

    def has_service(self, name: str) -> bool:
        return self._extensions.services.has_service(name)

    def log(self, level: str, message: str) -> None:
        logger.log(
            LOG_LEVELS.get(level, logging.INFO), "[plugin:%s] %s", self.plugin_name, message
        )

    def get_cli_version(self) -> str:
        return self._cli_version

    def get_project_config(self) -> Mapping[str, Any] | None:
        return self._project_config
