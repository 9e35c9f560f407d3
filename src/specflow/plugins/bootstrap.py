from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow.config import SpecflowConfig
from specflow.plugins.extensions import ExtensionSet
from specflow.plugins.loader import (
    LoadedPlugin,
    PluginLoader,
    PluginLoadError,
    SkippedPlugin,
)
from specflow.plugins.manager import PluginManager
from specflow.plugins.manifest import ManifestValidator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PluginRuntime:
    """Everything the host needs from the plugin system after startup."""

    extensions: ExtensionSet
    loader: PluginLoader
    manager: PluginManager
    loaded: list[LoadedPlugin] = field(default_factory=list)
    skipped: list[SkippedPlugin] = field(default_factory=list)
    errors: list[PluginLoadError] = field(default_factory=list)
    disabled_globally: bool = False

    async def shutdown(self) -> None:
        for plugin in reversed(self.extensions.registry.all_plugins()):
            await self.loader.unload_plugin(plugin.name)


def build_plugin_runtime(
    repo_root: Path,
    config: SpecflowConfig,
    *,
    cli_version: str,
    project_config: Mapping[str, Any] | None = None,
) -> PluginRuntime:
    """Wire the registry, extensions, loader and manager without loading anything."""
    extensions = ExtensionSet.create(hook_timeout_seconds=config.hooks.timeout_seconds)
    validator = ManifestValidator()
    loader = PluginLoader(
        extensions,
        cli_version=cli_version,
        validator=validator,
        project_config=project_config if project_config is not None else config.to_dict(),
    )
    manager = PluginManager(repo_root, cli_version=cli_version, validator=validator, loader=loader)
    loader.config_provider = manager.merged_config
    return PluginRuntime(extensions=extensions, loader=loader, manager=manager)


async def bootstrap_plugins(
    repo_root: Path,
    config: SpecflowConfig,
    *,
    cli_version: str,
) -> PluginRuntime:
    runtime = build_plugin_runtime(repo_root, config, cli_version=cli_version)
    if not config.plugins.enabled:
        logger.info("Plugins are disabled globally (plugins.enabled = false)")
        runtime.disabled_globally = True
        return runtime

    manager = runtime.manager
    disabled = manager.disabled_plugins()
    plugin_dirs = [repo_root / directory for directory in config.plugins.directories]
    plugin_dirs.extend(manager.plugin_dirs())

    result = await runtime.loader.load_plugins(plugin_dirs, disabled=disabled)
    runtime.loaded = result.loaded
    runtime.errors = result.errors
    runtime.skipped = list(result.skipped)
    reported = {entry.name for entry in runtime.skipped}
    runtime.skipped.extend(
        SkippedPlugin(name, "Plugin is disabled in configuration")
        for name in disabled
        if name not in reported
    )

    if runtime.loaded or runtime.skipped or runtime.errors:
        logger.info(
            "Plugins: %d loaded, %d skipped, %d errors",
            len(runtime.loaded),
            len(runtime.skipped),
            len(runtime.errors),
        )
    return runtime
