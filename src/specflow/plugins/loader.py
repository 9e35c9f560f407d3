"""Discover, order, import and activate plugins.

Loading never raises for a single bad plugin: every failure is recorded in the
returned ``PluginLoadResult`` with the phase it happened in, and the plugin is
left out of the registry.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import re
import sys
from collections.abc import Callable, Collection, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Literal

from semantic_version import NpmSpec, Version

from specflow.flow.types import utcnow_iso
from specflow.plugins.context import PluginContext
from specflow.plugins.extensions import ExtensionSet
from specflow.plugins.manifest import MANIFEST_FILE_NAME, ManifestValidator, PluginManifest
from specflow.plugins.types import RegisteredPlugin

logger = logging.getLogger(__name__)

LoadPhase = Literal["discovery", "validation", "import", "activation"]
ConfigProvider = Callable[[PluginManifest], Mapping[str, Any]]

RELOAD_WARNING_THRESHOLD = 10


@dataclass(frozen=True, slots=True)
class DiscoveredPlugin:
    name: str
    plugin_dir: Path
    manifest: PluginManifest

    @property
    def entry_point_path(self) -> Path:
        return (self.plugin_dir / self.manifest.entry_point).resolve()


@dataclass(frozen=True, slots=True)
class LoadedPlugin:
    name: str
    version: str
    plugin_dir: Path


@dataclass(frozen=True, slots=True)
class SkippedPlugin:
    name: str
    reason: str


@dataclass(frozen=True, slots=True)
class PluginLoadError:
    plugin_name: str
    error: str
    phase: LoadPhase


@dataclass(slots=True)
class PluginLoadResult:
    loaded: list[LoadedPlugin] = field(default_factory=list)
    skipped: list[SkippedPlugin] = field(default_factory=list)
    errors: list[PluginLoadError] = field(default_factory=list)

    def fail(self, plugin_name: str, error: str, phase: LoadPhase) -> None:
        self.errors.append(PluginLoadError(plugin_name, error, phase))
        logger.error("[plugin:%s] %s", plugin_name, error)


def module_name_for(plugin_name: str) -> str:
    return "specflow_plugin_" + re.sub(r"[^0-9a-zA-Z_]", "_", plugin_name)


def _dependency_mismatch(plugin: DiscoveredPlugin, available: Mapping[str, str]) -> str | None:
    for dependency in plugin.manifest.dependencies:
        version = available.get(dependency.name)
        if version is None:
            return f"Missing dependency: {dependency.name}"
        if not NpmSpec(dependency.version).match(Version(version)):
            return (
                f"Dependency {dependency.name}@{version} does not satisfy "
                f"required range {dependency.version}"
            )
    return None


def topological_order(
    plugins: list[DiscoveredPlugin],
) -> tuple[list[DiscoveredPlugin], list[PluginLoadError]]:
    """Order plugins so dependencies come first; any cycle empties the order."""
    by_name = {plugin.name: plugin for plugin in plugins}
    ordered: list[DiscoveredPlugin] = []
    errors: list[PluginLoadError] = []
    visiting: set[str] = set()
    visited: set[str] = set()

    def visit(name: str, path: list[str]) -> bool:
        if name in visited:
            return True
        if name in visiting:
            cycle = " -> ".join([*path, name])
            errors.append(
                PluginLoadError(name, f"Circular dependency detected: {cycle}", "validation")
            )
            return False
        plugin = by_name.get(name)
        if plugin is None:
            return True
        visiting.add(name)
        for dependency in plugin.manifest.dependency_names:
            if not visit(dependency, [*path, name]):
                return False
        visiting.discard(name)
        visited.add(name)
        ordered.append(plugin)
        return True

    for plugin in plugins:
        if plugin.name not in visited and plugin.name not in visiting:
            visit(plugin.name, [])
    if errors:
        return [], errors
    return ordered, []


class PluginLoader:
    def __init__(
        self,
        extensions: ExtensionSet,
        *,
        cli_version: str,
        validator: ManifestValidator | None = None,
        config_provider: ConfigProvider | None = None,
        project_config: Mapping[str, Any] | None = None,
    ) -> None:
        self.extensions = extensions
        self.cli_version = cli_version
        self.validator = validator or ManifestValidator()
        self.config_provider = config_provider
        self.project_config = project_config
        self._plugin_dirs: dict[str, Path] = {}
        self._contexts: dict[str, PluginContext] = {}
        self._reload_counts: dict[str, int] = {}

    # Discovery

    def _discover_one(
        self, plugin_dir: Path, result: PluginLoadResult
    ) -> DiscoveredPlugin | None:
        manifest_path = plugin_dir / MANIFEST_FILE_NAME
        validation = self.validator.validate_file(manifest_path)
        if not validation.valid or validation.manifest is None:
            result.fail(plugin_dir.name, f"Invalid manifest: {validation.summary()}", "discovery")
            return None
        return DiscoveredPlugin(validation.manifest.name, plugin_dir, validation.manifest)

    def discover(
        self, plugin_dirs: Iterable[Path], result: PluginLoadResult
    ) -> list[DiscoveredPlugin]:
        """Find plugins in ``plugin_dirs``.

        A directory holding a manifest is a plugin; otherwise each immediate
        subdirectory holding a manifest is. Missing directories are ignored.
        """
        discovered: dict[str, DiscoveredPlugin] = {}
        for directory in plugin_dirs:
            directory = Path(directory)
            if not directory.is_dir():
                logger.debug("Plugin directory %s does not exist", directory)
                continue
            if (directory / MANIFEST_FILE_NAME).is_file():
                candidates = [directory]
            else:
                candidates = sorted(
                    child
                    for child in directory.iterdir()
                    if child.is_dir() and (child / MANIFEST_FILE_NAME).is_file()
                )
            for candidate in candidates:
                plugin = self._discover_one(candidate, result)
                if plugin is None:
                    continue
                if plugin.name in discovered:
                    logger.warning(
                        "[plugin:%s] Found again in %s; keeping %s",
                        plugin.name,
                        candidate,
                        discovered[plugin.name].plugin_dir,
                    )
                    continue
                discovered[plugin.name] = plugin
        return list(discovered.values())

    # Import and activation

    def _import(self, plugin: DiscoveredPlugin) -> ModuleType:
        module_name = module_name_for(plugin.name)
        spec = importlib.util.spec_from_file_location(module_name, plugin.entry_point_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import entry point {plugin.entry_point_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    async def _activate(
        self, plugin: DiscoveredPlugin, module: ModuleType, result: PluginLoadResult
    ) -> None:
        manifest = plugin.manifest
        config = self.config_provider(manifest) if self.config_provider else {}
        context = PluginContext(
            plugin_name=plugin.name,
            plugin_version=manifest.version,
            extensions=self.extensions,
            declared_points=manifest.extension_points,
            cli_version=self.cli_version,
            config=config,
            project_config=self.project_config,
        )
        registry = self.extensions.registry
        registry.register_plugin(
            RegisteredPlugin(plugin.name, manifest.version, manifest, module, utcnow_iso())
        )
        try:
            outcome = module.activate(context)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            removed = registry.unregister_plugin(plugin.name)
            await self.extensions.services.dispose_services(removed)
            sys.modules.pop(module.__name__, None)
            result.fail(plugin.name, f"Plugin activation failed: {exc}", "activation")
            return

        unused = set(manifest.extension_points) - context.used_extension_points
        if unused:
            logger.warning(
                "[plugin:%s] Declared extension points never used: %s",
                plugin.name,
                ", ".join(sorted(unused)),
            )
        self._plugin_dirs[plugin.name] = plugin.plugin_dir
        self._contexts[plugin.name] = context
        result.loaded.append(LoadedPlugin(plugin.name, manifest.version, plugin.plugin_dir))
        logger.info("Loaded plugin %s@%s", plugin.name, manifest.version)

    async def load_plugins(
        self,
        plugin_dirs: Iterable[Path],
        *,
        enabled: Collection[str] | None = None,
        disabled: Collection[str] = (),
    ) -> PluginLoadResult:
        result = PluginLoadResult()
        discovered = self.discover(plugin_dirs, result)
        logger.info("Discovered %d plugin(s)", len(discovered))

        candidates: list[DiscoveredPlugin] = []
        for plugin in discovered:
            if plugin.name in disabled or (enabled is not None and plugin.name not in enabled):
                continue
            if self.extensions.registry.get_plugin(plugin.name) is not None:
                result.skipped.append(SkippedPlugin(plugin.name, "Plugin is already loaded"))
                continue
            compatibility = self.validator.check_compatibility(plugin.manifest, self.cli_version)
            if not compatibility.compatible:
                result.skipped.append(
                    SkippedPlugin(plugin.name, f"CLI version mismatch: {compatibility.message}")
                )
                logger.warning("[plugin:%s] Skipped: %s", plugin.name, compatibility.message)
                continue
            candidates.append(plugin)

        available = {plugin.name: plugin.manifest.version for plugin in candidates}
        available.update(
            (entry.name, entry.version) for entry in self.extensions.registry.all_plugins()
        )
        resolvable: list[DiscoveredPlugin] = []
        for plugin in candidates:
            mismatch = _dependency_mismatch(plugin, available)
            if mismatch is not None:
                result.fail(plugin.name, mismatch, "validation")
                continue
            resolvable.append(plugin)

        ordered, cycle_errors = topological_order(resolvable)
        for error in cycle_errors:
            result.fail(error.plugin_name, error.error, error.phase)

        for plugin in ordered:
            missing = [
                name
                for name in plugin.manifest.dependency_names
                if self.extensions.registry.get_plugin(name) is None
            ]
            if missing:
                result.fail(
                    plugin.name, f"Dependency failed to load: {', '.join(missing)}", "validation"
                )
                continue
            try:
                module = self._import(plugin)
            except Exception as exc:
                result.fail(plugin.name, f"Failed to import plugin entry point: {exc}", "import")
                continue
            if not callable(getattr(module, "activate", None)):
                sys.modules.pop(module.__name__, None)
                result.fail(
                    plugin.name, "Plugin module does not define an activate() function", "import"
                )
                continue
            await self._activate(plugin, module, result)

        logger.info(
            "Plugin loading complete: %d loaded, %d skipped, %d errors",
            len(result.loaded),
            len(result.skipped),
            len(result.errors),
        )
        return result

    def context_for(self, plugin_name: str) -> PluginContext | None:
        return self._contexts.get(plugin_name)

    async def unload_plugin(self, plugin_name: str) -> bool:
        """Deactivate, dispose and unregister ``plugin_name``; False when not loaded."""
        registry = self.extensions.registry
        plugin = registry.get_plugin(plugin_name)
        if plugin is None:
            return False
        deactivate = getattr(plugin.module, "deactivate", None)
        if callable(deactivate):
            try:
                outcome = deactivate()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.error("[plugin:%s] Deactivation failed: %s", plugin_name, exc)
        await self.extensions.services.dispose_plugin_services(plugin_name)
        registry.unregister_plugin(plugin_name)
        self._contexts.pop(plugin_name, None)
        sys.modules.pop(plugin.module.__name__, None)
        logger.info("Unloaded plugin %s", plugin_name)
        return True

    async def reload_plugin(self, plugin_name: str) -> PluginLoadResult:
        plugin_dir = self._plugin_dirs.get(plugin_name)
        if plugin_dir is None:
            result = PluginLoadResult()
            result.fail(plugin_name, "Plugin was not loaded by this loader", "validation")
            return result

        count = self._reload_counts.get(plugin_name, 0) + 1
        self._reload_counts[plugin_name] = count
        if count > RELOAD_WARNING_THRESHOLD:
            logger.warning(
                "[plugin:%s] Reloaded %d times; module state from earlier loads may linger",
                plugin_name,
                count,
            )
        await self.unload_plugin(plugin_name)
        return await self.load_plugins([plugin_dir], enabled={plugin_name})
