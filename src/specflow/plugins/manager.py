"""Plugin lifecycle commands backed by ``.specflow/plugins.json``.

Local plugins are used in place and only their path is recorded. Plugins from
the package index are installed with ``pip install --target`` into
``.specflow/installed/<name>``. Per-plugin configuration lives in
``.specflow/plugins/<name>/config.json`` and is merged over the manifest's
schema defaults.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from specflow.errors import PluginConfigError, PluginNotInstalledError
from specflow.flow.types import utcnow_iso
from specflow.plugins.loader import PluginLoader, PluginLoadResult
from specflow.plugins.manifest import (
    MANIFEST_FILE_NAME,
    ManifestValidationResult,
    ManifestValidator,
    PluginManifest,
)
from specflow.state.store import STATE_DIR_NAME, write_json_atomic

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1
PluginSource = Literal["local", "index"]
PipRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

_CONFIG_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def run_pip(args: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "pip", *args],
        text=True,
        capture_output=True,
    )


def requirement_name(requirement: str) -> str:
    """Distribution name of a pip requirement such as ``foo[extra]>=1.0``."""
    return re.split(r"[\s\[<>=!~;@]", requirement.strip(), maxsplit=1)[0]


def find_manifest_dir(root: Path) -> Path | None:
    if (root / MANIFEST_FILE_NAME).is_file():
        return root
    if not root.is_dir():
        return None
    for child in sorted(root.iterdir()):
        if child.is_dir() and (child / MANIFEST_FILE_NAME).is_file():
            return child
    return None


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    for name, types in _CONFIG_TYPES.items():
        if isinstance(value, types):
            return name
    return type(value).__name__


def check_config_value(manifest: PluginManifest, key: str, value: Any) -> None:
    schema = manifest.config_schema.get(key)
    if schema is None:
        return
    actual = _type_name(value)
    if actual != schema.type:
        raise PluginConfigError(
            f'Invalid config value for "{key}": expected {schema.type}, got {actual}',
            plugin_name=manifest.name,
        )


@dataclass(slots=True)
class InstallResult:
    success: bool
    plugin_name: str
    version: str = ""
    error: str | None = None


@dataclass(slots=True)
class UninstallResult:
    success: bool
    plugin_name: str
    error: str | None = None


@dataclass(slots=True)
class UpdateResult:
    success: bool
    plugin_name: str
    previous_version: str = ""
    new_version: str = ""
    error: str | None = None


@dataclass(slots=True)
class PluginInfo:
    name: str
    version: str
    enabled: bool
    source: str
    description: str = ""
    extension_points: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PluginDetail:
    name: str
    version: str
    enabled: bool
    source: str
    description: str
    author: str
    path: str
    compatibility_range: str
    extension_points: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    config_schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PluginManager:
    def __init__(
        self,
        repo_root: Path,
        *,
        cli_version: str,
        validator: ManifestValidator | None = None,
        loader: PluginLoader | None = None,
        pip_runner: PipRunner = run_pip,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.cli_version = cli_version
        self.validator = validator or ManifestValidator()
        self.loader = loader
        self.pip_runner = pip_runner
        self.state_dir = self.repo_root / STATE_DIR_NAME
        self.state_path = self.state_dir / "plugins.json"
        self.config_dir = self.state_dir / "plugins"
        self.install_dir = self.state_dir / "installed"

    # State file

    def read_state(self) -> dict[str, Any]:
        empty = {"schemaVersion": STATE_SCHEMA_VERSION, "plugins": {}}
        if not self.state_path.exists():
            return empty
        try:
            state = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable plugin state %s: %s", self.state_path, exc)
            return empty
        if not isinstance(state, dict) or not isinstance(state.get("plugins"), dict):
            logger.warning("Ignoring malformed plugin state %s", self.state_path)
            return empty
        return state

    def write_state(self, state: dict[str, Any]) -> None:
        write_json_atomic(self.state_path, state)

    def _entry(self, state: dict[str, Any], name: str) -> dict[str, Any]:
        entry = state["plugins"].get(name)
        if entry is None:
            raise PluginNotInstalledError(f'Plugin "{name}" is not installed', plugin_name=name)
        return entry

    @staticmethod
    def _plugin_dir(entry: dict[str, Any]) -> Path | None:
        location = entry.get("localPath") or entry.get("installPath")
        return Path(location) if location else None

    def manifest_for(self, name: str) -> PluginManifest | None:
        entry = self.read_state()["plugins"].get(name)
        if entry is None:
            return None
        plugin_dir = self._plugin_dir(entry)
        if plugin_dir is None:
            return None
        return self.validator.validate_file(plugin_dir / MANIFEST_FILE_NAME).manifest

    def plugin_dirs(self) -> list[Path]:
        dirs = []
        for entry in self.read_state()["plugins"].values():
            plugin_dir = self._plugin_dir(entry)
            if plugin_dir is not None:
                dirs.append(plugin_dir)
        return dirs

    def disabled_plugins(self) -> list[str]:
        return [
            name
            for name, entry in self.read_state()["plugins"].items()
            if not entry.get("enabled", True)
        ]

    # Lifecycle

    def _validated(self, plugin_dir: Path) -> tuple[PluginManifest | None, str | None]:
        validation = self.validator.validate_file(plugin_dir / MANIFEST_FILE_NAME)
        if not validation.valid or validation.manifest is None:
            return None, f"Invalid plugin manifest: {validation.summary()}"
        compatibility = self.validator.check_compatibility(validation.manifest, self.cli_version)
        if not compatibility.compatible:
            return validation.manifest, f"Version incompatible: {compatibility.message}"
        return validation.manifest, None

    def _pip_install(self, requirement: str, target: Path) -> str | None:
        target.mkdir(parents=True, exist_ok=True)
        proc = self.pip_runner(["install", "--upgrade", "--target", str(target), requirement])
        if proc.returncode != 0:
            return f"pip install failed: {(proc.stderr or proc.stdout).strip()}"
        return None

    async def install(self, source: str, *, local: bool | None = None) -> InstallResult:
        """Install from a local directory or a package index requirement."""
        if local is None:
            local = Path(source).exists()
        state = self.read_state()
        install_root: Path | None = None

        if local:
            plugin_dir = Path(source).resolve()
        else:
            install_root = self.install_dir / requirement_name(source)
            error = self._pip_install(source, install_root)
            if error is not None:
                shutil.rmtree(install_root, ignore_errors=True)
                return InstallResult(False, source, error=error)
            found = find_manifest_dir(install_root)
            if found is None:
                shutil.rmtree(install_root, ignore_errors=True)
                return InstallResult(
                    False, source, error=f"Installed package has no {MANIFEST_FILE_NAME}"
                )
            plugin_dir = found

        manifest, error = self._validated(plugin_dir)
        if manifest is None or error is not None:
            if install_root is not None:
                logger.error("Rolling back installation of %s", source)
                shutil.rmtree(install_root, ignore_errors=True)
            if manifest is None:
                return InstallResult(False, source, error=error)
            return InstallResult(False, manifest.name, manifest.version, error)
        if manifest.name in state["plugins"]:
            return InstallResult(
                False,
                manifest.name,
                manifest.version,
                f'Plugin "{manifest.name}" is already installed; use update instead',
            )

        now = utcnow_iso()
        entry: dict[str, Any] = {
            "version": manifest.version,
            "enabled": True,
            "installedAt": now,
            "updatedAt": now,
            "source": "local" if local else "index",
        }
        if local:
            entry["localPath"] = str(plugin_dir)
        else:
            entry["installPath"] = str(plugin_dir)
            entry["requirement"] = source
        state["plugins"][manifest.name] = entry
        self.write_state(state)
        logger.info("Installed plugin %s@%s", manifest.name, manifest.version)

        if self.loader is not None:
            await self.loader.load_plugins([plugin_dir], enabled={manifest.name})
        return InstallResult(True, manifest.name, manifest.version)

    async def uninstall(self, name: str) -> UninstallResult:
        state = self.read_state()
        if name not in state["plugins"]:
            return UninstallResult(False, name, f'Plugin "{name}" is not installed')
        entry = state["plugins"].pop(name)
        if self.loader is not None:
            await self.loader.unload_plugin(name)
        if entry.get("source") == "index":
            install_root = self.install_dir / requirement_name(entry.get("requirement", name))
            shutil.rmtree(install_root, ignore_errors=True)
        self.write_state(state)
        shutil.rmtree(self.config_dir / name, ignore_errors=True)
        logger.info("Uninstalled plugin %s", name)
        return UninstallResult(True, name)

    async def enable(self, name: str) -> PluginLoadResult | None:
        state = self.read_state()
        entry = self._entry(state, name)
        entry["enabled"] = True
        entry["updatedAt"] = utcnow_iso()
        self.write_state(state)
        logger.info("Enabled plugin %s", name)
        plugin_dir = self._plugin_dir(entry)
        if self.loader is None or plugin_dir is None:
            return None
        if self.loader.extensions.registry.get_plugin(name) is not None:
            return None
        return await self.loader.load_plugins([plugin_dir], enabled={name})

    def dependents_of(self, name: str) -> list[str]:
        dependents = []
        for other in self.read_state()["plugins"]:
            if other == name:
                continue
            manifest = self.manifest_for(other)
            if manifest is not None and name in manifest.dependency_names:
                dependents.append(other)
        return dependents

    async def disable(self, name: str) -> list[str]:
        """Disable ``name``; returns installed plugins that depend on it."""
        state = self.read_state()
        entry = self._entry(state, name)
        dependents = self.dependents_of(name)
        if dependents:
            logger.warning('Plugins depend on "%s": %s', name, ", ".join(dependents))
        if self.loader is not None:
            await self.loader.unload_plugin(name)
        entry["enabled"] = False
        entry["updatedAt"] = utcnow_iso()
        self.write_state(state)
        logger.info("Disabled plugin %s", name)
        return dependents

    async def update(self, name: str) -> UpdateResult:
        state = self.read_state()
        entry = self._entry(state, name)
        previous = entry.get("version", "")

        if entry.get("source") == "index":
            requirement = entry.get("requirement", name)
            install_root = self.install_dir / requirement_name(requirement)
            error = self._pip_install(requirement, install_root)
            if error is not None:
                return UpdateResult(False, name, previous, previous, error)
            plugin_dir = find_manifest_dir(install_root)
        else:
            plugin_dir = self._plugin_dir(entry)
        if plugin_dir is None:
            return UpdateResult(False, name, previous, previous, "Plugin files not found")

        manifest, error = self._validated(plugin_dir)
        if manifest is None or error is not None:
            new_version = manifest.version if manifest else previous
            return UpdateResult(False, name, previous, new_version, f"Update rejected: {error}")

        entry["version"] = manifest.version
        entry["updatedAt"] = utcnow_iso()
        if entry.get("source") == "index":
            entry["installPath"] = str(plugin_dir)
        self.write_state(state)
        logger.info("Updated plugin %s from %s to %s", name, previous, manifest.version)

        if self.loader is not None and self.loader.extensions.registry.get_plugin(name):
            await self.loader.unload_plugin(name)
            await self.loader.load_plugins([plugin_dir], enabled={name})
        return UpdateResult(True, name, previous, manifest.version)

    # Queries

    def list(self) -> list[PluginInfo]:
        plugins = []
        for name, entry in sorted(self.read_state()["plugins"].items()):
            manifest = self.manifest_for(name)
            plugins.append(
                PluginInfo(
                    name=name,
                    version=entry.get("version", ""),
                    enabled=entry.get("enabled", True),
                    source=entry.get("source", "local"),
                    description=manifest.description if manifest else "",
                    extension_points=list(manifest.extension_points) if manifest else [],
                )
            )
        return plugins

    def info(self, name: str) -> PluginDetail | None:
        entry = self.read_state()["plugins"].get(name)
        manifest = self.manifest_for(name)
        if entry is None or manifest is None:
            return None
        return PluginDetail(
            name=name,
            version=manifest.version,
            enabled=entry.get("enabled", True),
            source=entry.get("source", "local"),
            description=manifest.description,
            author=manifest.author,
            path=str(self._plugin_dir(entry)),
            compatibility_range=manifest.compatible_cli_version,
            extension_points=list(manifest.extension_points),
            dependencies=manifest.dependency_names,
            config_schema={
                key: schema.model_dump() for key, schema in manifest.config_schema.items()
            },
        )

    def validate(self, plugin_path: Path) -> ManifestValidationResult:
        if plugin_path.is_dir():
            plugin_path = plugin_path / MANIFEST_FILE_NAME
        return self.validator.validate_file(plugin_path)

    # Configuration

    def _config_path(self, name: str) -> Path:
        return self.config_dir / name / "config.json"

    def _stored_config(self, name: str) -> dict[str, Any]:
        path = self._config_path(name)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[plugin:%s] Ignoring unreadable config %s: %s", name, path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def merged_config(self, manifest: PluginManifest) -> dict[str, Any]:
        merged = {
            key: schema.default
            for key, schema in manifest.config_schema.items()
            if schema.default is not None
        }
        merged.update(self._stored_config(manifest.name))
        return merged

    def get_config(self, name: str, key: str | None = None) -> dict[str, Any]:
        self._entry(self.read_state(), name)
        manifest = self.manifest_for(name)
        config = self.merged_config(manifest) if manifest else self._stored_config(name)
        if key is None:
            return config
        return {key: config[key]} if key in config else {}

    def set_config(self, name: str, key: str, value: Any) -> None:
        self._entry(self.read_state(), name)
        manifest = self.manifest_for(name)
        if manifest is not None:
            check_config_value(manifest, key, value)
        stored = self._stored_config(name)
        stored[key] = value
        write_json_atomic(self._config_path(name), stored)
        logger.info("[plugin:%s] Set config %s", name, key)
