"""Plugin manifest model and validation.

A plugin directory carries a ``specflow-plugin.json`` manifest describing the
plugin, the host versions it supports and the extension points it uses.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from semantic_version import NpmSpec, Version

MANIFEST_FILE_NAME = "specflow-plugin.json"
PLUGIN_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

ManifestErrorCode = Literal["MISSING_FIELD", "INVALID_TYPE", "INVALID_VALUE", "SCHEMA_ERROR"]


class PluginDependency(BaseModel):
    """Another plugin that must be present, with an npm-style version range."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "*"

    @field_validator("version")
    @classmethod
    def validate_range(cls, v: str) -> str:
        try:
            NpmSpec(v)
        except ValueError as exc:
            raise ValueError(f"Must be a valid semver range: {v}") from exc
        return v


class ConfigFieldSchema(BaseModel):
    """Shape of one plugin configuration key."""

    model_config = ConfigDict(frozen=True)

    type: Literal["string", "number", "boolean", "array", "object"]
    description: str
    default: Any = None
    required: bool = False


class PluginManifest(BaseModel):
    """Validated contents of a plugin manifest file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Unique plugin name")
    version: str = Field(..., description="Plugin version (semver)")
    description: str
    author: str
    entry_point: str = Field(..., alias="entryPoint", description="Python file defining activate()")
    compatible_cli_version: str = Field(
        ..., alias="compatibleCliVersion", description="Supported host versions (npm range)"
    )
    extension_points: list[Literal["commands", "agents", "hooks", "services", "templates"]] = (
        Field(..., alias="extensionPoints")
    )
    dependencies: list[PluginDependency] = Field(default_factory=list)
    config_schema: dict[str, ConfigFieldSchema] = Field(
        default_factory=dict, alias="configSchema"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not PLUGIN_NAME_PATTERN.match(v):
            raise ValueError(
                "Plugin name must be lowercase letters, digits, dots, dashes or underscores"
            )
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        try:
            Version(v)
        except ValueError as exc:
            raise ValueError("Must be a valid semver version (e.g., 1.0.0)") from exc
        return v

    @field_validator("compatible_cli_version")
    @classmethod
    def validate_cli_range(cls, v: str) -> str:
        try:
            NpmSpec(v)
        except ValueError as exc:
            raise ValueError("Must be a valid semver range (e.g., >=0.1.0, ^1.0.0)") from exc
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def normalize_dependencies(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"name": item, "version": "*"} if isinstance(item, str) else item for item in v]
        return v

    @property
    def dependency_names(self) -> list[str]:
        return [dependency.name for dependency in self.dependencies]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


@dataclass(frozen=True, slots=True)
class ManifestFieldError:
    field: str
    message: str
    code: ManifestErrorCode


@dataclass(frozen=True, slots=True)
class ManifestValidationResult:
    valid: bool
    manifest: PluginManifest | None = None
    errors: tuple[ManifestFieldError, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        return "; ".join(f"{error.field}: {error.message}" for error in self.errors)


@dataclass(frozen=True, slots=True)
class CompatibilityResult:
    compatible: bool
    required_range: str
    actual_version: str
    message: str


def _error_code(error_type: str) -> ManifestErrorCode:
    if error_type == "missing":
        return "MISSING_FIELD"
    if error_type.endswith("_type") or error_type in {"model_attributes_type", "dict_type"}:
        return "INVALID_TYPE"
    if error_type in {"literal_error", "enum", "value_error", "string_pattern_mismatch"}:
        return "INVALID_VALUE"
    return "SCHEMA_ERROR"


def _schema_error(message: str) -> ManifestValidationResult:
    return ManifestValidationResult(
        valid=False, errors=(ManifestFieldError("manifest", message, "SCHEMA_ERROR"),)
    )


class ManifestValidator:
    def validate_data(self, data: Any) -> ManifestValidationResult:
        if not isinstance(data, dict):
            return _schema_error("Manifest must be a JSON object")
        try:
            manifest = PluginManifest.model_validate(data)
        except ValidationError as exc:
            errors = tuple(
                ManifestFieldError(
                    field=".".join(str(part) for part in error["loc"]) or "manifest",
                    message=error["msg"],
                    code=_error_code(error["type"]),
                )
                for error in exc.errors()
            )
            return ManifestValidationResult(valid=False, errors=errors)
        return ManifestValidationResult(valid=True, manifest=manifest)

    def validate_file(self, manifest_path: Path) -> ManifestValidationResult:
        try:
            content = manifest_path.read_text(encoding="utf-8")
        except OSError:
            return _schema_error(f"Failed to read manifest file: {manifest_path}")
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            return _schema_error(f"Invalid JSON in manifest file: {manifest_path}")
        return self.validate_data(data)

    def check_compatibility(
        self, manifest: PluginManifest, cli_version: str
    ) -> CompatibilityResult:
        required = manifest.compatible_cli_version
        compatible = NpmSpec(required).match(Version(cli_version))
        verdict = "is compatible with" if compatible else "does not satisfy"
        return CompatibilityResult(
            compatible=compatible,
            required_range=required,
            actual_version=cli_version,
            message=f"CLI version {cli_version} {verdict} required range {required}",
        )
