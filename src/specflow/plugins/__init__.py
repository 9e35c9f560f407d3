from specflow.plugins.registry import PluginRegistry, namespaced_template_name
from specflow.plugins.types import (
    AgentAdapterResult,
    AgentInvokeOptions,
    AgentRegistration,
    CommandArgs,
    CommandRegistration,
    HookContext,
    HookRegistration,
    HookResult,
    ServiceRegistration,
    TemplateRegistration,
)
from specflow.plugins.extensions import ExtensionSet
from specflow.plugins.manifest import (
    MANIFEST_FILE_NAME,
    ManifestValidationResult,
    ManifestValidator,
    PluginManifest,
)
from specflow.plugins.context import PluginContext
from specflow.plugins.loader import PluginLoader, PluginLoadResult
from specflow.plugins.manager import PluginManager
from specflow.plugins.bootstrap import PluginRuntime, bootstrap_plugins, build_plugin_runtime

__all__ = [
    "MANIFEST_FILE_NAME",
    "AgentAdapterResult",
    "AgentInvokeOptions",
    "AgentRegistration",
    "CommandArgs",
    "CommandRegistration",
    "ExtensionSet",
    "HookContext",
    "HookRegistration",
    "HookResult",
    "ManifestValidationResult",
    "ManifestValidator",
    "PluginContext",
    "PluginLoadResult",
    "PluginLoader",
    "PluginManager",
    "PluginManifest",
    "PluginRegistry",
    "PluginRuntime",
    "ServiceRegistration",
    "TemplateRegistration",
    "bootstrap_plugins",
    "build_plugin_runtime",
    "namespaced_template_name",
]
