from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType, ModuleType
from typing import TYPE_CHECKING, Any, Literal, Protocol

if TYPE_CHECKING:
    from specflow.plugins.context import PluginContext
    from specflow.plugins.manifest import PluginManifest

ExtensionPoint = Literal["commands", "agents", "hooks", "services", "templates"]
EXTENSION_POINTS: tuple[ExtensionPoint, ...] = (
    "commands",
    "agents",
    "hooks",
    "services",
    "templates",
)

HookPhase = Literal["requirements", "design", "tasks", "implementation"]
HOOK_PHASES: tuple[HookPhase, ...] = ("requirements", "design", "tasks", "implementation")
WILDCARD_PHASE = "*"
HookTiming = Literal["pre", "post"]
HookPriority = Literal["earliest", "early", "normal", "late", "latest"]
HOOK_PRIORITY_ORDER: dict[str, int] = {
    "earliest": 0,
    "early": 1,
    "normal": 2,
    "late": 3,
    "latest": 4,
}

AgentCapability = Literal[
    "code-generation", "code-review", "testing", "documentation", "refactoring"
]
TemplateCategory = Literal["stack", "spec", "steering"]
TEMPLATE_CATEGORIES: tuple[TemplateCategory, ...] = ("stack", "spec", "steering")
SpecSubType = Literal["requirements", "design", "tasks"]


def _frozen(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _frozen(item) for key, item in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_frozen(item) for item in value)
    return value


def freeze_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return a read-only deep view of ``value``; nested lists become tuples."""
    return _frozen(dict(value or {}))


# Commands


@dataclass(frozen=True, slots=True)
class ArgumentDefinition:
    name: str
    description: str = ""
    required: bool = True


@dataclass(frozen=True, slots=True)
class OptionDefinition:
    name: str
    description: str = ""
    type: Literal["string", "boolean", "number"] = "string"
    default: str | bool | float | None = None
    alias: str | None = None


@dataclass(frozen=True, slots=True)
class CommandArgs:
    positional: tuple[str, ...]
    options: Mapping[str, Any]
    context: PluginContext | None = None


CommandHandler = Callable[[CommandArgs], Any]


@dataclass(frozen=True, slots=True)
class CommandRegistration:
    name: str
    description: str
    handler: CommandHandler
    args: tuple[ArgumentDefinition, ...] = ()
    options: tuple[OptionDefinition, ...] = ()


# Agents


@dataclass(frozen=True, slots=True)
class AgentInvokeOptions:
    prompt: str
    working_directory: str
    model: str | None = None
    timeout_seconds: float | None = None
    on_output: Callable[[str], None] | None = None


@dataclass(frozen=True, slots=True)
class AgentAdapterResult:
    success: bool
    output: str = ""
    error: str | None = None


class AgentAdapter(Protocol):
    def invoke(self, options: AgentInvokeOptions) -> Awaitable[AgentAdapterResult]: ...

    def get_capabilities(self) -> list[AgentCapability]: ...

    def configure(self, config: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True, slots=True)
class AgentRegistration:
    name: str
    description: str
    adapter: AgentAdapter


# Hooks


@dataclass(frozen=True, slots=True)
class HookContext:
    """Snapshot handed to hook handlers; every mapping is read-only."""

    phase: HookPhase
    timing: HookTiming
    feature: str
    spec_metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    flow_state: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class HookResult:
    action: Literal["continue", "veto"] = "continue"
    reason: str | None = None

    @classmethod
    def proceed(cls) -> HookResult:
        return cls()

    @classmethod
    def veto(cls, reason: str) -> HookResult:
        return cls("veto", reason)


HookHandler = Callable[[HookContext], Any]


@dataclass(frozen=True, slots=True)
class HookRegistration:
    phase: HookPhase | Literal["*"]
    timing: HookTiming
    handler: HookHandler
    priority: HookPriority = "normal"


# Services

ServiceFactory = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True, slots=True)
class ServiceRegistration:
    name: str
    factory: ServiceFactory
    dependencies: tuple[str, ...] = ()
    dispose: Callable[[], Any] | None = None


# Templates


@dataclass(frozen=True, slots=True)
class TemplateRegistration:
    category: TemplateCategory
    name: str
    description: str
    source_path: str
    sub_type: SpecSubType | None = None


# Registry records


@dataclass(frozen=True, slots=True)
class RegisteredCommand:
    plugin_name: str
    registration: CommandRegistration


@dataclass(frozen=True, slots=True)
class RegisteredAgent:
    plugin_name: str
    registration: AgentRegistration


@dataclass(frozen=True, slots=True)
class RegisteredHook:
    plugin_name: str
    registration: HookRegistration
    registration_order: int


@dataclass(slots=True)
class RegisteredService:
    plugin_name: str
    registration: ServiceRegistration
    instance: Any = None
    instantiated: bool = False


@dataclass(frozen=True, slots=True)
class RegisteredTemplate:
    plugin_name: str
    namespaced_name: str
    registration: TemplateRegistration


@dataclass(frozen=True, slots=True)
class RegisteredPlugin:
    name: str
    version: str
    manifest: PluginManifest
    module: ModuleType
    activated_at: str


# Execution results


@dataclass(frozen=True, slots=True)
class HookError:
    plugin_name: str
    error: str


@dataclass(frozen=True, slots=True)
class HookExecutionResult:
    vetoed: bool = False
    veto_reason: str | None = None
    veto_plugin: str | None = None
    executed_hooks: int = 0
    errors: tuple[HookError, ...] = ()


@dataclass(frozen=True, slots=True)
class CommandExecutionResult:
    success: bool
    plugin_name: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class AgentInvocationResult:
    success: bool
    output: str = ""
    plugin_name: str | None = None
    error: str | None = None
