from __future__ import annotations


class SpecflowError(RuntimeError):
    """Base class for errors raised by the workflow runtime."""


class InvalidTransitionError(SpecflowError):
    """Raised when an event has no legal edge from the current phase."""

    def __init__(self, message: str, *, phase: str, event: str) -> None:
        super().__init__(message)
        self.phase = phase
        self.event = event


class ModeLockedError(SpecflowError):
    """Raised when an event tries to change the mode bound at START."""


class FlowStateError(SpecflowError):
    """Raised when persisted flow state cannot be read or written."""


class FlowNotFoundError(FlowStateError):
    """Raised when an operation needs a flow that was never started."""


class TaskParseError(SpecflowError):
    """Raised when a task document cannot be read."""


class PluginError(SpecflowError):
    """Base class for plugin runtime failures."""

    def __init__(self, message: str, *, plugin_name: str | None = None) -> None:
        super().__init__(message)
        self.plugin_name = plugin_name


class RegistrationConflictError(PluginError):
    """Raised when a registration collides with a reserved or existing name."""


class ExtensionPointError(PluginError):
    """Raised when a plugin registers an extension point it did not declare."""


class ServiceResolutionError(PluginError):
    """Raised when a service or one of its dependencies cannot be resolved."""


class ManifestError(PluginError):
    """Raised when a plugin manifest is missing, malformed or incompatible."""


class PluginNotInstalledError(PluginError):
    """Raised when a lifecycle command targets an unknown plugin."""


class PluginConfigError(PluginError):
    """Raised when a plugin configuration value does not match its schema."""
