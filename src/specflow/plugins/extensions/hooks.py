from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any

from specflow.errors import PluginError
from specflow.plugins.registry import PluginRegistry
from specflow.plugins.types import (
    HOOK_PHASES,
    HOOK_PRIORITY_ORDER,
    WILDCARD_PHASE,
    HookContext,
    HookError,
    HookExecutionResult,
    HookPhase,
    HookRegistration,
    HookResult,
    HookTiming,
    RegisteredHook,
)

logger = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT_SECONDS = 30.0


class HookTimeoutError(PluginError):
    """Raised when a hook handler does not finish within its time budget."""


def _veto_reason(result: Any) -> str | None:
    if isinstance(result, HookResult):
        if result.action == "veto":
            return result.reason or "Vetoed without a reason"
        return None
    if isinstance(result, Mapping) and result.get("action") == "veto":
        return str(result.get("reason") or "Vetoed without a reason")
    return None


class HookRunner:
    """Runs pre/post phase hooks in priority order with timeouts and veto support."""

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    def register_hook(self, plugin_name: str, registration: HookRegistration) -> RegisteredHook:
        if registration.phase != WILDCARD_PHASE and registration.phase not in HOOK_PHASES:
            raise PluginError(f"Unknown hook phase: {registration.phase}", plugin_name=plugin_name)
        if registration.timing not in ("pre", "post"):
            raise PluginError(
                f"Unknown hook timing: {registration.timing}", plugin_name=plugin_name
            )
        if registration.priority not in HOOK_PRIORITY_ORDER:
            raise PluginError(
                f"Unknown hook priority: {registration.priority}", plugin_name=plugin_name
            )
        return self.registry.register_hook(plugin_name, registration)

    def hooks_for(self, phase: HookPhase, timing: HookTiming) -> list[RegisteredHook]:
        hooks = self.registry.get_hooks(phase, timing) + self.registry.get_hooks(
            WILDCARD_PHASE, timing
        )
        return sorted(
            hooks,
            key=lambda hook: (
                HOOK_PRIORITY_ORDER[hook.registration.priority],
                hook.registration_order,
            ),
        )

    async def _call(self, hook: RegisteredHook, context: HookContext) -> Any:
        outcome = hook.registration.handler(context)
        if not inspect.isawaitable(outcome):
            return outcome
        try:
            return await asyncio.wait_for(outcome, timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise HookTimeoutError(
                f'Hook from plugin "{hook.plugin_name}" timed out after '
                f"{self.timeout_seconds:g}s",
                plugin_name=hook.plugin_name,
            ) from exc

    async def _run(
        self, phase: HookPhase, timing: HookTiming, context: HookContext
    ) -> HookExecutionResult:
        label = "Pre-phase" if timing == "pre" else "Post-phase"
        executed = 0
        errors: list[HookError] = []
        for hook in self.hooks_for(phase, timing):
            try:
                result = await self._call(hook, context)
            except Exception as exc:
                executed += 1
                errors.append(HookError(hook.plugin_name, str(exc)))
                logger.error("[plugin:%s] %s hook failed: %s", hook.plugin_name, label, exc)
                continue
            executed += 1

            reason = _veto_reason(result)
            if reason is None:
                continue
            if timing == "post":
                logger.warning(
                    "[plugin:%s] Post-phase hook returned a veto; ignoring it", hook.plugin_name
                )
                continue
            logger.info("[plugin:%s] Vetoed %s phase: %s", hook.plugin_name, phase, reason)
            return HookExecutionResult(
                vetoed=True,
                veto_reason=reason,
                veto_plugin=hook.plugin_name,
                executed_hooks=executed,
                errors=tuple(errors),
            )
        return HookExecutionResult(executed_hooks=executed, errors=tuple(errors))

    async def run_pre_phase_hooks(
        self, phase: HookPhase, context: HookContext
    ) -> HookExecutionResult:
        return await self._run(phase, "pre", context)

    async def run_post_phase_hooks(
        self, phase: HookPhase, context: HookContext
    ) -> HookExecutionResult:
        return await self._run(phase, "post", context)
