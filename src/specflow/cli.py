from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from specflow import __version__
from specflow.config import DEFAULT_CONFIG_FILE, SpecflowConfig, load_config, save_config
from specflow.engine import DriveOutcome, WorkflowEngine
from specflow.errors import SpecflowError
from specflow.flow.types import FlowState
from specflow.logging_setup import configure_logging
from specflow.plugins.bootstrap import PluginRuntime, bootstrap_plugins, build_plugin_runtime
from specflow.state.store import STATE_DIR_NAME

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SpecflowConfig
    plugins: PluginRuntime
    engine: WorkflowEngine


def _root_option(key: str) -> str | None:
    ctx = click.get_current_context(silent=True)
    if ctx is None:
        return None
    obj = ctx.find_root().obj
    return obj.get(key) if isinstance(obj, dict) else None


def _resolve_config_path(repo_root: Path, config_value: str | None) -> Path:
    config_path = Path(config_value or _root_option("config") or DEFAULT_CONFIG_FILE)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(repo_root: Path, config_value: str | None) -> SpecflowConfig:
    config = load_config(_resolve_config_path(repo_root, config_value))
    if _root_option("log_level") is None:
        configure_logging(config.logging.level)
    return config


def _checkpoint_prompt(completed: int, total: int) -> str:
    return click.prompt(
        f"Checkpoint: {completed}/{total} tasks done. Continue?",
        type=click.Choice(["continue", "pause", "abort"]),
        default="continue",
    )


async def _load_runtime(repo_root: Path, config_value: str | None) -> Runtime:
    config = _load_config(repo_root, config_value)
    plugins = await bootstrap_plugins(repo_root, config, cli_version=__version__)
    for error in plugins.errors:
        click.echo(f"Plugin {error.plugin_name} failed to load: {error.error}", err=True)
    engine = WorkflowEngine.from_config(
        repo_root, config, hooks=plugins.extensions.hooks, checkpoint=_checkpoint_prompt
    )
    return Runtime(
        repo_root=repo_root,
        config_path=_resolve_config_path(repo_root, config_value),
        config=config,
        plugins=plugins,
        engine=engine,
    )


def _run(config_value: str | None, operation: Callable[[Runtime], Awaitable[T]]) -> T:
    repo_root = Path.cwd().resolve()

    async def main() -> T:
        runtime = await _load_runtime(repo_root, config_value)
        try:
            return await operation(runtime)
        finally:
            await runtime.plugins.shutdown()

    try:
        return asyncio.run(main())
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _run_plugins(
    config_value: str | None, operation: Callable[[PluginRuntime], Awaitable[T]]
) -> T:
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    runtime = build_plugin_runtime(repo_root, config, cli_version=__version__)

    async def main() -> T:
        try:
            return await operation(runtime)
        finally:
            await runtime.shutdown()

    try:
        return asyncio.run(main())
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_state(engine: WorkflowEngine, state: FlowState) -> None:
    phase = state.phase
    click.echo(f"Feature: {state.feature}")
    click.echo(f"Mode: {state.mode.value}")
    click.echo(f"Phase: {phase.type}")
    if phase.type == "implementing" and phase.total_tasks:
        click.echo(f"Tasks: {phase.current_task or 0}/{phase.total_tasks}")
    if phase.type == "paused":
        click.echo(f"Paused at task: {(phase.paused_at or 0) + 1}")
    if phase.pr_url:
        click.echo(f"Pull request: {phase.pr_url}")
    if phase.type == "error":
        click.echo(f"Error: {phase.error}", err=True)
    if phase.type == "aborted" and phase.reason:
        click.echo(f"Reason: {phase.reason}")
    suggestions = engine.recovery_suggestions(state)
    if suggestions:
        click.echo("Next steps:")
        for suggestion in suggestions:
            click.echo(f"  {suggestion.command}  # {suggestion.description}")


def _echo_outcome(engine: WorkflowEngine, outcome: DriveOutcome) -> None:
    if outcome.vetoed:
        click.echo(f"Vetoed by plugin {outcome.veto_plugin}: {outcome.veto_reason}", err=True)
    _echo_state(engine, outcome.state)


def _parse_plugin_args(tokens: list[str]) -> tuple[list[str], dict[str, Any]]:
    positional: list[str] = []
    options: dict[str, Any] = {}
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.startswith("--") and len(token) > 2:
            key, sep, value = token[2:].partition("=")
            if sep:
                options[key] = value
            elif index + 1 < len(tokens) and not tokens[index + 1].startswith("--"):
                options[key] = tokens[index + 1]
                index += 1
            else:
                options[key] = True
        else:
            positional.append(token)
        index += 1
    return positional, options


def _plugin_command(name: str) -> click.Command:
    @click.pass_context
    def callback(ctx: click.Context, args: tuple[str, ...]) -> None:
        positional, options = _parse_plugin_args(list(args))

        async def operation(runtime: Runtime) -> None:
            commands = runtime.plugins.extensions.commands
            entry = commands.get_command(name)
            if entry is None:
                raise click.UsageError(f"No such command '{name}'.", ctx=ctx.parent)
            context = runtime.plugins.loader.context_for(entry.plugin_name)
            result = await commands.execute_command(name, positional, options, context)
            if not result.success:
                raise click.ClickException(f"{name} failed: {result.error}")

        _run(None, operation)

    return click.Command(
        name,
        callback=callback,
        params=[click.Argument(["args"], nargs=-1, type=click.UNPROCESSED)],
        context_settings={"ignore_unknown_options": True, "allow_extra_args": True},
        help="Command provided by a plugin.",
    )


class PluginAwareGroup(click.Group):
    """Falls back to plugin commands for names the core does not define."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        command = super().get_command(ctx, cmd_name)
        if command is not None:
            return command
        return _plugin_command(cmd_name)


config_option = click.option(
    "--config",
    "config_value",
    default=None,
    help=f"Config file; defaults to the group --config or {DEFAULT_CONFIG_FILE}.",
)


@click.group(cls=PluginAwareGroup)
@click.version_option(__version__, prog_name="specflow")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.option(
    "--config",
    "config_value",
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Config file used by every command, plugin commands included.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, config_value: str) -> None:
    """Spec-driven development workflow."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_value
    ctx.obj["log_level"] = log_level
    if log_level:
        configure_logging(log_level.upper())


@cli.command("init")
@click.option("--mode", type=click.Choice(["greenfield", "brownfield"]), default=None)
@config_option
def init_command(mode: str | None, config_value: str | None) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if mode:
        config.workflow.default_mode = mode  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / STATE_DIR_NAME / "specs").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized specflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Default mode: {config.workflow.default_mode}")


@cli.command("start")
@click.argument("feature")
@click.argument("description")
@click.option("--mode", type=click.Choice(["greenfield", "brownfield"]), default=None)
@click.option("--tier", default=None, help="Agent tier; selects ~/.claude-<tier>.")
@click.option("--worktree", "worktree_path", default=None)
@config_option
def start_command(
    feature: str,
    description: str,
    mode: str | None,
    tier: str | None,
    worktree_path: str | None,
    config_value: str | None,
) -> None:
    async def operation(runtime: Runtime) -> None:
        outcome = await runtime.engine.start(
            feature,
            description,
            mode,
            tier=tier or runtime.config.agent.tier or None,
            worktree_path=worktree_path,
        )
        _echo_outcome(runtime.engine, outcome)

    _run(config_value, operation)


@cli.command("resume")
@click.argument("feature")
@config_option
def resume_command(feature: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_outcome(runtime.engine, await runtime.engine.resume(feature))

    _run(config_value, operation)


@cli.command("retry")
@click.argument("feature")
@config_option
def retry_command(feature: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_outcome(runtime.engine, await runtime.engine.retry(feature))

    _run(config_value, operation)


@cli.command("approve")
@click.argument("feature")
@config_option
def approve_command(feature: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_outcome(runtime.engine, await runtime.engine.approve(feature))

    _run(config_value, operation)


@cli.command("reject")
@click.argument("feature")
@config_option
def reject_command(feature: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_outcome(runtime.engine, await runtime.engine.reject(feature))

    _run(config_value, operation)


@cli.command("pause")
@click.argument("feature")
@config_option
def pause_command(feature: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_state(runtime.engine, runtime.engine.pause(feature))

    _run(config_value, operation)


@cli.command("abort")
@click.argument("feature")
@click.option("--reason", default="Aborted by user", show_default=True)
@config_option
def abort_command(feature: str, reason: str, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_state(runtime.engine, runtime.engine.abort(feature, reason))

    _run(config_value, operation)


@cli.command("pr")
@click.argument("feature")
@click.argument("url")
@click.option("--number", type=int, default=None)
@config_option
def pr_command(feature: str, url: str, number: int | None, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_state(runtime.engine, runtime.engine.record_pull_request(feature, url, number))

    _run(config_value, operation)


@cli.command("merge")
@click.argument("feature")
@click.option("--skip", is_flag=True, default=False, help="Finish without merging.")
@config_option
def merge_command(feature: str, skip: bool, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        _echo_state(runtime.engine, runtime.engine.merge(feature, skip=skip))

    _run(config_value, operation)


@cli.command("archive")
@click.argument("feature")
@click.option("--force", is_flag=True, default=False)
@config_option
def archive_command(feature: str, force: bool, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        target = runtime.engine.archive(feature, force=force)
        click.echo(f"Archived to {target}")

    _run(config_value, operation)


@cli.command("status")
@click.argument("feature")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(feature: str, as_json: bool, config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        state = runtime.engine.status(feature)
        if state is None:
            raise click.ClickException(f"No flow found for feature: {feature}")
        if as_json:
            click.echo(json.dumps(runtime.engine.describe(state), ensure_ascii=False, indent=2))
            return
        _echo_state(runtime.engine, state)

    _run(config_value, operation)


@cli.command("list")
@config_option
def list_command(config_value: str | None) -> None:
    async def operation(runtime: Runtime) -> None:
        flows = runtime.engine.list_flows()
        if not flows:
            click.echo("No flows.")
            return
        for state in flows:
            click.echo(
                f"{state.feature}\t{state.phase.type}\t{state.mode.value}\t{state.updated_at}"
            )

    _run(config_value, operation)


# Plugins


@cli.group("plugin")
def plugin_group() -> None:
    """Install and manage plugins."""


@plugin_group.command("install")
@click.argument("source")
@click.option(
    "--local/--index",
    "local",
    default=None,
    help="Treat SOURCE as a directory or as a package index requirement.",
)
@config_option
def plugin_install_command(source: str, local: bool | None, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        result = await runtime.manager.install(source, local=local)
        if not result.success:
            raise click.ClickException(result.error or f"Failed to install {source}")
        click.echo(f"Installed {result.plugin_name}@{result.version}")

    _run_plugins(config_value, operation)


@plugin_group.command("uninstall")
@click.argument("name")
@config_option
def plugin_uninstall_command(name: str, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        result = await runtime.manager.uninstall(name)
        if not result.success:
            raise click.ClickException(result.error or f"Failed to uninstall {name}")
        click.echo(f"Uninstalled {name}")

    _run_plugins(config_value, operation)


@plugin_group.command("enable")
@click.argument("name")
@config_option
def plugin_enable_command(name: str, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        await runtime.manager.enable(name)
        click.echo(f"Enabled {name}")

    _run_plugins(config_value, operation)


@plugin_group.command("disable")
@click.argument("name")
@config_option
def plugin_disable_command(name: str, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        dependents = await runtime.manager.disable(name)
        if dependents:
            click.echo(f"Warning: {', '.join(dependents)} depend on {name}", err=True)
        click.echo(f"Disabled {name}")

    _run_plugins(config_value, operation)


@plugin_group.command("update")
@click.argument("name")
@config_option
def plugin_update_command(name: str, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        result = await runtime.manager.update(name)
        if not result.success:
            raise click.ClickException(result.error or f"Failed to update {name}")
        click.echo(f"Updated {name}: {result.previous_version} -> {result.new_version}")

    _run_plugins(config_value, operation)


@plugin_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def plugin_list_command(as_json: bool, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        plugins = runtime.manager.list()
        if as_json:
            click.echo(json.dumps([asdict(item) for item in plugins], indent=2))
            return
        if not plugins:
            click.echo("No plugins installed.")
            return
        for item in plugins:
            state = "enabled" if item.enabled else "disabled"
            click.echo(f"{item.name}\t{item.version}\t{state}\t{item.description}")

    _run_plugins(config_value, operation)


@plugin_group.command("info")
@click.argument("name")
@config_option
def plugin_info_command(name: str, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        detail = runtime.manager.info(name)
        if detail is None:
            raise click.ClickException(f'Plugin "{name}" is not installed')
        click.echo(json.dumps(detail.to_dict(), ensure_ascii=False, indent=2))

    _run_plugins(config_value, operation)


@plugin_group.command("validate")
@click.argument("path", type=click.Path(path_type=Path))
@config_option
def plugin_validate_command(path: Path, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        result = runtime.manager.validate(path)
        if not result.valid or result.manifest is None:
            for error in result.errors:
                click.echo(f"{error.code} {error.field}: {error.message}", err=True)
            raise click.ClickException("Manifest is invalid")
        compatibility = runtime.manager.validator.check_compatibility(
            result.manifest, __version__
        )
        click.echo(f"Manifest is valid: {result.manifest.name}@{result.manifest.version}")
        if not compatibility.compatible:
            click.echo(f"Warning: {compatibility.message}", err=True)

    _run_plugins(config_value, operation)


@plugin_group.group("config")
def plugin_config_group() -> None:
    """Read and write plugin configuration."""


@plugin_config_group.command("get")
@click.argument("name")
@click.argument("key", required=False)
@config_option
def plugin_config_get_command(name: str, key: str | None, config_value: str | None) -> None:
    async def operation(runtime: PluginRuntime) -> None:
        click.echo(json.dumps(runtime.manager.get_config(name, key), indent=2))

    _run_plugins(config_value, operation)


@plugin_config_group.command("set")
@click.argument("name")
@click.argument("key")
@click.argument("value")
@config_option
def plugin_config_set_command(name: str, key: str, value: str, config_value: str | None) -> None:
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value

    async def operation(runtime: PluginRuntime) -> None:
        runtime.manager.set_config(name, key, parsed)
        click.echo(f"Set {name}.{key}")

    _run_plugins(config_value, operation)
