import asyncio
import json
import sys
import textwrap
from pathlib import Path

from specflow.plugins import ExtensionSet, PluginLoader
from specflow.plugins.loader import module_name_for

ACTIVATE_WITH_COMMAND = """
from specflow.plugins.types import CommandRegistration

def activate(context):
    context.register_command(
        CommandRegistration(
            name=context.plugin_name + "-hello",
            description="Say hello",
            handler=lambda args: None,
        )
    )
"""


def _write_plugin(
    root: Path,
    name: str,
    source: str = ACTIVATE_WITH_COMMAND,
    *,
    version: str = "1.0.0",
    points: list[str] | None = None,
    dependencies: list | None = None,
    cli_range: str = ">=0.1.0",
) -> Path:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    manifest = {
        "name": name,
        "version": version,
        "description": f"{name} plugin",
        "author": "Tests",
        "entryPoint": "plugin.py",
        "compatibleCliVersion": cli_range,
        "extensionPoints": points if points is not None else ["commands"],
        "dependencies": dependencies or [],
    }
    (plugin_dir / "specflow-plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
    (plugin_dir / "plugin.py").write_text(textwrap.dedent(source), encoding="utf-8")
    return plugin_dir


def _loader(**kwargs) -> PluginLoader:
    return PluginLoader(ExtensionSet.create(), cli_version="0.1.0", **kwargs)


def test_loads_plugins_and_registers_their_commands(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "alpha")
    _write_plugin(tmp_path, "beta")
    loader = _loader()

    result = asyncio.run(loader.load_plugins([tmp_path, tmp_path / "missing"]))

    assert [plugin.name for plugin in result.loaded] == ["alpha", "beta"]
    assert result.errors == []
    assert loader.extensions.commands.get_command("alpha-hello") is not None
    assert loader.extensions.registry.get_plugin("beta").version == "1.0.0"
    assert module_name_for("alpha") in sys.modules
    assert loader.context_for("alpha").plugin_name == "alpha"

    asyncio.run(loader.unload_plugin("alpha"))
    asyncio.run(loader.unload_plugin("beta"))


def test_plugin_directory_itself_can_be_passed(tmp_path: Path) -> None:
    plugin_dir = _write_plugin(tmp_path, "solo")
    loader = _loader()

    result = asyncio.run(loader.load_plugins([plugin_dir]))

    assert [plugin.name for plugin in result.loaded] == ["solo"]
    asyncio.run(loader.unload_plugin("solo"))


def test_invalid_manifest_is_a_discovery_error(tmp_path: Path) -> None:
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "specflow-plugin.json").write_text("{}", encoding="utf-8")

    result = asyncio.run(_loader().load_plugins([tmp_path]))

    assert result.loaded == []
    assert result.errors[0].phase == "discovery"
    assert result.errors[0].error.startswith("Invalid manifest:")


def test_incompatible_and_disabled_plugins_are_skipped(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "future", cli_range=">=2.0.0")
    _write_plugin(tmp_path, "muted")
    loader = _loader()

    result = asyncio.run(loader.load_plugins([tmp_path], disabled={"muted"}))

    assert result.loaded == []
    assert [(skip.name, skip.reason.split(":")[0]) for skip in result.skipped] == [
        ("future", "CLI version mismatch")
    ]


def test_dependencies_load_first_and_are_checked(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "app", dependencies=[{"name": "core", "version": "^1.0.0"}])
    _write_plugin(tmp_path, "core", version="1.4.0")
    _write_plugin(tmp_path, "needs-new-core", dependencies=[{"name": "core", "version": ">=2"}])
    _write_plugin(tmp_path, "orphan", dependencies=["ghost"])
    loader = _loader()

    result = asyncio.run(loader.load_plugins([tmp_path]))

    assert [plugin.name for plugin in result.loaded] == ["core", "app"]
    errors = {error.plugin_name: error.error for error in result.errors}
    assert errors["orphan"] == "Missing dependency: ghost"
    assert errors["needs-new-core"] == (
        "Dependency core@1.4.0 does not satisfy required range >=2"
    )
    for name in ("app", "core"):
        asyncio.run(loader.unload_plugin(name))


def test_dependency_cycle_loads_nothing(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "a", dependencies=["b"])
    _write_plugin(tmp_path, "b", dependencies=["a"])

    result = asyncio.run(_loader().load_plugins([tmp_path]))

    assert result.loaded == []
    assert result.errors[0].phase == "validation"
    assert result.errors[0].error == "Circular dependency detected: a -> b -> a"


def test_import_failures_are_reported(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "syntax", "def activate(context)\n    pass\n")
    _write_plugin(tmp_path, "no-activate", "VALUE = 1\n")

    result = asyncio.run(_loader().load_plugins([tmp_path]))

    errors = {error.plugin_name: error for error in result.errors}
    assert errors["syntax"].phase == "import"
    assert errors["no-activate"].error == "Plugin module does not define an activate() function"
    assert module_name_for("no-activate") not in sys.modules


def test_activation_failure_rolls_back_registrations(tmp_path: Path) -> None:
    source = """
    from specflow.plugins.types import CommandRegistration, ServiceRegistration

    DISPOSED = []

    def activate(context):
        context.register_service(
            ServiceRegistration(
                "half-built", lambda deps: object(), dispose=lambda: DISPOSED.append(1)
            )
        )
        context.get_service("half-built")
        context.register_command(
            CommandRegistration(name="half-cmd", description="x", handler=lambda args: None)
        )
        raise RuntimeError("cannot reach server")
    """
    _write_plugin(tmp_path, "flaky", source, points=["commands", "services"])
    loader = _loader()

    result = asyncio.run(loader.load_plugins([tmp_path]))

    assert result.loaded == []
    assert result.errors[0].phase == "activation"
    assert result.errors[0].error == "Plugin activation failed: cannot reach server"
    assert loader.extensions.registry.get_plugin("flaky") is None
    assert loader.extensions.commands.get_command("half-cmd") is None
    assert not loader.extensions.services.has_service("half-built")
    assert module_name_for("flaky") not in sys.modules


def test_undeclared_extension_point_fails_activation(tmp_path: Path) -> None:
    source = """
    from specflow.plugins.types import HookRegistration

    def activate(context):
        context.register_hook(HookRegistration("design", "pre", lambda ctx: None))
    """
    _write_plugin(tmp_path, "sneaky", source, points=["commands"])

    result = asyncio.run(_loader().load_plugins([tmp_path]))

    assert result.loaded == []
    assert "declares only: commands" in result.errors[0].error


def test_context_exposes_config_and_versions(tmp_path: Path) -> None:
    source = """
    SEEN = {}

    async def activate(context):
        SEEN["config"] = dict(context.config)
        SEEN["cli"] = context.get_cli_version()
        SEEN["project"] = context.get_project_config()
        context.log("info", "activated")
    """
    _write_plugin(tmp_path, "configured", source, points=[])
    loader = _loader(
        config_provider=lambda manifest: {"channel": f"#{manifest.name}"},
        project_config={"mode": "greenfield"},
    )

    result = asyncio.run(loader.load_plugins([tmp_path]))

    assert [plugin.name for plugin in result.loaded] == ["configured"]
    seen = sys.modules[module_name_for("configured")].SEEN
    assert seen["config"] == {"channel": "#configured"}
    assert seen["cli"] == "0.1.0"
    assert seen["project"]["mode"] == "greenfield"
    asyncio.run(loader.unload_plugin("configured"))


def test_unload_calls_deactivate_and_reload_picks_up_changes(tmp_path: Path) -> None:
    source = """
    from specflow.plugins.types import CommandRegistration

    def activate(context):
        context.register_command(
            CommandRegistration(name="{name}", description="x", handler=lambda args: None)
        )

    def deactivate():
        raise RuntimeError("deactivate errors are logged, not raised")
    """
    plugin_dir = _write_plugin(tmp_path, "live", source.replace("{name}", "live-v1"))
    loader = _loader()
    asyncio.run(loader.load_plugins([tmp_path]))
    assert loader.extensions.commands.get_command("live-v1") is not None

    (plugin_dir / "plugin.py").write_text(
        textwrap.dedent(source.replace("{name}", "live-second")), encoding="utf-8"
    )
    result = asyncio.run(loader.reload_plugin("live"))

    assert [plugin.name for plugin in result.loaded] == ["live"]
    assert loader.extensions.commands.get_command("live-v1") is None
    assert loader.extensions.commands.get_command("live-second") is not None

    assert asyncio.run(loader.unload_plugin("live")) is True
    assert asyncio.run(loader.unload_plugin("live")) is False
    assert loader.context_for("live") is None


def test_reload_of_unknown_plugin_is_an_error() -> None:
    result = asyncio.run(_loader().reload_plugin("never-loaded"))
    assert result.errors[0].error == "Plugin was not loaded by this loader"


def test_already_loaded_plugins_are_skipped(tmp_path: Path) -> None:
    _write_plugin(tmp_path, "once")
    loader = _loader()
    asyncio.run(loader.load_plugins([tmp_path]))

    again = asyncio.run(loader.load_plugins([tmp_path]))

    assert again.loaded == []
    assert again.skipped[0].reason == "Plugin is already loaded"
    asyncio.run(loader.unload_plugin("once"))
