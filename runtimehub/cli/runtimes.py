"""
Runtime Management CLI

Commands for managing external runtimes:
- runtimehub runtimes list
- runtimehub runtimes status <id> [--refresh]
- runtimehub runtimes refresh <id>
- runtimehub runtimes install <id>
- runtimehub runtimes uninstall <id>
- runtimehub runtimes call <id> <action> [--args JSON] [--timeout SECONDS]
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from runtimehub.core.config import RuntimeHubSettings
from runtimehub.core.runtimes.exceptions import RuntimeHubError
from runtimehub.core.runtimes.manager import RuntimeManager
from runtimehub.core.runtimes.models import InstallState, InstallStatus
from runtimehub.core.runtimes.records import InstallRecordStore
from runtimehub.core.runtimes.registry import RuntimeRegistry
from runtimehub.core.storage.preferences import PreferenceStore

logger = logging.getLogger(__name__)
console = Console()

_STATUS_STYLES = {
    InstallStatus.INSTALLED: "green",
    InstallStatus.UPDATE_AVAILABLE: "yellow",
    InstallStatus.INSTALLING: "cyan",
    InstallStatus.CHECKING: "cyan",
    InstallStatus.FAILED: "red",
    InstallStatus.NOT_INSTALLED: "dim",
}


def _fail(error: RuntimeHubError) -> None:
    console.print(f"[red]Error:[/red] {escape(error.message)}")
    if error.hint:
        console.print(f"[dim]Hint: {escape(error.hint)}[/dim]")
    sys.exit(1)


def _load_registry(settings: RuntimeHubSettings) -> RuntimeRegistry:
    return RuntimeRegistry.from_file(settings.runtimes_path)


def _build_manager(settings: RuntimeHubSettings, extension_id: str) -> RuntimeManager:
    descriptor = _load_registry(settings).get(extension_id)
    records = InstallRecordStore(PreferenceStore(settings.preferences_path))
    return RuntimeManager.create(descriptor, settings=settings, records=records)


def _styled(state: InstallState) -> str:
    style = _STATUS_STYLES.get(state.status, "white")
    return f"[{style}]{escape(state.describe())}[/{style}]"


@click.group(name="runtimes")
def runtimes_group():
    """External runtime management commands"""
    pass


@runtimes_group.command(name="list")
@click.pass_obj
def list_runtimes_cmd(settings: RuntimeHubSettings):
    """List configured runtimes and their local install state (no network)"""
    try:
        registry = _load_registry(settings)
    except RuntimeHubError as e:
        _fail(e)

    descriptors = registry.list()
    if not descriptors:
        console.print(f"[yellow]No runtimes configured.[/yellow] Add them to {settings.runtimes_path}")
        return

    records = InstallRecordStore(PreferenceStore(settings.preferences_path))
    table = Table(title=f"Runtimes ({len(descriptors)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Executable", style="dim", overflow="fold")

    for descriptor in descriptors:
        manager = RuntimeManager.create(descriptor, settings=settings, records=records)
        executable = manager.executable_path
        table.add_row(
            descriptor.id,
            descriptor.display_name,
            _styled(manager.state),
            str(executable) if executable else "-"
        )

    console.print(table)


@runtimes_group.command(name="status")
@click.argument("extension_id")
@click.option("--refresh/--no-refresh", default=True, help="Check the remote manifest (default: on)")
@click.pass_obj
def status_cmd(settings: RuntimeHubSettings, extension_id: str, refresh: bool):
    """Show install status of one runtime"""
    try:
        manager = _build_manager(settings, extension_id)
        if refresh:
            asyncio.run(manager.refresh())
    except RuntimeHubError as e:
        _fail(e)

    console.print(f"[bold]{manager.descriptor.display_name}[/bold] ({extension_id})")
    console.print(f"  Status: {_styled(manager.state)}")
    console.print(f"  Installed version: {manager.installed_version or '-'}")
    console.print(f"  Latest version: {manager.latest_version or '-'}")
    console.print(f"  Install root: {manager.install_root}")
    if manager.last_error:
        console.print(f"  Last error: [red]{escape(manager.last_error)}[/red]")


@runtimes_group.command(name="refresh")
@click.argument("extension_id")
@click.pass_obj
def refresh_cmd(settings: RuntimeHubSettings, extension_id: str):
    """Check the remote manifest for a newer runtime version"""
    try:
        manager = _build_manager(settings, extension_id)
        state = asyncio.run(manager.refresh())
    except RuntimeHubError as e:
        _fail(e)

    console.print(f"{extension_id}: {_styled(state)}")
    if state.status == InstallStatus.FAILED:
        sys.exit(1)


@runtimes_group.command(name="install")
@click.argument("extension_id")
@click.pass_obj
def install_cmd(settings: RuntimeHubSettings, extension_id: str):
    """Install a runtime, or update it to the latest version"""
    try:
        manager = _build_manager(settings, extension_id)
    except RuntimeHubError as e:
        _fail(e)

    def on_state(state: InstallState) -> None:
        if state.status == InstallStatus.INSTALLING:
            console.print(f"  {state.describe()}")

    manager.subscribe(on_state)
    console.print(f"[bold]Installing {manager.descriptor.display_name}...[/bold]")

    try:
        record = asyncio.run(manager.install_or_update())
    except RuntimeHubError as e:
        _fail(e)

    if record is None:
        console.print("[yellow]Another install is already in progress.[/yellow]")
        return

    console.print(f"[green]Installed[/green] {extension_id} v{record.installed_version}")
    console.print(f"  Executable: {record.executable_path}")


@runtimes_group.command(name="uninstall")
@click.argument("extension_id")
@click.pass_obj
def uninstall_cmd(settings: RuntimeHubSettings, extension_id: str):
    """Remove every installed version of a runtime"""
    try:
        manager = _build_manager(settings, extension_id)
        asyncio.run(manager.uninstall())
    except RuntimeHubError as e:
        _fail(e)

    console.print(f"[green]Uninstalled[/green] {extension_id}")


@runtimes_group.command(name="call")
@click.argument("extension_id")
@click.argument("action")
@click.option("--args", "arguments", default="{}", help="JSON object of command arguments")
@click.option("--timeout", type=float, default=None, help="Seconds to wait (default: configured command timeout)")
@click.pass_obj
def call_cmd(
    settings: RuntimeHubSettings,
    extension_id: str,
    action: str,
    arguments: str,
    timeout: Optional[float]
):
    """
    Run one command in an installed runtime and print its JSON payload.

    Examples:
        runtimehub runtimes call voiceTranscribe transcribe --args '{"audioPath": "/tmp/a.wav"}'
    """
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    try:
        manager = _build_manager(settings, extension_id)
        payload = asyncio.run(manager.run_command(action, parsed, timeout=timeout))
    except RuntimeHubError as e:
        _fail(e)

    click.echo(json.dumps(payload, indent=2, sort_keys=True))
