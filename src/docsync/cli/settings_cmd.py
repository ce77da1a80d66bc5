"""Settings commands: show, set, push, pull."""

from __future__ import annotations

import json
import sys

import click

from ._common import DOCSYNC_HOME, console, format_ms, get_coordinator, home_path
from ..settings import SettingsError, SettingsStore, SettingsSync
from ..sync.backends import RemoteError


def register_settings_commands(main: click.Group) -> None:
    """Register the settings command group."""

    @main.group()
    def settings():
        """Encrypted user settings (device key locally, identity key in sync)."""

    @settings.command("show")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def settings_show(home):
        """Print the decrypted settings."""
        try:
            current = SettingsStore(home_path(home)).load()
        except SettingsError as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)
        console.print(f"\n  [dim]Updated {format_ms(current.updated_at)}[/]")
        console.print_json(json.dumps(current.values))

    @settings.command("set")
    @click.argument("key")
    @click.argument("value")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def settings_set(key, value, home):
        """Set one settings value (JSON values are parsed)."""
        store = SettingsStore(home_path(home))
        try:
            current = store.load()
        except SettingsError as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = value
        current.values[key] = parsed
        store.save(current)
        console.print(f"\n  [green]Saved[/] {key}\n")

    @settings.command("push")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def settings_push(home):
        """Upload settings sealed with the identity key."""
        home_dir = home_path(home)
        coordinator = get_coordinator(home_dir)
        coordinator.close()
        sync = SettingsSync(SettingsStore(home_dir), coordinator.remote, coordinator.config.user_id)
        try:
            pushed = sync.push()
        except (SettingsError, RemoteError) as exc:
            console.print(f"[red]Push failed:[/] {exc}")
            sys.exit(1)
        console.print("\n  [green]Settings pushed[/]\n" if pushed else "\n  [dim]No saved settings.[/]\n")

    @settings.command("pull")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--passphrase", default=None, help="Legacy passphrase for one-time migration.")
    def settings_pull(home, passphrase):
        """Download settings if the remote copy is newer."""
        home_dir = home_path(home)
        coordinator = get_coordinator(home_dir)
        coordinator.close()
        sync = SettingsSync(
            SettingsStore(home_dir), coordinator.remote, coordinator.config.user_id, passphrase,
        )
        try:
            outcome = sync.pull()
        except (SettingsError, RemoteError) as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)
        if outcome.imported:
            console.print("\n  [green]Settings imported[/]")
        else:
            console.print("\n  [dim]Local settings are current.[/]")
        if outcome.migrated:
            console.print("  [green]Legacy settings re-encrypted under the identity key[/]")
        console.print()
