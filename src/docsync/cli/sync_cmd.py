"""Sync commands: setup, pull, status, reset-token, bootstrap, compact, daemon."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ._common import DOCSYNC_HOME, console, format_ms, get_coordinator, home_path
from ..sync.backends import FolderBackend
from ..sync.engine import load_config, save_config
from ..sync.models import BackendType


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted document sync.

        Pull remote changes, inspect sync health, and run the
        background pull daemon.
        """

    @sync.command("setup")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--user-id", required=True, help="Stable account id (derives the sync key).")
    @click.option(
        "--backend",
        type=click.Choice([b.value for b in BackendType]),
        default=None,
        help="Remote backend.",
    )
    @click.option("--folder", type=click.Path(), default=None, help="Shared folder (folder backend).")
    @click.option("--token-file", type=click.Path(), default=None, help="File holding the access token.")
    def sync_setup(home, user_id, backend, folder, token_file):
        """Write the sync configuration for this device."""
        home_dir = home_path(home)
        config = load_config(home_dir)
        config.user_id = user_id
        if backend:
            config.backend = BackendType(backend)
        if folder:
            config.folder_path = Path(folder).expanduser()
        if token_file:
            config.token_file = Path(token_file).expanduser()
        path = save_config(config, home_dir)
        console.print(f"\n  [green]Sync configured[/] ({config.backend.value}) -> [dim]{path}[/]\n")

    @sync.command("pull")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--wait", "wait_seconds", default=30.0, help="Seconds to wait for reconcile pushes.")
    def sync_pull(home, wait_seconds):
        """Pull remote changes now."""
        coordinator = get_coordinator(home_path(home))
        console.print("\n  Pulling...", end=" ")
        try:
            result = coordinator.pull()
            if result.pushed:
                coordinator.wait_for_pushes(wait_seconds)
        finally:
            coordinator.close()

        if result.skipped:
            console.print("[yellow]another pull is in progress[/]\n")
            return
        if result.error:
            console.print(f"[red]failed[/]\n  {result.error}\n")
            sys.exit(1)

        console.print("[green]done[/]")
        console.print(
            f"  Pulled: [bold]{result.pulled}[/]  Deleted: [bold]{result.deleted}[/]  "
            f"Pushed: [bold]{result.pushed}[/]  Removed: [bold]{result.removed}[/]"
        )
        if result.full_resync:
            console.print("  [dim]Full resync[/]")
        if result.failures:
            console.print(
                f"  [yellow]{result.failures} item(s) failed; they will be retried next pull[/]"
            )
        if result.deferred:
            console.print(f"  [yellow]{result.deferred} local document(s) deferred[/]")
        console.print()

    @sync.command("status")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def sync_status(home):
        """Show sync state and counts."""
        coordinator = get_coordinator(home_path(home))
        status = coordinator.status()
        coordinator.close()

        phase = status["phase"]
        phase_markup = "[bold yellow]SYNCING[/]" if phase == "syncing" else "[green]idle[/]"
        console.print()
        console.print(
            Panel(
                f"Backend: [cyan]{status['backend']}[/] "
                f"({'available' if status['available'] else '[red]unavailable[/]'})\n"
                f"Phase: {phase_markup}\n"
                f"Last Sync: {format_ms(status['last_sync_time'])}\n"
                f"Last Error: {status['last_error'] or '[dim]none[/]'}\n"
                f"Pulls: [bold]{status['pull_count']}[/]\n"
                f"Continuation Token: {'yes' if status['has_token'] else '[dim]none[/]'}\n"
                f"Local Documents: [bold]{status['local_documents']}[/]\n"
                f"Cloud Index: [bold]{status['cloud_index']}[/]\n"
                f"Pending Deletes: {status['pending_deletes']}",
                title="docsync",
                border_style="cyan",
            )
        )
        console.print()

    @sync.command("reset-token")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def sync_reset_token(home):
        """Forget the continuation token; the next pull is a full resync."""
        coordinator = get_coordinator(home_path(home))
        coordinator.reset_token()
        coordinator.close()
        console.print("\n  [green]Token cleared.[/] Next pull will do a full resync.\n")

    @sync.command("bootstrap")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def sync_bootstrap(home):
        """Seed an empty cloud index from the remote snapshot."""
        coordinator = get_coordinator(home_path(home))
        try:
            count = coordinator.bootstrap_from_index()
        finally:
            coordinator.close()
        if count:
            console.print(f"\n  [green]Cloud index seeded[/] with {count} document(s)\n")
        else:
            console.print("\n  [dim]Nothing to bootstrap (index not empty or no snapshot).[/]\n")

    @sync.command("compact")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def sync_compact(home):
        """Drop the shared folder's change history (folder backend only)."""
        coordinator = get_coordinator(home_path(home))
        coordinator.close()
        backend = coordinator.backend
        if not isinstance(backend, FolderBackend):
            console.print("[yellow]Compaction only applies to the folder backend.[/]")
            sys.exit(1)
        floor = backend.compact()
        console.print(f"\n  [green]Journal compacted[/] at seq {floor}\n")

    @sync.command("daemon")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--port", default=7788, help="API port (default: 7788).")
    @click.option("--interval", default=None, type=int, help="Pull interval in seconds.")
    def sync_daemon(home, port: int, interval: Optional[int]):
        """Run the background pull loop in the foreground.

        Pulls once now, then every pull interval, and serves a local
        status API at http://127.0.0.1:<port>.
        """
        from ..daemon import DaemonConfig, SyncDaemon, is_running

        home_dir = home_path(home)
        if is_running(home_dir):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        coordinator = get_coordinator(home_dir)
        pull_interval = interval or coordinator.config.pull_interval_minutes * 60
        config = DaemonConfig(home=home_dir, pull_interval=pull_interval, port=port)
        svc = SyncDaemon(config, coordinator=coordinator)

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{port}[/]")
        console.print(f"  Pull: every {pull_interval}s")
        console.print(f"  Log: {config.log_file}")
        console.print("  [dim]Ctrl+C to stop[/]\n")
        svc.start()
        svc.run_forever()
