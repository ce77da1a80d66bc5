"""Document commands: list, add, show, delete, favorite."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ._common import DOCSYNC_HOME, console, format_ms, get_optional_coordinator, get_store, home_path
from ..store import LocalStoreError


def _finish(coordinator, wait: float) -> None:
    if coordinator is None:
        return
    if not coordinator.wait_for_pushes(wait):
        console.print("  [yellow]Upload still pending; it will be retried on the next pull.[/]")
    coordinator.close()


def register_docs_commands(main: click.Group) -> None:
    """Register the docs command group."""

    @main.group()
    def docs():
        """Manage your documents (local and cloud)."""

    @docs.command("list")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--favorites", is_flag=True, help="Only favorites.")
    def docs_list(home, favorites):
        """List documents, newest first, including cloud-only ones."""
        home_dir = home_path(home)
        coordinator = get_optional_coordinator(home_dir)
        if coordinator is not None:
            entries = coordinator.merged_list()
            coordinator.close()
        else:
            entries = get_store(home_dir).summaries()

        if favorites:
            entries = [e for e in entries if e.is_favorite]
        if not entries:
            console.print("\n  [dim]No documents.[/]\n")
            return

        table = Table(title=f"Documents ({len(entries)})")
        table.add_column("ID", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Created")
        table.add_column("Size", justify="right")
        table.add_column("", justify="center")
        for entry in entries:
            flags = ("[yellow]*[/]" if entry.is_favorite else "") + (
                " [blue]cloud[/]" if entry.cloud_only else ""
            )
            table.add_row(
                entry.id, entry.title or "[dim]untitled[/]",
                format_ms(entry.created_at), str(entry.size_bytes), flags,
            )
        console.print()
        console.print(table)
        console.print()

    @docs.command("add")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--title", required=True)
    @click.option("--url", "source_url", default="", help="Source URL.")
    @click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False), default=None)
    @click.option("--content", default=None, help="Inline content.")
    @click.option("--wait", default=30.0, help="Seconds to wait for the upload.")
    def docs_add(home, title, source_url, file_path: Optional[str], content: Optional[str], wait):
        """Save a new document and upload it."""
        if file_path:
            content = Path(file_path).read_text(encoding="utf-8")
        if content is None:
            console.print("[red]Provide --file or --content.[/]")
            sys.exit(1)

        home_dir = home_path(home)
        coordinator = get_optional_coordinator(home_dir)
        if coordinator is not None:
            record = coordinator.save_document(title, content, source_url=source_url)
        else:
            record = get_store(home_dir).save_new(title, content, source_url=source_url)
        console.print(f"\n  [green]Saved[/] [cyan]{record.id}[/] ({record.size_bytes} bytes)")
        _finish(coordinator, wait)
        console.print()

    @docs.command("show")
    @click.argument("doc_id")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    def docs_show(doc_id, home):
        """Print a document, downloading it first if it is cloud-only."""
        home_dir = home_path(home)
        coordinator = get_optional_coordinator(home_dir)
        if coordinator is not None:
            try:
                record = coordinator.open_document(doc_id)
            finally:
                coordinator.close()
        else:
            record = get_store(home_dir).get(doc_id)

        if record is None:
            console.print(f"[red]Document not found:[/] {doc_id}")
            sys.exit(1)
        console.print(f"\n[bold cyan]{record.title}[/]")
        if record.source_url:
            console.print(f"[dim]{record.source_url}[/]")
        console.print(f"[dim]Updated {format_ms(record.updated_at)}[/]\n")
        console.print(record.content, markup=False)

    @docs.command("delete")
    @click.argument("doc_id")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--wait", default=30.0, help="Seconds to wait for the remote delete.")
    def docs_delete(doc_id, home, wait):
        """Delete a document on every device."""
        home_dir = home_path(home)
        coordinator = get_optional_coordinator(home_dir)
        if coordinator is not None:
            existed = coordinator.delete_document(doc_id)
        else:
            existed = get_store(home_dir).delete(doc_id)
        if existed:
            console.print(f"\n  [green]Deleted[/] {doc_id}")
        else:
            console.print(f"\n  [yellow]Not found locally[/] {doc_id}")
        _finish(coordinator, wait)
        console.print()

    @docs.command("favorite")
    @click.argument("doc_id")
    @click.option("--home", default=DOCSYNC_HOME, type=click.Path())
    @click.option("--wait", default=30.0, help="Seconds to wait for the upload.")
    def docs_favorite(doc_id, home, wait):
        """Toggle the favorite flag."""
        home_dir = home_path(home)
        coordinator = get_optional_coordinator(home_dir)
        try:
            if coordinator is not None:
                record = coordinator.toggle_favorite(doc_id)
            else:
                record = get_store(home_dir).toggle_favorite(doc_id)
        except LocalStoreError as exc:
            console.print(f"[red]{exc}[/]")
            if coordinator is not None:
                coordinator.close()
            sys.exit(1)
        state = "[yellow]favorite[/]" if record.is_favorite else "not favorite"
        console.print(f"\n  {record.id} is now {state}")
        _finish(coordinator, wait)
        console.print()
