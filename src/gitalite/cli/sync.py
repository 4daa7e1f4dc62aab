"""Repository commands: sync, history."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import config_option, console, load_or_exit


def register_sync_commands(main: click.Group) -> None:
    """Register the sync and history commands."""

    @main.command("sync")
    @config_option
    def sync(config_path):
        """Push local commits that never reached the remote."""
        from ..errors import GitaliteError
        from ..store import GitContentStore

        config = load_or_exit(config_path)
        try:
            store = GitContentStore.from_config(config)
            pending = store.pending_count()
            result = store.push()
        except GitaliteError as exc:
            console.print(f"[bold red]Sync failed:[/] {exc}")
            sys.exit(1)

        if result is None:
            console.print("\n  [green]Up to date.[/] Nothing to push.\n")
            return
        if result.synchronized:
            console.print(
                f"\n  [green]Pushed[/] {pending} commit(s), tip {result.commit_id[:12]}"
                f" after {result.push_attempts} attempt(s).\n"
            )
            return
        console.print(f"\n  [yellow]Still pending:[/] {result.warning}\n")
        sys.exit(2)

    @main.command("history")
    @config_option
    @click.argument("path")
    @click.option("--limit", default=20, show_default=True, help="Commits to show.")
    def history(config_path, path, limit):
        """Show the commits that touched PATH."""
        from ..errors import GitaliteError
        from ..store import GitContentStore

        config = load_or_exit(config_path)
        try:
            store = GitContentStore.from_config(config)
            commits = []
            for commit in store.history(path):
                commits.append(commit)
                if len(commits) >= limit:
                    break
        except GitaliteError as exc:
            console.print(f"[bold red]Error:[/] {exc}")
            sys.exit(1)

        if not commits:
            console.print(f"\n  [dim]No history for {path}.[/]\n")
            return

        table = Table(title=f"History of {path}")
        table.add_column("Commit", style="cyan")
        table.add_column("Date", style="dim")
        table.add_column("Author", style="bold")
        table.add_column("Message")
        for commit in commits:
            table.add_row(
                commit.commit_id[:12],
                commit.timestamp.strftime("%Y-%m-%d %H:%M"),
                f"{commit.author_name} <{commit.author_email}>",
                commit.message,
            )
        console.print(table)
