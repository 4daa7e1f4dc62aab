"""Serve command: run the wiki's HTTP server in the foreground."""

from __future__ import annotations

import sys

import click

from ._common import config_option, console, load_or_exit, setup_logging


def register_serve_commands(main: click.Group) -> None:
    """Register the serve command."""

    @main.command("serve")
    @config_option
    @click.option("--host", default=None, help="Override the host from listen_on.")
    @click.option("--port", default=None, type=int, help="Override the port from listen_on.")
    @click.option("--skip-pandoc-check", is_flag=True, help="Start even if pandoc misbehaves.")
    def serve(config_path, host, port, skip_pandoc_check):
        """Unlock the vault, open the page repository and serve HTTP."""
        from ..errors import GitaliteError, RenderError, VaultError
        from ..server import build_app, start_server

        config = load_or_exit(config_path)
        setup_logging(config.log_level, config.log_file)

        try:
            app = build_app(config)
        except VaultError as exc:
            console.print(f"[bold red]Vault error ({exc.kind.value}):[/] {exc}")
            sys.exit(1)
        except GitaliteError as exc:
            console.print(f"[bold red]Startup failed:[/] {exc}")
            sys.exit(1)

        if not skip_pandoc_check:
            try:
                app.renderer.self_test()
            except RenderError as exc:
                console.print(f"[bold red]pandoc check failed:[/] {exc}")
                sys.exit(1)

        default_host, default_port = config.listen_address
        server = start_server(app, host or default_host, port if port is not None else default_port)
        bound_host, bound_port = server.server_address[:2]
        console.print(
            f"\n  [green]gitalite[/] serving [bold]{config.pages_directory}[/]"
            f" at [cyan]http://{bound_host}:{bound_port}[/]"
        )
        console.print(f"  Identities in vault: {len(app.vault)}\n")

        try:
            server.serve_forever()
        except KeyboardInterrupt:
            console.print("\n  [dim]Shutting down.[/]")
        finally:
            server.server_close()
