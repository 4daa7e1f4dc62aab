"""Vault commands: init, add, list."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import config_option, console, load_or_exit


def register_vault_commands(main: click.Group) -> None:
    """Register the vault command group."""

    @main.group()
    def vault():
        """Manage the encrypted identity vault.

        Identities listed here may edit the wiki. Anyone else who
        logs in can only read.
        """

    @vault.command("init")
    @config_option
    def vault_init(config_path):
        """Create the vault secret and seed the vault from the config."""
        from ..errors import VaultError
        from ..vault import CredentialVault, generate_secret

        config = load_or_exit(config_path)
        secret_file = config.users.password
        if secret_file.exists():
            console.print(f"  Secret already present: [dim]{secret_file}[/]")
        else:
            generate_secret(secret_file)
            console.print(f"  [green]Generated secret:[/] {secret_file}")

        try:
            opened = CredentialVault.unlock_from_files(
                config.users.database, secret_file, seed=config.users.initial,
            )
        except VaultError as exc:
            console.print(f"[bold red]Vault error ({exc.kind.value}):[/] {exc}")
            sys.exit(1)

        console.print(
            f"  [green]Vault ready:[/] {config.users.database}"
            f" ({len(opened)} identit{'y' if len(opened) == 1 else 'ies'})\n"
        )

    @vault.command("add")
    @config_option
    @click.option("--name", required=True, help="Display name used in commits.")
    @click.option("--email", required=True, help="Email used in commits.")
    @click.option("--url", required=True, help="IndieAuth profile URL.")
    @click.option("--admin", is_flag=True, help="Grant the administrator role.")
    def vault_add(config_path, name, email, url, admin):
        """Add an identity that may edit the wiki."""
        from pydantic import ValidationError as ModelValidationError

        from ..errors import AlreadyExists, VaultError
        from ..models import Identity, Role
        from ..vault import CredentialVault

        config = load_or_exit(config_path)
        try:
            identity = Identity(display_name=name, email=email, profile_url=url)
        except ModelValidationError as exc:
            console.print(f"[red]Invalid identity:[/] {exc.errors()[0]['msg']}")
            sys.exit(1)

        try:
            opened = CredentialVault.unlock_from_files(config.users.database, config.users.password)
            record = opened.add(identity, Role.ADMINISTRATOR if admin else Role.STANDARD)
        except AlreadyExists as exc:
            console.print(f"[yellow]Already in vault:[/] {exc.profile_url}")
            sys.exit(1)
        except VaultError as exc:
            console.print(f"[bold red]Vault error ({exc.kind.value}):[/] {exc}")
            sys.exit(1)

        console.print(
            f"  [green]Added[/] [bold]{record.identity.display_name}[/]"
            f" ({record.identity.profile_url}) as [cyan]{record.role.value}[/]"
        )

    @vault.command("list")
    @config_option
    def vault_list(config_path):
        """Show every identity in the vault."""
        from ..errors import VaultError
        from ..vault import CredentialVault

        config = load_or_exit(config_path)
        try:
            opened = CredentialVault.unlock_from_files(config.users.database, config.users.password)
        except VaultError as exc:
            console.print(f"[bold red]Vault error ({exc.kind.value}):[/] {exc}")
            sys.exit(1)

        records = opened.records()
        if not records:
            console.print("\n  [dim]Vault is empty.[/]\n")
            return

        table = Table(title="Identities", show_lines=True)
        table.add_column("Name", style="bold")
        table.add_column("Email")
        table.add_column("Profile URL", style="cyan")
        table.add_column("Role")
        table.add_column("Added", style="dim")
        for record in records:
            table.add_row(
                record.identity.display_name,
                record.identity.email,
                record.identity.profile_url,
                record.role.value,
                record.created_at.strftime("%Y-%m-%d"),
            )
        console.print(table)
