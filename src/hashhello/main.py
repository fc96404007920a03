"""
hashhello - Command line entry point.

Manages the local account without a running transport: create an
identity or import one from a login key or backup, show it, edit
contacts, list stored chats, export backups and change the master
password.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .backup import read_bundle
from .client import HelloClient
from .config import Config
from .constants import CONFIG_FILENAME, DEFAULT_DATA_DIR, LOG_FILENAME, LOGS_DIR
from .crypto import format_numeric_id
from .errors import ConfigError, HelloError
from .utils import format_timestamp, setup_logging, truncate_string

console = Console()


def _ask_password(prompt: str = "Master password") -> str:
    return Prompt.ask(prompt, password=True, console=console)


def _new_password() -> Optional[str]:
    password = Prompt.ask("New master password", password=True, console=console)
    again = Prompt.ask("Repeat password", password=True, console=console)
    if password != again:
        console.print("[red]Passwords do not match.[/red]")
        return None
    if not password:
        console.print("[red]Password cannot be empty.[/red]")
        return None
    return password


async def _login(client: HelloClient) -> None:
    hint = client.saved_numeric_id()
    label = f"Master password for {format_numeric_id(hint)}" if hint else "Master password"
    await client.login(_ask_password(label))


def _print_identity(client: HelloClient, show_key: bool = False) -> None:
    identity = client.identity
    table = Table(title="Your identity", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Number", identity.formatted_number)
    table.add_row("Data directory", str(client.data_dir))
    if show_key:
        table.add_row("Login key", identity.login_credential())
    console.print(table)
    if show_key:
        console.print("[yellow]Keep the login key secret. Anyone holding it is you.[/yellow]")


async def cmd_generate(client: HelloClient, args: argparse.Namespace) -> int:
    if client.storage.has_identity() and not args.force:
        console.print("[red]An identity already exists here. Use --force to replace it.[/red]")
        return 1
    password = _new_password()
    if password is None:
        return 1
    await client.create_account(password, overwrite=args.force)
    _print_identity(client, show_key=True)
    return 0


async def cmd_whoami(client: HelloClient, args: argparse.Namespace) -> int:
    await _login(client)
    _print_identity(client, show_key=args.show_key)
    return 0


async def cmd_contacts(client: HelloClient, args: argparse.Namespace) -> int:
    await _login(client)

    if args.contacts_command == "add":
        peer_id = client.contacts.set_name(args.number, args.name)
        console.print(f"Saved {format_numeric_id(peer_id)} as [bold]{args.name.strip()}[/bold]")
    elif args.contacts_command == "remove":
        if not client.contacts.remove(args.number):
            console.print("[yellow]No such contact.[/yellow]")
            return 1
        console.print("Contact removed")
    else:
        table = Table(title="Contacts")
        table.add_column("Name", style="bold")
        table.add_column("Number", style="cyan")
        for peer_id, name in client.contacts.all():
            table.add_row(name, format_numeric_id(peer_id))
        console.print(table)

    await client.flush()
    return 0


async def cmd_chats(client: HelloClient, args: argparse.Namespace) -> int:
    await _login(client)
    table = Table(title="Chats")
    table.add_column("Peer", style="bold")
    table.add_column("Last message")
    table.add_column("Unread", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Last activity", style="dim")
    for entry in client.chat_summaries():
        table.add_row(
            entry["name"],
            truncate_string(entry["lastMessage"], 40),
            str(entry["unread"] or ""),
            str(entry["messages"]),
            format_timestamp(entry["timestamp"]),
        )
    console.print(table)
    return 0


async def cmd_export_backup(client: HelloClient, args: argparse.Namespace) -> int:
    await _login(client)
    path = await client.export_backup(Path(args.path))
    console.print(f"Backup written to [bold]{path}[/bold]")
    console.print("[yellow]The backup is not encrypted. Store it somewhere safe.[/yellow]")
    return 0


async def cmd_import_backup(client: HelloClient, args: argparse.Namespace) -> int:
    if client.storage.has_identity() and not args.force:
        console.print("[red]An identity already exists here. Use --force to replace it.[/red]")
        return 1
    pending = await read_bundle(Path(args.path))
    password = _new_password()
    if password is None:
        return 1
    await client.create_account(password, pending=pending, overwrite=args.force)
    console.print(
        f"Imported {len(pending.chats or {})} chat(s) and {len(pending.contacts or {})} contact(s)"
    )
    _print_identity(client)
    return 0


async def cmd_import_key(client: HelloClient, args: argparse.Namespace) -> int:
    if client.storage.has_identity() and not args.force:
        console.print("[red]An identity already exists here. Use --force to replace it.[/red]")
        return 1
    credential = Prompt.ask("Login key", password=True, console=console).strip()
    if not credential:
        console.print("[red]Login key cannot be empty.[/red]")
        return 1
    password = _new_password()
    if password is None:
        return 1
    await client.create_account(password, credential=credential, overwrite=args.force)
    _print_identity(client)
    return 0


async def cmd_change_password(client: HelloClient, args: argparse.Namespace) -> int:
    old_password = _ask_password("Current master password")
    new_password = _new_password()
    if new_password is None:
        return 1
    await client.change_password(old_password, new_password)
    console.print("Master password changed")
    return 0


COMMANDS = {
    "generate": cmd_generate,
    "whoami": cmd_whoami,
    "contacts": cmd_contacts,
    "chats": cmd_chats,
    "export-backup": cmd_export_backup,
    "import-key": cmd_import_key,
    "import-backup": cmd_import_backup,
    "change-password": cmd_change_password,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hashhello",
        description="hashhello - end-to-end encrypted peer-to-peer messenger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hashhello generate                      # Create a new identity
  hashhello whoami --show-key             # Show your number and login key
  hashhello import-key                    # Log in on this device with a login key
  hashhello contacts add 123456789 Alice  # Name a contact
  hashhello export-backup backup.json     # Export a plaintext backup
        """,
    )
    parser.add_argument("--version", action="version", version=f"hashhello {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help=f"Data directory for identity, chats and contacts (default: {DEFAULT_DATA_DIR})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Create a new identity")
    generate.add_argument("--force", action="store_true", help="Replace an existing identity")

    whoami = sub.add_parser("whoami", help="Show your number")
    whoami.add_argument("--show-key", action="store_true", help="Also show the login key")

    contacts = sub.add_parser("contacts", help="Manage contacts")
    contacts_sub = contacts.add_subparsers(dest="contacts_command")
    contacts_sub.add_parser("list", help="List contacts")
    add = contacts_sub.add_parser("add", help="Add or rename a contact")
    add.add_argument("number", help="9-digit number")
    add.add_argument("name", help="Display name")
    remove = contacts_sub.add_parser("remove", help="Remove a contact")
    remove.add_argument("number", help="9-digit number")

    sub.add_parser("chats", help="List stored chats")

    export = sub.add_parser("export-backup", help="Export a plaintext backup bundle")
    export.add_argument("path", help="Output file")

    import_key = sub.add_parser("import-key", help="Create an account from a login key")
    import_key.add_argument("--force", action="store_true", help="Replace an existing identity")

    restore = sub.add_parser("import-backup", help="Create an account from a backup bundle")
    restore.add_argument("path", help="Backup file")
    restore.add_argument("--force", action="store_true", help="Replace an existing identity")

    sub.add_parser("change-password", help="Change the master password")

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the hashhello CLI."""
    args = build_parser().parse_args(argv)

    data_dir = Path(args.data_dir or DEFAULT_DATA_DIR).expanduser().resolve()

    try:
        config = Config(data_dir / CONFIG_FILENAME)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    config.set("storage", "data_dir", str(data_dir))

    level = "DEBUG" if args.debug else config.get("logging", "level", "INFO")
    log_dir = data_dir / LOGS_DIR if config.get("logging", "file_logging", True) else None
    setup_logging(
        level=level,
        log_dir=log_dir,
        console=config.get("logging", "console_logging", True),
        console_level=level if args.debug else "WARNING",
        log_filename=LOG_FILENAME,
    )

    client = HelloClient(data_dir, config=config)
    try:
        return asyncio.run(COMMANDS[args.command](client, args))
    except HelloError as e:
        console.print(f"[red]{e.message}[/red]")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
