"""
Nostream - Command line entry point.

Offline utilities around the messaging core: key generation and
conversion, conversation tags, identity files, and inspection of the
synchronization state stored on disk.
"""

import argparse
import getpass
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .chat_store import ChatStore
from .config import Config
from .constants import (
    CHAT_DATA_FILENAME,
    CONFIG_FILENAME,
    IDENTITY_FILENAME,
    LOG_FILENAME,
    LOGS_DIR,
    SECONDS_PER_DAY,
)
from .errors import ErrorCode, NostreamError
from .identity import IdentityManager
from .keys import KeyMaterial, decode_public_key, encode_npub
from .logging_setup import setup_logging
from .storage import ChatStorage
from .tags import derive_tag

console = Console()
err_console = Console(stderr=True)


def _format_time(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _key_table(title: str, key_material: KeyMaterial, show_secret: bool) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Format", style="yellow")
    table.add_column("Value", style="white", overflow="fold")
    table.add_row("npub", key_material.npub)
    table.add_row("hex", key_material.public_key)
    if show_secret:
        table.add_row("nsec", f"[red]{key_material.nsec}[/]")
    return table


def cmd_keygen(args: argparse.Namespace, config: Config) -> int:
    key_material = KeyMaterial.generate()
    console.print(_key_table("New key", key_material, show_secret=True))
    console.print("[dim]Store the nsec safely. It cannot be recovered.[/]")
    return 0


def cmd_npub(args: argparse.Namespace, config: Config) -> int:
    console.print(encode_npub(decode_public_key(args.key)))
    return 0


def cmd_hex(args: argparse.Namespace, config: Config) -> int:
    console.print(decode_public_key(args.key))
    return 0


def cmd_tag(args: argparse.Namespace, config: Config) -> int:
    salt = args.salt or config.get("sync", "tag_salt")
    console.print(derive_tag(args.keys, salt))
    return 0


def cmd_ranges(args: argparse.Namespace, config: Config) -> int:
    data_file = Path(args.data_file) if args.data_file else config.data_dir / CHAT_DATA_FILENAME
    store = ChatStore.from_dict(
        ChatStorage(data_file).load(),
        lookback=config.get("sync", "lookback_days") * SECONDS_PER_DAY,
        freshness_buffer=config.get("sync", "freshness_minutes") * 60,
    )

    tags = [args.tag] if args.tag else store.tags()
    if not tags:
        console.print("[dim]No conversations stored[/]")
        return 0

    table = Table(title="Synchronization state", show_header=True, header_style="bold magenta")
    table.add_column("Tag", style="yellow")
    table.add_column("Messages", justify="right")
    table.add_column("Since", style="dim")
    table.add_column("Until", style="dim")
    table.add_column("Fetch?", justify="center")
    table.add_column("Missing ranges", style="cyan")

    for tag in tags:
        time_range = store.get_time_range(tag)
        missing = store.get_missing_ranges(tag)
        table.add_row(
            tag[:16],
            str(len(store.get_messages(tag))),
            _format_time(time_range.since if time_range else None),
            _format_time(time_range.until if time_range else None),
            "[green]yes[/]" if store.should_fetch_range(tag) else "no",
            "\n".join(f"{_format_time(r.since)} .. {_format_time(r.until)}" for r in missing) or "-",
        )

    console.print(table)
    return 0


def _read_password(confirm: bool = False) -> str:
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise NostreamError(ErrorCode.E002_INVALID_ARGUMENT, "Passwords do not match")
    return password


def cmd_identity(args: argparse.Namespace, config: Config) -> int:
    manager = IdentityManager(config.data_dir / IDENTITY_FILENAME)

    if args.action == "create":
        key_material = manager.create_identity(_read_password(confirm=True))
        console.print(_key_table("Identity created", key_material, show_secret=False))
    elif args.action == "import":
        secret = getpass.getpass("Private key (nsec or hex): ")
        key_material = manager.import_identity(secret, _read_password(confirm=True))
        console.print(_key_table("Identity imported", key_material, show_secret=False))
    elif args.action == "show":
        key_material = manager.load_identity(_read_password())
        if key_material is None:
            err_console.print("[red]No identity found or incorrect password[/]")
            return 1
        console.print(_key_table("Identity", key_material, show_secret=args.secret))
    elif args.action == "delete":
        if not manager.delete_identity(_read_password()):
            err_console.print("[red]No identity found or incorrect password[/]")
            return 1
        console.print("Identity deleted")
    return 0


def cmd_config(args: argparse.Namespace, config: Config) -> int:
    if config.config_path.exists() and not args.force:
        err_console.print(f"[red]{config.config_path} already exists (use --force)[/]")
        return 1
    Config.create_example(config.config_path)
    console.print(f"Wrote {config.config_path}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nostream",
        description="Nostream - private direct messages over Nostr relays",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nostream keygen                      # Generate a new key pair
  nostream npub <hex>                  # Convert a hex public key to npub
  nostream tag <npub1> <npub2>         # Conversation tag of two participants
  nostream ranges                      # Show stored synchronization state
        """,
    )
    parser.add_argument("--version", action="version", version=f"Nostream {__version__}")
    parser.add_argument("--config", type=str, default=None, help="Path to the configuration file")
    parser.add_argument("--data-dir", type=str, default=None, help="Data directory (overrides the config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("keygen", help="Generate a new key pair").set_defaults(func=cmd_keygen)

    npub = subparsers.add_parser("npub", help="Convert a public key to npub")
    npub.add_argument("key", help="Public key (hex or npub)")
    npub.set_defaults(func=cmd_npub)

    hex_parser = subparsers.add_parser("hex", help="Convert a public key to hex")
    hex_parser.add_argument("key", help="Public key (hex or npub)")
    hex_parser.set_defaults(func=cmd_hex)

    tag = subparsers.add_parser("tag", help="Derive the conversation tag of a participant set")
    tag.add_argument("keys", nargs="+", help="Every participant, yourself included")
    tag.add_argument("--salt", default=None, help="Tag salt (default: from config)")
    tag.set_defaults(func=cmd_tag)

    ranges = subparsers.add_parser("ranges", help="Show stored watermarks and missing ranges")
    ranges.add_argument("tag", nargs="?", default=None, help="Conversation tag (default: all)")
    ranges.add_argument("--data-file", default=None, help="Chat data file (default: in data dir)")
    ranges.set_defaults(func=cmd_ranges)

    identity = subparsers.add_parser("identity", help="Manage the encrypted identity file")
    identity.add_argument("action", choices=["create", "import", "show", "delete"])
    identity.add_argument("--secret", action="store_true", help="Also print the nsec (show only)")
    identity.set_defaults(func=cmd_identity)

    config = subparsers.add_parser("init-config", help="Write an example configuration file")
    config.add_argument("--force", action="store_true", help="Overwrite an existing file")
    config.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the nostream CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
        if args.data_dir:
            config.set("storage", "data_dir", str(Path(args.data_dir).expanduser()))
        if args.config is None and args.data_dir:
            config.config_path = config.data_dir / CONFIG_FILENAME

        log_file = None
        if config.get("logging", "file_logging") and args.command not in ("keygen", "npub", "hex", "tag"):
            log_file = config.data_dir / LOGS_DIR / LOG_FILENAME
        setup_logging(
            "DEBUG" if args.debug else config.get("logging", "level"),
            log_file=log_file,
            console=args.debug or config.get("logging", "console_logging"),
        )

        return args.func(args, config)
    except NostreamError as e:
        err_console.print(f"[red]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
