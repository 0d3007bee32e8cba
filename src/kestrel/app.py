# =============================================================================
# Kestrel Command Line
# =============================================================================
# A small CLI over the sync core, mostly useful for running sync passes from
# cron or a terminal and for managing stored passwords.
#
#   kestrel accounts                 List configured accounts and their status
#   kestrel set-password NAME        Store the password for an account
#   kestrel sync [NAME ...]          Sync one, several or all accounts
#   kestrel remove-account NAME      Remove an account and its local data
#   kestrel search QUERY             Search the local mirror
#   kestrel drafts [NAME]            List stored drafts
#
# The app manages:
#   - Configuration loading
#   - Logging setup (rotating file in the XDG state dir, plus stderr)
#   - Running one command inside a MailEngine
# =============================================================================

import argparse
import asyncio
import getpass
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from kestrel import __app_name__, __version__
from kestrel.config import Config, ConfigError, print_paths
from kestrel.core import KestrelError
from kestrel.engine import MailEngine
from kestrel.imap import SyncResult
from kestrel.search import SearchScope

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(config: Config, debug: bool = False) -> None:
    """
    Configure the root logger.

    The log file gets the configured level; stderr only shows warnings
    unless --debug is given.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else config.logging.level)

    log_path = config.log_file_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if debug else logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(console)

    # aioimaplib logs every protocol line at DEBUG
    logging.getLogger("aioimaplib").setLevel(logging.INFO if debug else logging.WARNING)


# =============================================================================
# Commands
# =============================================================================

async def cmd_accounts(engine: MailEngine, args: argparse.Namespace) -> int:
    if not engine.config.accounts:
        print(f"No accounts configured. Edit {Config.config_file_path()}")
        return 0
    for account in engine.config.accounts.values():
        marker = "*" if account.name == engine.config.default_account else " "
        last_sync = account.last_sync.strftime("%Y-%m-%d %H:%M") if account.last_sync else "never"
        state = "enabled" if account.enabled else "disabled"
        print(
            f"{marker} {account.name:<16} {account.email:<32} "
            f"{account.sync_status.value:<10} last sync: {last_sync} ({state})"
        )
    return 0


async def cmd_set_password(engine: MailEngine, args: argparse.Namespace) -> int:
    account = engine.accounts.get(args.name)
    password = getpass.getpass(f"Password for {account.username}: ")
    await engine.accounts.set_password(account, password)
    print(f"Password stored in keyring as {account.keyring_service}")
    return 0


async def cmd_sync(engine: MailEngine, args: argparse.Namespace) -> int:
    if args.names:
        accounts = [engine.accounts.get(name) for name in args.names]
    else:
        accounts = list(engine.config.accounts.values())

    results = await engine.sync.sync_all(accounts)
    exit_code = 0
    for name, outcome in results.items():
        if isinstance(outcome, SyncResult):
            print(
                f"{name}: {outcome.new_messages} new, {outcome.updated_messages} updated, "
                f"{outcome.deleted_messages} deleted ({outcome.duration_seconds:.1f}s)"
            )
            for folder in outcome.full_resyncs:
                print(f"  full resync: {folder}")
            for error in outcome.errors:
                print(f"  error: {error}")
            if not outcome.success:
                exit_code = 1
        else:
            print(f"{name}: failed: {outcome}")
            exit_code = 1
    return exit_code


async def cmd_remove_account(engine: MailEngine, args: argparse.Namespace) -> int:
    account = engine.accounts.get(args.name)
    if not args.yes:
        answer = input(f"Remove account '{account.name}' and all its local mail? [y/N] ")
        if answer.strip().lower() != "y":
            print("Aborted")
            return 1
    await engine.accounts.remove_account(account)
    print(f"Removed {account.name}")
    return 0


async def cmd_search(engine: MailEngine, args: argparse.Namespace) -> int:
    account = engine.accounts.get(args.account) if args.account else None
    results = await engine.search.search(
        args.query, SearchScope(args.scope), account=account, limit=args.limit,
    )
    if not results:
        print("No matches")
        return 0
    for result in results:
        message = result.message
        date = message.date_sent.strftime("%Y-%m-%d") if message.date_sent else "          "
        print(f"{date}  {message.display_sender[:24]:<24}  {message.subject}")
        if result.snippet:
            print(f"            {result.match_field}: {result.snippet}")
    return 0


async def cmd_drafts(engine: MailEngine, args: argparse.Namespace) -> int:
    account = engine.accounts.get(args.name) if args.name else None
    drafts = await engine.drafts.list_drafts(account)
    if not drafts:
        print("No drafts")
        return 0
    for draft in drafts:
        to = ", ".join(draft.to) or "(no recipients)"
        print(f"{draft.id:>5}  {draft.modified_at:%Y-%m-%d %H:%M}  {to[:32]:<32}  {draft.subject or '(no subject)'}")
    return 0


COMMANDS = {
    "accounts": cmd_accounts,
    "set-password": cmd_set_password,
    "sync": cmd_sync,
    "remove-account": cmd_remove_account,
    "search": cmd_search,
    "drafts": cmd_drafts,
}


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Kestrel: mailbox sync core for a desktop mail client",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("accounts", help="List configured accounts")

    set_password = subparsers.add_parser("set-password", help="Store an account password")
    set_password.add_argument("name", help="Account name")

    sync = subparsers.add_parser("sync", help="Sync accounts")
    sync.add_argument("names", nargs="*", help="Accounts to sync (default: all enabled)")

    remove = subparsers.add_parser("remove-account", help="Remove an account and its data")
    remove.add_argument("name", help="Account name")
    remove.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    search = subparsers.add_parser("search", help="Search the local mirror")
    search.add_argument("query", help="Text to look for (case-insensitive)")
    search.add_argument(
        "--scope",
        choices=[scope.value for scope in SearchScope if scope is not SearchScope.FOLDER],
        default=SearchScope.ALL.value,
        help="Fields or property to search (default: all)",
    )
    search.add_argument("--account", help="Only this account")
    search.add_argument("--limit", type=int, default=50, help="Maximum results (default: 50)")

    drafts = subparsers.add_parser("drafts", help="List stored drafts")
    drafts.add_argument("name", nargs="?", help="Only this account")

    return parser.parse_args(argv)


async def run(config: Config, args: argparse.Namespace) -> int:
    async with MailEngine(config, config_path=args.config) as engine:
        return await COMMANDS[args.command](engine, args)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Kestrel.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration and sets up logging
        4. Runs the requested command

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    # Handle --paths flag
    if args.paths:
        print_paths(config)
        return 0

    if args.command is None:
        args.command = "accounts"

    setup_logging(config, args.debug)

    try:
        return asyncio.run(run(config, args))
    except KestrelError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
