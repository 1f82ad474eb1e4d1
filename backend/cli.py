#!/usr/bin/env python3
"""CLI for Copilot token tracker backend sync.

Usage:
    copilot-backend <command>

Commands:
    sync               Sync local daily rollups to Azure Tables
    query              Query backend rollups for a day range
    policy             Show the effective sharing policy
    validate           Check credentials, table and data-plane access
    set-shared-key     Store the Storage Shared Key in the system keychain
    rotate-shared-key  Replace the stored Storage Shared Key
    clear-shared-key   Remove the stored Storage Shared Key
"""

import argparse
import asyncio
import json
import sys

from pydantic import ValidationError

from core.config import get_settings
from core.day_keys import add_days_utc, to_utc_day_key, utc_now
from core.errors import BackendError
from core.logger import configure_logging, get_logger
from schemas import QueryFilters
from services.backend_facade import BackendFacade

logger = get_logger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def cmd_sync(facade: BackendFacade, args: argparse.Namespace) -> int:
    """Run one sync pass (forced passes ignore the 5 minute throttle)."""
    result = await facade.sync_to_backend_store(force=args.force)
    _print_json(result.model_dump())
    return 1 if result.status == "failed" else 0


async def cmd_query(facade: BackendFacade, args: argparse.Namespace) -> int:
    """Query aggregated stats for a day range."""
    lookback_days = facade.get_filters().lookback_days
    end_day = args.end or to_utc_day_key(utc_now())
    start_day = args.start or add_days_utc(end_day, -(lookback_days - 1))
    filters = QueryFilters(
        lookback_days=lookback_days,
        model=args.model,
        workspace_id=args.workspace,
        machine_id=args.machine,
        user_id=args.user,
    )
    result = await facade.query_backend_rollups(filters, start_day, end_day)
    _print_json(result.model_dump(mode="json"))
    return 0


async def cmd_policy(facade: BackendFacade, args: argparse.Namespace) -> int:
    """Print the sharing policy computed from the current settings."""
    _print_json(
        {
            "configured": facade.is_configured(),
            "policy": facade.get_sharing_policy().model_dump(),
        }
    )
    return 0


async def cmd_validate(facade: BackendFacade, args: argparse.Namespace) -> int:
    """Validate credentials and RBAC by writing and deleting a probe entity."""
    if not facade.is_configured():
        logger.error("validate.not_configured")
        return 1
    await facade.validate_backend()
    logger.info("validate.ok", storage_account=facade.settings.storage_account)
    return 0


async def cmd_set_shared_key(facade: BackendFacade, args: argparse.Namespace) -> int:
    return 0 if await facade.set_backend_shared_key() else 1


async def cmd_rotate_shared_key(facade: BackendFacade, args: argparse.Namespace) -> int:
    return 0 if await facade.rotate_backend_shared_key() else 1


async def cmd_clear_shared_key(facade: BackendFacade, args: argparse.Namespace) -> int:
    return 0 if await facade.clear_backend_shared_key() else 1


COMMANDS = {
    "sync": cmd_sync,
    "query": cmd_query,
    "policy": cmd_policy,
    "validate": cmd_validate,
    "set-shared-key": cmd_set_shared_key,
    "rotate-shared-key": cmd_rotate_shared_key,
    "clear-shared-key": cmd_clear_shared_key,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="copilot-backend",
        description="Copilot token tracker backend sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("sync", help="Sync local rollups to Azure Tables")
    sync_parser.add_argument(
        "--force", action="store_true", help="Ignore the minimum sync interval"
    )

    query_parser = subparsers.add_parser("query", help="Query backend rollups")
    query_parser.add_argument("--start", help="First UTC day (YYYY-MM-DD)")
    query_parser.add_argument("--end", help="Last UTC day (YYYY-MM-DD), default today")
    query_parser.add_argument("--model", help="Only this model")
    query_parser.add_argument("--workspace", help="Only this workspace id")
    query_parser.add_argument("--machine", help="Only this machine id")
    query_parser.add_argument("--user", help="Only this user id")

    subparsers.add_parser("policy", help="Show the effective sharing policy")
    subparsers.add_parser("validate", help="Validate backend access")
    subparsers.add_parser("set-shared-key", help="Store the Storage Shared Key")
    subparsers.add_parser("rotate-shared-key", help="Replace the Storage Shared Key")
    subparsers.add_parser("clear-shared-key", help="Remove the Storage Shared Key")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    configure_logging()
    try:
        facade = BackendFacade(settings_provider=get_settings)
    except ValidationError as e:
        logger.error("config.invalid", errors=e.errors(include_url=False))
        return 2

    try:
        return asyncio.run(COMMANDS[args.command](facade, args))
    except (BackendError, ValueError) as e:
        logger.error("command.failed", command=args.command, error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
