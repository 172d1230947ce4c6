"""Command-line entry point.

Usage:
    python -m limit_order_agent run [--dry-run]
    python -m limit_order_agent init-db
    python -m limit_order_agent create-account <wallet>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys

from pydantic import ValidationError

from limit_order_agent.config import Settings, get_settings
from limit_order_agent.custody.keystore import KeyCipher
from limit_order_agent.custody.wallets import WalletCustody
from limit_order_agent.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="limit-order-agent", description="Synthetic limit-order agent")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the monitor loop until interrupted")
    run.add_argument("--dry-run", action="store_true", help="Report triggered orders without signing")

    sub.add_parser("init-db", help="Create the database schema")

    create = sub.add_parser("create-account", help="Provision an agent wallet for an owner wallet")
    create.add_argument("wallet", help="Owner wallet address (0x...)")
    return parser


async def _run(settings: Settings) -> None:
    from limit_order_agent.agent import Agent

    await Agent(settings).run()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _create_account(settings: Settings, wallet: str) -> str:
    db = DatabaseManager(settings.database.url)
    try:
        key = settings.custody.encryption_key
        cipher = KeyCipher(key.get_secret_value()) if key is not None else None
        account = await WalletCustody(db, cipher).create_account(wallet)
        return account.agent_address
    finally:
        await db.dispose_async()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run" and args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})

    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    if args.command == "run":
        asyncio.run(_run(settings))
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        logger.info("Database schema ready")
        return 0

    if not _WALLET_RE.match(args.wallet):
        logger.error("Invalid wallet address: %s", args.wallet)
        return 2
    print(asyncio.run(_create_account(settings, args.wallet)))
    return 0


if __name__ == "__main__":
    sys.exit(main())
