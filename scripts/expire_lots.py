#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import UTC, datetime

from rewards.config import settings
from rewards.db.session import SessionFactory, dispose_database
from rewards.logging_setup import configure_logging
from rewards.services.balance_projection import snapshot
from rewards.services.expiration_service import expire_lots
from rewards.services.order_events import parse_timestamp
from rewards.services.platform_client import get_platform_client, mirror_customer_balance

logger = logging.getLogger("scripts.expire_lots")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire past-due reward lots")
    parser.add_argument("--as-of", help="ISO timestamp to expire against (defaults to now)")
    parser.add_argument("--customer-limit", type=int, default=500, help="Max customers per run")
    parser.add_argument("--no-mirror", action="store_true", help="Skip balance write-back to the platform")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    as_of = parse_timestamp(args.as_of, default=datetime.now(UTC))
    try:
        async with SessionFactory() as session:
            async with session.begin():
                result = await expire_lots(session, as_of=as_of, customer_limit=args.customer_limit)
                balances = [snapshot(customer) for customer in result.customers]

        if not args.no_mirror:
            client = get_platform_client()
            for balance in balances:
                await mirror_customer_balance(client, balance)
    finally:
        await dispose_database()

    print(
        f"Expired {result.lots_expired} lots worth {result.amount_expired} "
        f"for {len(balances)} customers (as of {as_of.isoformat()})."
    )
    return 0


def main() -> int:
    configure_logging(settings.log_level)
    return asyncio.run(run(parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
