#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio

from rewards.config import settings
from rewards.db.session import SessionFactory, dispose_database
from rewards.logging_setup import configure_logging
from rewards.services.integrity_service import check_ledger_integrity


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify cached balances and lot conservation")
    parser.add_argument("--verbose", action="store_true", help="List every customer, not only violations")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    try:
        async with SessionFactory() as session:
            reports = await check_ledger_integrity(session)
    finally:
        await dispose_database()

    failures = [report for report in reports if not report.ok]
    for report in reports:
        if report.ok and not args.verbose:
            continue
        status = "ok" if report.ok else "FAIL"
        print(
            f"- customer #{report.customer_id}: {status} cached={report.cached_balance} "
            f"ledger={report.ledger_balance} drift={report.balance_drift}"
        )
        for violation in report.lot_violations:
            print(
                f"    lot #{violation.lot_id}: amount={violation.amount_delta} "
                f"remaining={violation.remaining_amount} depleted={violation.depleted}"
            )

    print(f"Checked {len(reports)} customers, {len(failures)} with violations.")
    return 1 if failures else 0


def main() -> int:
    configure_logging(settings.log_level)
    return asyncio.run(run(parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
