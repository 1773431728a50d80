#!/usr/bin/env python3
"""
Scheduled billing jobs. Meant to be run from cron:

    python -m scripts.billing_jobs suspend-expired
    python -m scripts.billing_jobs cancel-stale --hours 24
    python -m scripts.billing_jobs upcoming-renewals --days 3
    python -m scripts.billing_jobs rotate-credentials
"""
import argparse
import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.config import STALE_PENDING_HOURS
from backend.core.database import engine, get_session_factory
from backend.models.payment_gateway import PaymentGateway
from backend.services import billing_cycle, transaction_ledger
from backend.services.encryption_service import rotate_credentials

logger = logging.getLogger("billing.jobs")


async def run(command: str, args: argparse.Namespace, session_factory: async_sessionmaker) -> Dict[str, Any]:
    async with session_factory() as db:
        if command == "suspend-expired":
            count = await billing_cycle.suspend_expired_subscriptions(db)
            return {"command": command, "suspended": count}

        if command == "cancel-stale":
            count = await transaction_ledger.cancel_stale_pending(db, timedelta(hours=args.hours))
            return {"command": command, "cancelled": count}

        if command == "upcoming-renewals":
            cycles = await billing_cycle.get_upcoming_renewals(db, days_ahead=args.days)
            return {
                "command": command,
                "count": len(cycles),
                "renewals": [
                    {
                        "user_id": c.user_id,
                        "package_id": c.package_id,
                        "next_billing_date": c.next_billing_date.isoformat(),
                        "amount": str(c.amount) if c.amount is not None else None,
                        "billing_period": c.billing_period,
                    }
                    for c in cycles
                ],
            }

        if command == "rotate-credentials":
            # Run after prepending the new key to ENCRYPTION_KEY
            rows = (await db.execute(select(PaymentGateway))).scalars().all()
            for row in rows:
                if row.api_credentials:
                    row.api_credentials = rotate_credentials(row.api_credentials)
            await db.commit()
            logger.info("Re-encrypted credentials for %d gateways", len(rows))
            return {"command": command, "gateways": len(rows)}

    raise SystemExit(f"Unknown command: {command}")


async def _main(args: argparse.Namespace) -> Dict[str, Any]:
    try:
        return await run(args.command, args, get_session_factory())
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run billing maintenance jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("suspend-expired", help="Move expired entitlements to the free package")

    stale = sub.add_parser("cancel-stale", help="Cancel pending transactions nobody completed")
    stale.add_argument("--hours", type=int, default=STALE_PENDING_HOURS)

    upcoming = sub.add_parser("upcoming-renewals", help="List entitlements ending soon")
    upcoming.add_argument("--days", type=int, default=3)

    sub.add_parser("rotate-credentials", help="Re-encrypt gateway credentials under the primary key")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    result = asyncio.run(_main(args))
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
