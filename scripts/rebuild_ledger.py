#!/usr/bin/env python3
"""
Rebuild customer ledger caches from transaction history

Rewrites each customer's cached running balance, cylinder due counts and
balance checkpoints from a full replay. With --check nothing is written:
every customer is reconciled and the ones out of balance are reported.

Usage (from the project root):
    python scripts/rebuild_ledger.py --customer 42
    python scripts/rebuild_ledger.py --all
    python scripts/rebuild_ledger.py --all --check
"""
import sys
import asyncio
import argparse
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from lpg_ledger.core.config import settings  # noqa: E402
from lpg_ledger.core.exceptions import AppException  # noqa: E402
from lpg_ledger.core.logging import setup_logging  # noqa: E402
from lpg_ledger.db.database import AsyncSessionLocal, engine  # noqa: E402
from lpg_ledger.domain.services.ledger_service import LedgerService  # noqa: E402


async def _customer_ids(customer_id: int | None) -> list[int]:
    if customer_id is not None:
        return [customer_id]
    async with AsyncSessionLocal() as session:
        return await LedgerService(session).list_customer_ids()


async def check(customer_ids: list[int]) -> bool:
    all_balanced = True
    for customer_id in customer_ids:
        async with AsyncSessionLocal() as session:
            result = await LedgerService(session).reconcile(customer_id)
        ok = result["is_balanced"] and result["due_counts_match"] and result["checkpoints_verified"]
        status = "OK" if ok else "OUT OF BALANCE"
        print(
            f"  [{status}] customer {customer_id}: "
            f"system={result['system_balance']} calculated={result['calculated_balance']} "
            f"difference={result['difference']} dues_match={result['due_counts_match']} "
            f"checkpoints_verified={result['checkpoints_verified']}"
        )
        all_balanced = all_balanced and ok
    return all_balanced


async def rebuild(customer_ids: list[int]) -> bool:
    failed = 0
    for customer_id in customer_ids:
        async with AsyncSessionLocal() as session:
            try:
                result = await LedgerService(session).rebuild_customer_state(customer_id)
            except AppException as e:
                failed += 1
                print(f"  ✗ customer {customer_id}: {e.error_code.value} {e.message}")
                continue
        print(
            f"  ✓ customer {customer_id}: balance {result['previous_balance']} -> "
            f"{result['running_balance']}, {result['transactions_replayed']} transactions, "
            f"{result['checkpoints_written']} checkpoints"
        )
    return failed == 0


async def run(customer_id: int | None, check_only: bool) -> bool:
    try:
        customer_ids = await _customer_ids(customer_id)
        print(f"{'Checking' if check_only else 'Rebuilding'} {len(customer_ids)} customer(s)")
        if check_only:
            return await check(customer_ids)
        return await rebuild(customer_ids)
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Rebuild customer ledger caches and checkpoints")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--customer", type=int, help="Customer id to process")
    target.add_argument("--all", action="store_true", help="Process every customer")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only reconcile and report, do not write anything"
    )
    args = parser.parse_args()

    setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=False, app_name=settings.APP_NAME)

    success = asyncio.run(run(args.customer, args.check))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
