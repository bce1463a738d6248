#!/usr/bin/env python
"""Script to assign missing licenses to paid orders.

When a checkout completes while the license pool for a product is empty,
the webhook leaves the order paid and records an ``insufficient_inventory``
failure on the event row. After restocking, run this script for the
affected orders to bind the licenses they are still owed.

This script:
1. Loads each order and checks that it is paid
2. Compares its digital item quantities with the licenses already bound
3. Assigns the difference atomically through the assign_licenses_atomic RPC

Usage:
    python scripts/retry_license_assignment.py ORDER_ID [ORDER_ID ...]

Requirements:
    - SUPABASE_URL and SUPABASE_SECRET_KEY environment variables must be set
    - Licenses for the affected products must have been restocked

Note:
    - Safe to re-run: licenses already bound to the order count as assigned
    - Does not resend the license delivery email
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.supabase import get_supabase_client
from src.models.results import Err
from src.services.fulfillment_service import FulfillmentService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def retry_orders(order_ids: list[str], service: FulfillmentService) -> dict[str, int]:
    """Assign missing licenses for each order.

    Args:
        order_ids: Orders to remediate.
        service: Fulfillment service bound to the database.

    Returns:
        dict: Counts of orders fixed, already complete and failed, plus licenses assigned.
    """
    fixed = complete = failed = assigned = 0
    for order_id in order_ids:
        result = await service.assign_missing_licenses(order_id)
        if isinstance(result, Err):
            failed += 1
            logger.error("Order %s: %s (%s)", order_id, result.kind, result.detail)
            continue
        if result.value:
            fixed += 1
            assigned += result.value
            logger.info("Order %s: assigned %d license(s)", order_id, result.value)
        else:
            complete += 1
            logger.info("Order %s: nothing missing", order_id)
    return {"fixed": fixed, "complete": complete, "failed": failed, "assigned": assigned}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assign missing licenses to paid orders")
    parser.add_argument("order_ids", nargs="+", metavar="ORDER_ID", help="Order UUID(s) to remediate")
    return parser.parse_args(argv)


async def main() -> None:
    """Main entry point for the remediation script."""
    args = parse_args()
    service = FulfillmentService(get_supabase_client())

    results = await retry_orders(args.order_ids, service)

    logger.info("=" * 60)
    logger.info("Orders fixed: %d (%d license(s) assigned)", results["fixed"], results["assigned"])
    logger.info("Orders already complete: %d", results["complete"])
    logger.info("Failed: %d", results["failed"])
    logger.info("=" * 60)

    if results["failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
