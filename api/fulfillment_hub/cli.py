"""
Fulfillment Hub command line.

Usage:
    python -m fulfillment_hub.cli init-db
    python -m fulfillment_hub.cli add-product P1 "Widget" --stock 10 --price 20.00
    python -m fulfillment_hub.cli fulfill cust1 P1:5:20.00 P2:1:3.50:0.1
    python -m fulfillment_hub.cli reconcile P1 P2
"""
from __future__ import annotations
from decimal import Decimal, InvalidOperation
from typing import List, Optional
import argparse
import asyncio
import json
import sys

from fulfillment_hub.settings import settings
from fulfillment_hub.database import close_db, create_schema, get_session_factory, init_db
from fulfillment_hub.errors import FulfillmentError
from fulfillment_hub.logging_setup import setup_logging
from fulfillment_hub.services.fulfillment import FulfillmentConfig, FulfillmentOrchestrator
from fulfillment_hub.services.orders import LineItem


def parse_line(value: str) -> LineItem:
    """PRODUCT:QTY:PRICE[:DISCOUNT]"""
    parts = value.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(f"expected PRODUCT:QTY:PRICE[:DISCOUNT], got {value!r}")
    try:
        return LineItem(
            product_id=parts[0],
            quantity=int(parts[1]),
            unit_price=Decimal(parts[2]),
            discount=Decimal(parts[3]) if len(parts) == 4 else Decimal("0"),
        )
    except (ValueError, InvalidOperation) as e:
        raise argparse.ArgumentTypeError(f"bad line {value!r}: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="fulfillment-hub", description="Fulfillment Hub tools")
    ap.add_argument("--db", default=None, help="Database URL (defaults to settings)")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables")

    p = sub.add_parser("add-product", help="Seed a product")
    p.add_argument("product_id")
    p.add_argument("name")
    p.add_argument("--stock", type=int, default=0)
    p.add_argument("--price", type=Decimal, default=Decimal("0"))
    p.add_argument("--reorder-threshold", type=int, default=0)

    p = sub.add_parser("fulfill", help="Fulfill an order")
    p.add_argument("customer_id")
    p.add_argument("lines", nargs="+", type=parse_line, metavar="PRODUCT:QTY:PRICE[:DISCOUNT]")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--idempotency-key", default=None)

    p = sub.add_parser("reconcile", help="Check initial stock + audit deltas against current stock")
    p.add_argument("product_ids", nargs="+")

    return ap


async def _run(args: argparse.Namespace) -> int:
    await init_db(args.db)
    try:
        if args.command == "init-db":
            await create_schema()
            print("Schema created")
            return 0

        orchestrator = FulfillmentOrchestrator.from_session_factory(
            get_session_factory(), FulfillmentConfig.from_settings(settings),
        )

        if args.command == "add-product":
            await orchestrator.add_product(
                args.product_id, args.name,
                unit_price=args.price,
                stock_quantity=args.stock,
                reorder_threshold=args.reorder_threshold,
            )
            print(f"Product {args.product_id} added with stock {args.stock}")
            return 0

        if args.command == "fulfill":
            result = await orchestrator.fulfill_order(
                args.customer_id, args.lines,
                timeout=args.timeout,
                idempotency_key=args.idempotency_key,
            )
            print(json.dumps({
                "order_id": result.order_id,
                "attempts": result.attempts,
                "replayed": result.replayed,
                "low_stock": result.low_stock,
            }))
            return 0

        if args.command == "reconcile":
            exit_code = 0
            for product_id in args.product_ids:
                report = await orchestrator.reconcile(product_id)
                flag = "OK" if report.consistent else "MISMATCH"
                print(f"{product_id}: expected={report.expected_stock} actual={report.actual_stock} {flag}")
                if not report.consistent:
                    exit_code = 2
            return exit_code

        return 1
    finally:
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings)
    try:
        return asyncio.run(_run(args))
    except FulfillmentError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
