from __future__ import annotations

import argparse
import json

from stock_reservation.config import Settings
from stock_reservation.logging_setup import configure_logging
from stock_reservation.service import OrderDesk


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Drive the order desk against a data directory and print the result.")
    p.add_argument("--data-dir", type=str, default=None, help="Directory with products.json / orders.json / logs.json")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("stock", help="List stock counters")
    sub.add_parser("orders", help="List orders")
    sub.add_parser("logs", help="List audit entries")
    sub.add_parser("reset", help="Reset stock to the default catalog and drop all orders")

    s = sub.add_parser("submit", help="Submit an order (reserves stock)")
    s.add_argument("--product-id", type=str, required=True)
    s.add_argument("--qty", type=int, required=True)
    s.add_argument("--buyer-id", type=str, required=True)
    s.add_argument("--buyer-name", type=str, required=True)

    pay = sub.add_parser("pay", help="Report a payment outcome")
    pay.add_argument("order_id")
    pay.add_argument("outcome", choices=["success", "failed", "timeout"])

    ful = sub.add_parser("fulfill", help="Report a fulfillment outcome")
    ful.add_argument("order_id")
    ful.add_argument("outcome", choices=["success", "failed"])
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = Settings.from_env()
    if args.data_dir:
        settings.data_dir = args.data_dir
    configure_logging(settings.log_level)

    desk = OrderDesk.open(settings)
    if args.command == "stock":
        result = desk.list_stock()
    elif args.command == "orders":
        result = desk.list_orders()
    elif args.command == "logs":
        result = desk.list_audit()
    elif args.command == "reset":
        result = desk.reset_inventory()
    elif args.command == "submit":
        result = desk.submit_order(args.product_id, args.qty, args.buyer_id, args.buyer_name)
    elif args.command == "pay":
        result = desk.report_payment(args.order_id, args.outcome)
    else:
        result = desk.report_fulfillment(args.order_id, args.outcome)

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
