"""
Quota Ledger CLI

Commands:
  serve           - Run the API server
  summary         - Show a user's balance and recent grants
  grant           - Issue a grant to a user
  consume         - Debit quota from a user
  products        - List purchasable products
  process-events  - Drain waiting outbox events
"""

import argparse
import os
import sys


def _ledger():
    from billing.pricing import PriceTable
    from ledger.config import LedgerConfig
    from ledger.service import QuotaLedger

    return QuotaLedger(price_table=PriceTable.load(), config=LedgerConfig.from_env())


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Quota Ledger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_summary(args):
    """Show a user's balance and recent grants."""
    ledger = _ledger()
    summary = ledger.summary(args.user)

    print(f"Quota for {args.user}")
    print("=" * 40)
    print(f"Granted:   {summary.granted}")
    print(f"Used:      {summary.used}")
    print(f"Remaining: {summary.remaining}")

    grants = ledger.details(args.user)
    if grants:
        print()
        print("Grants:")
        for grant in grants:
            state = "expired" if grant.expired else "active"
            print(
                f"  {grant.grant_id}  {grant.remaining}/{grant.amount}  "
                f"expires {grant.period_end.date()}  {state}  {grant.note}"
            )

    debt = ledger.debt_ledger.total_for_user(args.user)
    if debt:
        print()
        print(f"Outstanding debt: {debt}")


def cmd_grant(args):
    """Issue a grant."""
    from ledger.errors import InvalidAmountError
    from ledger.grants import expires_in

    ledger = _ledger()
    try:
        grant_id = ledger.create_grant(
            args.user,
            args.amount,
            expires_in(args.days),
            note=args.note,
        )
    except InvalidAmountError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Granted {args.amount} to {args.user} for {args.days} days")
    print(f"  Grant: {grant_id}")


def cmd_consume(args):
    """Debit quota."""
    from ledger.errors import InsufficientFundsError, InvalidAmountError

    ledger = _ledger()
    try:
        if args.check:
            ledger.check_quota(args.user, args.amount)
        record = ledger.consume(
            args.user,
            args.amount,
            {"tag": args.tag, "models": args.model or []},
        )
    except (InsufficientFundsError, InvalidAmountError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Consumed {record.amount_debited} from {args.user}")
    for grant_id, amount in record.grants_drawn.items():
        print(f"  {grant_id}: {amount}")
    if record.debt_amount:
        print(f"  Debt recorded: {record.debt_amount}")


def cmd_products(args):
    """List products."""
    from billing.pricing import PriceTable

    table = PriceTable.load()
    for product in table.products:
        marker = " *" if product.recommend else ""
        print(
            f"{product.id:<12} {product.quota:>6} coins  "
            f"{product.retail_price / 100:>7.2f}  {product.expire_policy.text}{marker}"
        )


def cmd_process_events(args):
    """Drain waiting outbox events."""
    ledger = _ledger()
    processed = ledger.process_events(args.limit)
    print(f"Processed {processed} event(s)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Quota Ledger - prepaid quota for metered AI usage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # summary
    summary_parser = subparsers.add_parser("summary", help="Show a user's quota")
    summary_parser.add_argument("user", help="User ID")

    # grant
    grant_parser = subparsers.add_parser("grant", help="Issue a grant")
    grant_parser.add_argument("user", help="User ID")
    grant_parser.add_argument("amount", type=int, help="Units of quota")
    grant_parser.add_argument("--days", type=int, default=30, help="Days until expiry")
    grant_parser.add_argument("--note", default="", help="Free-form note")

    # consume
    consume_parser = subparsers.add_parser("consume", help="Debit quota")
    consume_parser.add_argument("user", help="User ID")
    consume_parser.add_argument("amount", type=int, help="Units of quota")
    consume_parser.add_argument("--tag", default="cli", help="Usage tag")
    consume_parser.add_argument("--model", action="append", help="Model involved (repeatable)")
    consume_parser.add_argument("--check", action="store_true", help="Refuse when the balance is short")

    # products
    subparsers.add_parser("products", help="List products")

    # process-events
    events_parser = subparsers.add_parser("process-events", help="Drain the outbox")
    events_parser.add_argument("--limit", type=int, default=100)

    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "summary":
        cmd_summary(args)
    elif args.command == "grant":
        cmd_grant(args)
    elif args.command == "consume":
        cmd_consume(args)
    elif args.command == "products":
        cmd_products(args)
    elif args.command == "process-events":
        cmd_process_events(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
