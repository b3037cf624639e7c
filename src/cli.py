"""
Credit Ledger CLI

Commands:
  serve        - Run the API server
  init-db      - Create the schema and seed the rate catalog
  run-billing  - Run the daily fleet billing cycle (cron entrypoint)
  balance      - Show an account balance
  rates        - List, update or toggle service rates
"""

import argparse
import json
import os
import sys
from datetime import date

from core.config import LedgerConfig
from core.errors import FleetBillingError, LedgerError


def _state(args):
    from api.server import AppState

    return AppState(LedgerConfig.from_env(args.database_url))


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Credit Ledger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the schema and seed the default rate catalog."""
    state = _state(args)
    services = state.catalog.list_services()
    print(f"Database ready: {state.config.database_url}")
    print(f"  Services in catalog: {len(services)}")
    state.close()


def cmd_run_billing(args):
    """Run the daily fleet billing cycle."""
    state = _state(args)
    charged_date = date.fromisoformat(args.date) if args.date else None

    try:
        summary = state.fleet.run_billing_cycle(charged_date)
    except FleetBillingError as e:
        print(f"Billing failed: {e}")
        print(json.dumps(e.summary, indent=2))
        sys.exit(1)
    finally:
        state.close()

    if args.json:
        print(json.dumps(summary, indent=2))
        return

    print(f"Billing cycle for {summary['charged_date']}")
    print("=" * 40)
    for label in ("stores", "domains"):
        stats = summary[label]
        print(
            f"{label.capitalize():8} processed={stats['processed']} successful={stats['successful']} "
            f"failed={stats['failed']} skipped={stats['skipped']} deactivated={stats['deactivated']}"
        )
        for error in stats["errors"]:
            print(f"  error: {error['error']}")


def cmd_balance(args):
    """Show an account balance."""
    state = _state(args)
    info = state.reporting.get_credit_info(args.account, recent=0)
    state.close()

    print(f"Account: {args.account}")
    print(f"  Balance: {info['balance']:.4f}")
    print(f"  Purchased: {info['total_purchased']:.4f}")
    print(f"  Bonus: {info['total_bonus']:.4f}")
    print(f"  Used: {info['total_used']:.4f}")


def cmd_rates(args):
    """List, update or toggle service rates."""
    state = _state(args)

    try:
        if args.rates_command == "set":
            service = state.catalog.update_cost(args.key, args.cost, updated_by=args.by)
            print(f"{service.service_key}: {service.cost_per_unit} ({service.billing_type})")
        elif args.rates_command == "toggle":
            service = state.catalog.toggle_active(args.key, updated_by=args.by)
            print(f"{service.service_key}: {'active' if service.is_active else 'inactive'}")
        else:
            for service in state.catalog.list_services(category=args.category):
                status = "active" if service.is_active else "inactive"
                print(
                    f"{service.service_key:28} {service.cost_per_unit:>10} "
                    f"{service.billing_type:10} {service.service_category:20} {status}"
                )
    except LedgerError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        state.close()


def main():
    parser = argparse.ArgumentParser(
        description="Credit Ledger - prepaid credits and daily fleet billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create schema and seed rates")

    # run-billing
    billing_parser = subparsers.add_parser("run-billing", help="Run the daily billing cycle")
    billing_parser.add_argument("--date", help="Billing day (YYYY-MM-DD), defaults to today UTC")
    billing_parser.add_argument("--json", action="store_true", help="Print the full summary as JSON")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show account balance")
    balance_parser.add_argument("account", help="Account ID")

    # rates
    rates_parser = subparsers.add_parser("rates", help="Manage service rates")
    rates_sub = rates_parser.add_subparsers(dest="rates_command")
    list_parser = rates_sub.add_parser("list", help="List services")
    list_parser.add_argument("--category")
    set_parser = rates_sub.add_parser("set", help="Set cost per unit")
    set_parser.add_argument("key")
    set_parser.add_argument("cost")
    set_parser.add_argument("--by", help="Operator name")
    toggle_parser = rates_sub.add_parser("toggle", help="Toggle active state")
    toggle_parser.add_argument("key")
    toggle_parser.add_argument("--by", help="Operator name")
    rates_parser.set_defaults(category=None)

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "run-billing":
        cmd_run_billing(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "rates":
        cmd_rates(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
