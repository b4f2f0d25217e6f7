"""
DeCrown Billing CLI

Commands:
  serve             - Run the webhook and billing API server
  close-month       - Close an account's billing month from exported trip stops
  generate-invoice  - Generate the invoice of a frozen ledger
  poll              - Submit due payment attempts and run webhook redelivery
  dunning           - Mark past-due invoices overdue and escalate dunning
  verify-log        - Verify the webhook security log chain
  gc                - Remove expired webhook dedup records and old events
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict

import structlog

from .config import BillingSettings


def configure_logging(log_format: str = "json", level: str = "INFO") -> None:
    """Configure structlog for the process (JSON lines, or console when LOG_FORMAT=console)."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )


def _services(settings: BillingSettings):
    from .services import BillingServices
    return BillingServices(settings)


def _print(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_serve(args, settings):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting DeCrown Billing on {host}:{port}")

    uvicorn.run(
        "decrown_billing.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_close_month(args, settings):
    """Close a billing month from a JSON export of trip stops."""
    from .core.ledger import StaticUsageSource
    from .persistence.models import StopRecord

    with open(args.stops) as f:
        rows = json.load(f)
    source = StaticUsageSource(StopRecord.from_dict(row) for row in rows)

    services = _services(settings)
    ledger = services.aggregator(source).close_month(args.account, args.month)
    _print(ledger.to_dict())

    if args.invoice:
        invoice = services.invoice_generator.generate(ledger.id)
        _print(invoice.to_dict())


def cmd_generate_invoice(args, settings):
    """Generate the invoice for a frozen ledger."""
    services = _services(settings)
    invoice = services.invoice_generator.generate(args.ledger)
    _print(invoice.to_dict())

    if args.charge:
        attempt = services.payments.create_attempt(invoice.id)
        attempt = services.payments.submit(attempt.id)
        _print(attempt.to_dict())


def cmd_poll(args, settings):
    """Run the payment retry and webhook redelivery pollers once."""
    services = _services(settings)
    _print({
        "payments": services.payment_poller.run_once(),
        "redelivery": services.redelivery_poller.run_once(),
    })


def cmd_dunning(args, settings):
    """Mark past-due invoices overdue, then escalate dunning."""
    services = _services(settings)
    _print({
        "overdue": services.invoices.mark_overdue_past_due(),
        "dunning": services.dunning.run_once(),
    })


def cmd_verify_log(args, settings):
    """Verify the webhook security log."""
    services = _services(settings)
    if args.checkpoint:
        checkpoint = services.security_log.checkpoint()
        if checkpoint is not None:
            _print({"checkpoint": checkpoint.to_dict()})
    result = services.security_log.verify()
    _print(result.to_dict())
    if not result.valid:
        sys.exit(2)


def cmd_gc(args, settings):
    """Remove expired dedup records, old processed events and exhausted retries."""
    services = _services(settings)
    _print(services.pipeline.gc_expired(
        event_retention_days=args.event_days,
        failed_retry_retention_days=args.retry_days,
    ))


COMMANDS = {
    "serve": cmd_serve,
    "close-month": cmd_close_month,
    "generate-invoice": cmd_generate_invoice,
    "poll": cmd_poll,
    "dunning": cmd_dunning,
    "verify-log": cmd_verify_log,
    "gc": cmd_gc,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="DeCrown Billing - invoices, payments and webhook reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # close-month
    close_parser = subparsers.add_parser("close-month", help="Close a billing month")
    close_parser.add_argument("--account", required=True, help="Rider account ID")
    close_parser.add_argument("--month", required=True, help="Billing month, YYYY-MM")
    close_parser.add_argument("--stops", required=True, help="JSON file of trip stop records")
    close_parser.add_argument("--invoice", action="store_true", help="Generate the invoice as well")

    # generate-invoice
    invoice_parser = subparsers.add_parser("generate-invoice", help="Generate an invoice")
    invoice_parser.add_argument("ledger", help="Frozen ledger ID")
    invoice_parser.add_argument("--charge", action="store_true", help="Open and submit a payment attempt")

    # poll
    subparsers.add_parser("poll", help="Run payment retries and webhook redelivery once")

    # dunning
    subparsers.add_parser("dunning", help="Run dunning escalation once")

    # verify-log
    verify_parser = subparsers.add_parser("verify-log", help="Verify the webhook security log")
    verify_parser.add_argument("--checkpoint", action="store_true", help="Sign the current head first")

    # gc
    gc_parser = subparsers.add_parser("gc", help="Clean up expired webhook data")
    gc_parser.add_argument("--event-days", type=int, default=30, help="Keep processed events this long")
    gc_parser.add_argument("--retry-days", type=int, default=30, help="Keep exhausted retries this long")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return

    settings = BillingSettings.from_env()
    configure_logging(settings.log_format, os.environ.get("LOG_LEVEL", "INFO"))
    command(args, settings)


if __name__ == "__main__":
    main()
