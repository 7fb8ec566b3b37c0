from __future__ import annotations

import argparse
from collections.abc import Sequence

from readtube.app.config import load_settings
from readtube.app.logging_config import configure_cli_logging
from readtube.app.repositories.database import Database
from readtube.app.repositories.usage_ledger_repository import UsageLedgerRepository
from readtube.app.services.usage_guard import UsageGuard, UsageSummary
from readtube.app.telemetry import TelemetryClient


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect and top up per-caller transcription minutes.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Show a caller's usage.")
    show_parser.add_argument("caller_id", help="Caller id as sent in X-Caller-ID.")

    grant_parser = subparsers.add_parser("grant", help="Add minutes to a caller's grant.")
    grant_parser.add_argument("caller_id", help="Caller id as sent in X-Caller-ID.")
    grant_parser.add_argument(
        "--minutes",
        type=int,
        required=True,
        help="Minutes to add (must be positive).",
    )

    return parser.parse_args(argv)


def _print_summary(summary: UsageSummary) -> None:
    print("caller_id\tminutes_used\tminutes_granted\tremaining\tacquisitions\tpercent_used")
    print(
        "\t".join(
            [
                summary.caller_id,
                str(summary.minutes_used),
                str(summary.minutes_granted),
                str(summary.remaining_minutes),
                str(summary.acquisitions),
                f"{summary.percent_used:.1f}%",
            ]
        )
    )
    if not summary.enforced:
        print("Usage enforcement is disabled (READTUBE_USAGE_ENFORCEMENT_ENABLED=0).")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    configure_cli_logging(settings.log_level)
    database = Database(settings.db_path)
    database.initialize()
    guard = UsageGuard(
        ledger=UsageLedgerRepository(
            database,
            default_granted_minutes=settings.usage_default_granted_minutes,
        ),
        telemetry=TelemetryClient.disabled(),
        enforcement_enabled=settings.usage_enforcement_enabled,
    )

    if args.command == "grant":
        if args.minutes <= 0:
            print("--minutes must be positive.")
            return 2
        guard.grant(args.caller_id, args.minutes)
        print(f"Granted {args.minutes} minute(s) to {args.caller_id}.")

    _print_summary(guard.summary(args.caller_id))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
