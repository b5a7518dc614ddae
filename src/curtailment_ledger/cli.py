"""Command-line entrypoint for ingestion, yield processing and reconciliation."""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

from loguru import logger

from curtailment_ledger.api import serve
from curtailment_ledger.config import PipelineSettings
from curtailment_ledger.domain import Scope, utc_now
from curtailment_ledger.errors import MissingParameterError, PipelineError, RegistryError
from curtailment_ledger.ingestion import CancellationToken
from curtailment_ledger.logs import configure_logging
from curtailment_ledger.pipeline import (
    IngestionPipeline,
    PipelineContext,
    build_context,
    parse_period_range,
)
from curtailment_ledger.reconciliation import ReconciliationAuditor, ScopeReport
from curtailment_ledger.storage import Database
from curtailment_ledger.yields import SqlDifficultyStore

EXIT_OK = 0
EXIT_DRIFTED = 1
EXIT_USAGE = 2


def _iso_date(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {text!r}; use YYYY-MM-DD") from None


def _scope(text: str) -> Scope:
    try:
        return Scope.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _periods(text: str) -> list[int]:
    try:
        return parse_period_range(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="curtailment-ledger",
        description="Ingest, derive and reconcile wind curtailment settlement records",
    )
    parser.add_argument("--env-file", type=Path, help="Read settings from this .env file")
    parser.add_argument("--database-url", type=str, help="Override DATABASE_URL")
    parser.add_argument("--registry", type=Path, help="Override the unit registry path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    ingest = sub.add_parser("ingest", help="Ingest settlement periods for a date")
    ingest.add_argument("date", type=_iso_date, help="Settlement date (YYYY-MM-DD)")
    ingest.add_argument("--end", type=_iso_date, help="Ingest through this date (inclusive)")
    ingest.add_argument("--periods", type=_periods, help="Period range, e.g. 1-48 or 18")
    ingest.add_argument("--timeout", type=float, help="Abandon fetching after N seconds")

    yields = sub.add_parser("yields", help="Recalculate yields for a date")
    yields.add_argument("date", type=_iso_date, help="Settlement date (YYYY-MM-DD)")

    difficulty = sub.add_parser("set-difficulty", help="Store the network difficulty for a date")
    difficulty.add_argument("date", type=_iso_date, help="Date (YYYY-MM-DD)")
    difficulty.add_argument("value", type=float, help="Network difficulty")

    reconcile = sub.add_parser("reconcile", help="Scan and repair a day, month or year")
    reconcile.add_argument("scope", type=_scope, help="YYYY, YYYY-MM or YYYY-MM-DD")
    reconcile.add_argument("--max-cycles", type=int, help="Repair cycles before giving up")
    reconcile.add_argument(
        "--verify-upstream", action="store_true", help="Compare sample periods with upstream"
    )

    status = sub.add_parser("status", help="Scan a scope without repairing")
    status.add_argument("scope", type=_scope, help="YYYY, YYYY-MM or YYYY-MM-DD")
    status.add_argument(
        "--verify-upstream", action="store_true", help="Compare sample periods with upstream"
    )

    api = sub.add_parser("serve", help="Run the read-only status API")
    api.add_argument("--host", default="127.0.0.1")
    api.add_argument("--port", type=int, default=8000)
    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    settings = PipelineSettings.from_env(args.env_file)
    overrides: dict[str, object] = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.registry:
        overrides["registry_path"] = args.registry
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return settings.model_copy(update=overrides) if overrides else settings


def print_report(report: ScopeReport) -> None:
    before, after = report.before, report.after
    print(f"Scope {report.scope.key}: {report.state.value.upper()}")
    print("=" * 40)
    print(f"Dates examined:    {after.dates}")
    print(f"Records:           {before.records} -> {after.records}")
    print(f"Ingested periods:  {before.ingested_periods} -> {after.ingested_periods} / {after.expected_periods}")
    print(f"Yields:            {before.yields} -> {after.yields} / {after.expected_yields}")
    if after.provisional_periods:
        print(f"Provisional:       {after.provisional_periods}")
    if report.cycles:
        print(f"Repair cycles:     {report.cycles}")
    if report.findings:
        print("\nFindings:")
        for finding in report.findings:
            print(f"- {finding}")
    for note in report.notes:
        print(f"note: {note}")
    if report.error is not None:
        print(f"\nerror: {report.error}")


def run(args: argparse.Namespace, context: PipelineContext) -> int:
    """Execute a parsed command against an existing context."""
    today = utc_now().date()

    if args.command == "ingest":
        end = args.end or args.date
        if args.date > today or end > today:
            logger.error("Cannot ingest future dates (today is {})", today.isoformat())
            return EXIT_USAGE
        cancel = CancellationToken.with_timeout(args.timeout) if args.timeout else None
        pipeline = IngestionPipeline(context)
        reports = pipeline.ingest_range(args.date, end, args.periods, cancel)
        # only full-day runs are scanned
        auditor = ReconciliationAuditor(context) if args.periods is None else None
        drifted = False
        for r in reports:
            print(
                f"{r.settlement_date.isoformat()}: {r.record_count} records, "
                f"{r.total_volume_mwh:.2f} MWh, £{r.total_payment:.2f}, "
                f"{len(r.failed)} failed period(s)"
            )
            if r.provisional:
                print(f"  {len(r.provisional)} provisional period(s) await the settlement lag")
            if r.yield_error:
                print(f"  yields skipped: {r.yield_error}")
            drifted = drifted or not r.ok or r.yield_error is not None
            if auditor is not None:
                scan = auditor.scan(Scope.for_day(r.settlement_date))
                print(f"  status: {scan.state.value}")
                for finding in scan.findings:
                    print(f"  - {finding}")
                drifted = drifted or not scan.consistent
        return EXIT_DRIFTED if drifted else EXIT_OK

    if args.command == "yields":
        try:
            result = IngestionPipeline(context).process_yields(args.date)
        except MissingParameterError as exc:
            logger.error("{}", exc)
            return EXIT_DRIFTED
        print(f"{args.date.isoformat()}: {result.yield_count} yields (difficulty {result.difficulty:.6g})")
        for model, total in result.totals.items():
            print(f"  {model}: {total:.8f} BTC")
        return EXIT_OK

    if args.command == "serve":
        serve(context, host=args.host, port=args.port)
        return EXIT_OK

    auditor = ReconciliationAuditor(context)
    if args.command == "status":
        report = auditor.scan(args.scope, verify_upstream=args.verify_upstream)
    elif args.command == "reconcile":
        report = auditor.reconcile(
            args.scope, max_cycles=args.max_cycles, verify_upstream=args.verify_upstream
        )
    else:
        raise ValueError(f"Unknown command {args.command!r}")
    print_report(report)
    return EXIT_OK if report.consistent else EXIT_DRIFTED


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = load_settings(args)
    configure_logging(settings.log_level, settings.log_file)

    if args.command == "init-db":
        database = Database(settings.database_url)
        database.init_schema()
        database.dispose()
        print(f"Initialised schema at {settings.database_url}")
        return EXIT_OK

    if args.command == "set-difficulty":
        database = Database(settings.database_url)
        database.init_schema()
        try:
            SqlDifficultyStore(database).set(args.date, args.value)
        except ValueError as exc:
            logger.error("{}", exc)
            return EXIT_USAGE
        finally:
            database.dispose()
        print(f"{args.date.isoformat()}: difficulty {args.value:.6g}")
        return EXIT_OK

    try:
        context = build_context(settings)
    except RegistryError as exc:
        logger.error("{}", exc)
        return EXIT_USAGE
    try:
        return run(args, context)
    except PipelineError as exc:
        logger.error("{}: {}", type(exc).__name__, exc)
        return EXIT_DRIFTED
    finally:
        context.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
