"""Batch entry point: apply a CSV of transactions and print the final accounts.

Example::

    payments-engine transactions.csv > accounts.csv
"""
import argparse
import sys
from typing import List, Optional

import structlog

from config import get_settings, get_settings_for_environment
from csv_io import read_transactions, write_accounts
from engine import PaymentsEngine
from errors import InputError
from logging_setup import configure_logging
from repositories import InMemoryAccountRepository, InMemoryTransactionRepository

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payments-engine",
        description="Apply a CSV of transactions and write the resulting client accounts to stdout.",
    )
    parser.add_argument("input", help="CSV file with type,client,tx,amount columns")
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Load settings for this environment instead of the defaults",
    )
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first malformed row instead of skipping it",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings_for_environment(args.env) if args.env else get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_format)

    engine = PaymentsEngine(
        InMemoryAccountRepository(),
        InMemoryTransactionRepository(),
        precision=settings.amount_precision,
        rejection_log_size=settings.rejection_log_size,
    )

    try:
        accounts = engine.process(
            read_transactions(args.input, strict=args.strict or settings.strict_input)
        )
    except InputError as e:
        logger.error("Aborting run", input=args.input, error=str(e))
        return 1

    stats = engine.stats()
    logger.info(
        "Run complete",
        input=args.input,
        accounts=len(accounts),
        applied=stats.applied,
        rejected=stats.rejected,
        rejected_by_kind={kind.value: count for kind, count in stats.by_kind.items()},
    )

    write_accounts(accounts.values(), sys.stdout, settings.amount_precision)
    return 0


if __name__ == "__main__":
    sys.exit(main())
