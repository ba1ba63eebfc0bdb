#!/usr/bin/env python3
"""Apply a CSV file of transactions and print the resulting account balances."""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from config import get_settings
from errors import InvariantViolation, MalformedRecordError
from logging_config import configure_logging
from records import LOOKUP_STRATEGIES, CsvRecordSource, CsvSnapshotSink, with_lookup_strategy
from repositories import AccountLedger
from services import process_statement

EXIT_OK = 0
EXIT_MALFORMED_INPUT = 1
EXIT_INVARIANT_VIOLATION = 3
EXIT_UNREADABLE_INPUT = 4

logger = structlog.get_logger()


def _abort(status: int, ledger: AccountLedger, sink: CsvSnapshotSink, flush_partial: bool) -> int:
    if flush_partial:
        ledger.drain(sink)
        sink.finish()
    return status


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Process a transaction CSV and write account snapshots to stdout."
    )
    parser.add_argument("input", type=Path, help="Path to the transactions CSV")
    parser.add_argument(
        "--lookup",
        choices=LOOKUP_STRATEGIES,
        default=settings.lookup_strategy,
        help="How disputes locate the original transaction"
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Log level for stderr")
    args = parser.parse_args(argv)

    configure_logging(args.log_level, settings.log_format)

    source = with_lookup_strategy(CsvRecordSource.from_path(args.input), args.lookup)
    ledger = AccountLedger()
    sink = CsvSnapshotSink(sys.stdout)

    try:
        _, summary = process_statement(
            source, ledger=ledger, log_ignored=settings.log_ignored_transactions
        )
    except OSError as exc:
        logger.error("Cannot read input", path=str(args.input), error=str(exc))
        return EXIT_UNREADABLE_INPUT
    except MalformedRecordError as exc:
        logger.error("Malformed input", path=str(args.input), line=exc.line, detail=exc.detail)
        return _abort(EXIT_MALFORMED_INPUT, ledger, sink, settings.flush_partial_on_error)
    except InvariantViolation as exc:
        logger.error("Internal invariant violated", error=str(exc), exc_info=True)
        return _abort(EXIT_INVARIANT_VIOLATION, ledger, sink, settings.flush_partial_on_error)

    written = ledger.drain(sink)
    sink.finish()

    logger.info(
        "Statement written",
        accounts=written,
        records=summary.records,
        ignored=summary.ignored_count
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
