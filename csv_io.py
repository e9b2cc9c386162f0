import csv
from typing import Dict, Iterable, Iterator, Optional, TextIO

import structlog
from pydantic import ValidationError

from errors import InputError
from models import DEFAULT_PRECISION, AccountSnapshot, TransactionEvent

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS = ("type", "client", "tx")
OUTPUT_COLUMNS = ("client", "available", "held", "total", "locked")


def read_transactions(path: str, strict: bool = False) -> Iterator[TransactionEvent]:
    """
    Stream events from a ``type,client,tx,amount`` CSV file in file order.

    Raises InputError if the file cannot be read or lacks a required column.
    Rows that do not parse are logged and skipped, unless ``strict`` is set,
    in which case the first one aborts the run.
    """
    try:
        handle = open(path, newline="", encoding="utf-8")
    except OSError as e:
        raise InputError(f"cannot open {path}: {e}") from e

    with handle:
        try:
            yield from _parse(handle, path, strict)
        except (csv.Error, UnicodeDecodeError) as e:
            raise InputError(f"cannot read {path}: {e}") from e


def _parse(handle: TextIO, path: str, strict: bool) -> Iterator[TransactionEvent]:
    reader = csv.DictReader(handle)
    if reader.fieldnames is None:
        raise InputError(f"{path} is empty")

    reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
    missing = [column for column in REQUIRED_COLUMNS if column not in reader.fieldnames]
    if missing:
        raise InputError(f"{path} is missing column(s): {', '.join(missing)}")

    for row in reader:
        event = _parse_row(row)
        if event is not None:
            yield event
            continue

        if strict:
            raise InputError(f"{path}:{reader.line_num}: malformed record {_clean(row)}")
        logger.warning("Skipping malformed record", line=reader.line_num, row=_clean(row))


def _clean(row: Dict[Optional[str], object]) -> Dict[str, Optional[str]]:
    # DictReader stores surplus fields under None; they carry nothing we use
    return {
        key: value.strip() if isinstance(value, str) else None
        for key, value in row.items()
        if key is not None
    }


def _parse_row(row: Dict[Optional[str], object]) -> Optional[TransactionEvent]:
    try:
        return TransactionEvent.model_validate(_clean(row))
    except ValidationError:
        return None


def format_amount(value, precision: int = DEFAULT_PRECISION) -> str:
    return f"{value:.{precision}f}"


def write_accounts(
    accounts: Iterable[AccountSnapshot],
    stream: TextIO,
    precision: int = DEFAULT_PRECISION
) -> None:
    """Write one ``client,available,held,total,locked`` row per account."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(OUTPUT_COLUMNS)
    for account in accounts:
        writer.writerow([
            account.client_id,
            format_amount(account.available, precision),
            format_amount(account.held, precision),
            format_amount(account.total, precision),
            str(account.locked).lower(),
        ])
