"""
CSV record source and account snapshot sink.

Input is a header row naming ``type, client, tx, amount`` followed by one
transaction per line. Cells are trimmed, blank lines skipped, and rows for
dispute/resolve/chargeback may omit the trailing amount cell.
"""

import csv
import io
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TextIO, Tuple, Union

from pydantic import ValidationError

from errors import MalformedRecordError
from models import AccountSnapshot, TransactionRecord, parse_identifier

REQUIRED_FIELDS = ("type", "client", "tx")
RECORD_FIELDS = REQUIRED_FIELDS + ("amount",)
SNAPSHOT_FIELDS = ("client", "available", "held", "total", "locked")

LOOKUP_STRATEGIES = ("rescan", "index")


def _rows(stream: TextIO) -> Iterator[Tuple[int, List[str]]]:
    reader = csv.reader(stream)
    while True:
        try:
            row = next(reader, None)
        except csv.Error as exc:
            raise MalformedRecordError(str(exc), reader.line_num) from exc
        if row is None:
            return
        cells = [cell.strip() for cell in row]
        if not any(cells):
            continue
        # Undecodable bytes arrive as lone surrogates (surrogateescape).
        try:
            "".join(cells).encode("utf-8")
        except UnicodeEncodeError:
            raise MalformedRecordError("row is not valid UTF-8", reader.line_num) from None
        yield reader.line_num, cells


def _read_header(rows: Iterator[Tuple[int, List[str]]]) -> Optional[Dict[str, int]]:
    """Map column names to positions. Returns None for an empty input."""
    for line, cells in rows:
        columns = {name.lower(): index for index, name in enumerate(cells)}
        missing = [name for name in REQUIRED_FIELDS if name not in columns]
        if missing:
            raise MalformedRecordError(f"header is missing column(s): {', '.join(missing)}", line)
        return columns
    return None


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'record'}: {error['msg']}"
        for error in exc.errors()
    )


def parse_record(cells: List[str], columns: Dict[str, int], line: Optional[int] = None) -> TransactionRecord:
    """Validate one row of cells into a ``TransactionRecord``."""
    data = {}
    for name in RECORD_FIELDS:
        index = columns.get(name)
        if index is not None and index < len(cells):
            data[name] = cells[index]
    try:
        return TransactionRecord.model_validate(data)
    except ValidationError as exc:
        raise MalformedRecordError(_describe(exc), line) from exc


def _tx_of(cells: List[str], tx_index: int) -> Optional[int]:
    try:
        return parse_identifier(cells[tx_index])
    except (IndexError, ValueError):
        return None


class RecordSource(ABC):
    """Ordered stream of transaction records that can re-locate past records."""

    @abstractmethod
    def __iter__(self) -> Iterator[TransactionRecord]:
        """Yield records in input order. Raises MalformedRecordError on bad input."""
        pass

    @abstractmethod
    def find(self, tx: int, before: int) -> Optional[TransactionRecord]:
        """Return the deposit/withdrawal with id ``tx`` among the first ``before`` records."""
        pass


class CsvRecordSource(RecordSource):
    """CSV source where every scan opens its own stream.

    ``find`` rescans from the top of the input each time it is called, so its
    cost grows with the position of the dispute being resolved.
    """

    def __init__(self, opener: Callable[[], TextIO], name: str = "<stream>"):
        self._opener = opener
        self.name = name

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "CsvRecordSource":
        path = Path(path)
        return cls(
            lambda: path.open(newline="", encoding="utf-8", errors="surrogateescape"),
            name=str(path)
        )

    @classmethod
    def from_text(cls, text: str) -> "CsvRecordSource":
        return cls(lambda: io.StringIO(text, newline=""), name="<text>")

    def __iter__(self) -> Iterator[TransactionRecord]:
        with self._opener() as stream:
            rows = _rows(stream)
            columns = _read_header(rows)
            if columns is None:
                return
            for line, cells in rows:
                yield parse_record(cells, columns, line)

    def find(self, tx: int, before: int) -> Optional[TransactionRecord]:
        with self._opener() as stream:
            rows = _rows(stream)
            columns = _read_header(rows)
            if columns is None:
                return None
            tx_index = columns["tx"]
            for position, (line, cells) in enumerate(rows):
                if position >= before:
                    break
                # Only rows with a matching id pay for full validation.
                if _tx_of(cells, tx_index) != tx:
                    continue
                record = parse_record(cells, columns, line)
                if record.kind.moves_funds:
                    return record
        return None


class IndexedRecordSource(RecordSource):
    """Wraps a source and indexes deposits/withdrawals as they are yielded.

    The index only ever holds records that iteration has already passed, so
    ``find`` sees exactly what a bounded rescan would.
    """

    def __init__(self, source: RecordSource):
        self.source = source
        self.index: Dict[int, TransactionRecord] = {}

    def __iter__(self) -> Iterator[TransactionRecord]:
        self.index.clear()
        for record in self.source:
            if record.kind.moves_funds:
                self.index.setdefault(record.tx, record)
            yield record

    def find(self, tx: int, before: int) -> Optional[TransactionRecord]:
        return self.index.get(tx)


def with_lookup_strategy(source: CsvRecordSource, strategy: str) -> RecordSource:
    if strategy == "rescan":
        return source
    if strategy == "index":
        return IndexedRecordSource(source)
    raise ValueError(f"Unknown lookup strategy: {strategy}")


def format_amount(value) -> str:
    return f"{value:.4f}"


class CsvSnapshotSink:
    """Writes account snapshots as CSV rows, one call per account."""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self._writer = csv.writer(stream, lineterminator="\n")
        self._header_written = False
        self.count = 0

    def __call__(self, snapshot: AccountSnapshot) -> None:
        self._write_header()
        self._writer.writerow([
            snapshot.client,
            format_amount(snapshot.available),
            format_amount(snapshot.held),
            format_amount(snapshot.total),
            "true" if snapshot.locked else "false",
        ])
        self.count += 1

    def finish(self) -> None:
        """Ensure the header is present even when no account was written."""
        self._write_header()
        self.stream.flush()

    def _write_header(self) -> None:
        if not self._header_written:
            self._writer.writerow(SNAPSHOT_FIELDS)
            self._header_written = True
