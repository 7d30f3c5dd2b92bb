import csv
import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional, Sequence

from openpyxl import load_workbook

from ..exceptions import UnsupportedFormat

logger = logging.getLogger(__name__)

Row = Dict[str, Optional[str]]


class SourceRow(NamedTuple):
    row_number: int
    values: Optional[Row]
    error: Optional[str] = None


def _map_record(headers: Sequence[str], record: Sequence[Optional[str]]) -> Row:
    # Short rows are padded with None, extra cells are dropped. A column with
    # a blank header keeps its place under a positional key.
    row: Row = {}
    for index, header in enumerate(headers):
        row[header or f"column_{index + 1}"] = record[index] if index < len(record) else None
    return row


class CSVRowReader:
    """Stream data rows of a delimited text file, numbered from 1."""

    def __init__(self, file_path: Path, encoding: str = "utf-8-sig") -> None:
        self.file_path = Path(file_path)
        self.encoding = encoding

    def count_rows(self) -> int:
        """Count data rows (excluding header), including unparseable ones."""
        return sum(1 for _ in self.iter_rows())

    def iter_rows(self) -> Iterator[SourceRow]:
        with self.file_path.open(newline="", encoding=self.encoding) as csvfile:
            reader = csv.reader(csvfile, strict=True)
            try:
                headers = [header.strip() for header in next(reader)]
            except StopIteration:
                raise ValueError("CSV file must include a header row.")

            row_number = 0
            while True:
                try:
                    record = next(reader)
                except StopIteration:
                    break
                except csv.Error as exc:
                    row_number += 1
                    logger.debug("Skipping malformed CSV row %s in %s: %s", row_number, self.file_path, exc)
                    yield SourceRow(row_number, None, f"Malformed row: {exc}")
                    continue

                if not record:
                    continue  # blank line
                row_number += 1
                yield SourceRow(row_number, _map_record(headers, record))

    def __iter__(self) -> Iterator[SourceRow]:
        return self.iter_rows()


def _cell_to_text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


class SpreadsheetRowReader:
    """Read the first sheet of a workbook.

    The sheet is materialized in memory on first use. Row numbers are the
    visible sheet row numbers, so the first data row below the header is 2.
    """

    FIRST_DATA_ROW = 2

    def __init__(self, file_path: Path) -> None:
        self.file_path = Path(file_path)
        self._rows: Optional[List[Sequence[object]]] = None
        self._headers: List[str] = []

    def _load(self) -> List[Sequence[object]]:
        if self._rows is None:
            workbook = load_workbook(self.file_path, read_only=True, data_only=True)
            try:
                worksheet = workbook.worksheets[0]
                rows = list(worksheet.iter_rows(values_only=True))
            finally:
                workbook.close()

            if rows:
                self._headers = [(_cell_to_text(cell) or "").strip() for cell in rows[0]]
                rows = rows[1:]
            self._rows = rows
        return self._rows

    def count_rows(self) -> int:
        return sum(1 for _ in self.iter_rows())

    def iter_rows(self) -> Iterator[SourceRow]:
        rows = self._load()
        for index, cells in enumerate(rows):
            if all(cell is None or cell == "" for cell in cells):
                continue
            record = [_cell_to_text(cell) for cell in cells]
            yield SourceRow(index + self.FIRST_DATA_ROW, _map_record(self._headers, record))

    def __iter__(self) -> Iterator[SourceRow]:
        return self.iter_rows()


ROW_READERS = {
    "csv": CSVRowReader,
    "xlsx": SpreadsheetRowReader,
}


def get_row_reader(file_kind: str, file_path: Path):
    try:
        reader_class = ROW_READERS[file_kind]
    except KeyError:
        raise UnsupportedFormat(f"Unsupported file type '{file_kind}'.")
    return reader_class(file_path)
