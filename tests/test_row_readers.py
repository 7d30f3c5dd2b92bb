import csv
from datetime import datetime

import pytest

from codes.exceptions import UnsupportedFormat
from codes.utils.row_readers import CSVRowReader, SpreadsheetRowReader, get_row_reader


class TestCSVRowReader:
    def test_rows_are_numbered_from_one(self, write_csv):
        path = write_csv([["code"], ["AAA111"], ["BBB222"], ["CCC333"]])
        rows = list(CSVRowReader(path))

        assert [row.row_number for row in rows] == [1, 2, 3]
        assert [row.values["code"] for row in rows] == ["AAA111", "BBB222", "CCC333"]
        assert all(row.error is None for row in rows)

    def test_ragged_rows_are_tolerated(self, write_csv):
        path = write_csv([["code", "note"], ["AAA111"], ["BBB222", "x", "extra"]])
        rows = list(CSVRowReader(path))

        assert rows[0].values == {"code": "AAA111", "note": None}
        assert rows[1].values == {"code": "BBB222", "note": "x"}

    def test_column_without_header_keeps_its_position(self, tmp_path):
        path = tmp_path / "unnamed.csv"
        path.write_text(",note\nABC123,x\n", encoding="utf-8")

        rows = list(CSVRowReader(path))

        assert rows[0].values == {"column_1": "ABC123", "note": "x"}
        assert list(rows[0].values.values())[0] == "ABC123"

    def test_blank_lines_are_skipped(self, tmp_path):
        path = tmp_path / "blank.csv"
        path.write_text("code\nAAA111\n\nBBB222\n", encoding="utf-8")

        rows = list(CSVRowReader(path))

        assert [row.values["code"] for row in rows] == ["AAA111", "BBB222"]
        assert [row.row_number for row in rows] == [1, 2]

    def test_malformed_row_is_reported_and_reading_continues(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text('code,note\nAAA111,ok\n"BBB"222,broken\nCCC333,ok\n', encoding="utf-8")

        rows = list(CSVRowReader(path))

        assert len(rows) == 3
        assert rows[1].values is None
        assert rows[1].error.startswith("Malformed row")
        assert rows[2].values["code"] == "CCC333"
        assert rows[2].row_number == 3

    def test_count_rows_matches_iteration(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text('code\nAAA111\n"BBB"222\nCCC333\n', encoding="utf-8")

        assert CSVRowReader(path).count_rows() == 3

    def test_header_row_is_required(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("", encoding="utf-8")

        with pytest.raises(ValueError):
            list(CSVRowReader(path))

    def test_byte_order_mark_is_stripped_from_header(self, tmp_path):
        path = tmp_path / "bom.csv"
        with path.open("w", newline="", encoding="utf-8-sig") as handle:
            csv.writer(handle).writerows([["code"], ["AAA111"]])

        rows = list(CSVRowReader(path))

        assert rows[0].values == {"code": "AAA111"}


class TestSpreadsheetRowReader:
    def test_rows_match_visible_sheet_numbers(self, write_xlsx):
        path = write_xlsx([["code"], ["AAA111"], ["BBB222"], ["CCC333"]])
        rows = list(SpreadsheetRowReader(path))

        assert [row.row_number for row in rows] == [2, 3, 4]
        assert [row.values["code"] for row in rows] == ["AAA111", "BBB222", "CCC333"]

    def test_cells_are_rendered_as_text(self, write_xlsx):
        path = write_xlsx(
            [
                ["code", "issued"],
                [123456, datetime(2024, 1, 2, 3, 4, 5)],
                [7.0, None],
            ]
        )
        rows = list(SpreadsheetRowReader(path))

        assert rows[0].values == {"code": "123456", "issued": "2024-01-02T03:04:05"}
        assert rows[1].values == {"code": "7", "issued": None}

    def test_column_without_header_keeps_its_position(self, write_xlsx):
        path = write_xlsx([[None, "note"], ["ABC123", "x"]])

        rows = list(SpreadsheetRowReader(path))

        assert rows[0].values == {"column_1": "ABC123", "note": "x"}

    def test_blank_rows_are_skipped_but_numbering_is_kept(self, write_xlsx):
        path = write_xlsx([["code"], ["AAA111"], [None], ["CCC333"]])
        rows = list(SpreadsheetRowReader(path))

        assert [row.row_number for row in rows] == [2, 4]

    def test_only_first_sheet_is_read(self, tmp_path):
        from openpyxl import Workbook

        workbook = Workbook()
        workbook.active.append(["code"])
        workbook.active.append(["FIRST1"])
        second = workbook.create_sheet("Other")
        second.append(["code"])
        second.append(["SECOND"])
        path = tmp_path / "two.xlsx"
        workbook.save(path)

        rows = list(SpreadsheetRowReader(path))

        assert [row.values["code"] for row in rows] == ["FIRST1"]

    def test_count_rows(self, write_xlsx):
        path = write_xlsx([["code"], ["AAA111"], ["BBB222"]])
        assert SpreadsheetRowReader(path).count_rows() == 2


class TestGetRowReader:
    def test_known_kinds(self, tmp_path):
        assert isinstance(get_row_reader("csv", tmp_path / "a.csv"), CSVRowReader)
        assert isinstance(get_row_reader("xlsx", tmp_path / "a.xlsx"), SpreadsheetRowReader)

    def test_unknown_kind(self, tmp_path):
        with pytest.raises(UnsupportedFormat):
            get_row_reader("pdf", tmp_path / "a.pdf")
