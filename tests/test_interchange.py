"""Tests for spreadsheet/CSV export and import."""

from __future__ import annotations

import csv
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import openpyxl
import pytest

from voucher_ledger import constants, core_logic, data_manager, interchange


def _write_sheet(path: Path, header, *rows) -> Path:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "anything"
    sheet.append(list(header))
    for row in rows:
        sheet.append(list(row))
    workbook.save(path)
    return path


def _snapshot(vouchers):
    return sorted((v.name, v.value, v.spent, v.category) for v in vouchers)


# ---------------------------------------------------------------------------
# Row flattening
# ---------------------------------------------------------------------------


def test_voucher_to_row_uses_derived_status_and_floors_remaining(make_voucher, fixed_now):
    """Exports report what the user sees, not what is stored."""

    voucher = make_voucher(
        name="Indigo",
        value=500,
        spent=600,
        category="Travel",
        expires_on=date(2024, 12, 31),
        status="used",
        created_at="2025-01-02T00:00:00+00:00",
    )

    row = interchange.voucher_to_row(voucher, fixed_now)

    assert list(row) == list(constants.EXPORT_COLUMNS)
    assert row["remaining"] == Decimal("0")
    assert row["status"] == "expired"
    assert row["expires_on"] == "2024-12-31"
    assert row["code"] == ""
    assert row["pin"] == ""
    assert row["created_at"] == "2025-01-02T00:00:00+00:00"


def test_build_export_rows_keeps_order(make_voucher, fixed_now):
    vouchers = [make_voucher(name="B"), make_voucher(name="A")]
    rows = interchange.build_export_rows(vouchers, fixed_now)
    assert [row["name"] for row in rows] == ["B", "A"]


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def test_write_xlsx_creates_single_vouchers_sheet(tmp_path, make_voucher, fixed_now):
    rows = interchange.build_export_rows([make_voucher(name="Amazon", code="AMZ")], fixed_now)

    written = interchange.write_xlsx(tmp_path / "out" / "export.xlsx", rows)

    workbook = openpyxl.load_workbook(written)
    assert workbook.sheetnames == [constants.SheetName.EXPORT.value]
    sheet = workbook[constants.SheetName.EXPORT.value]
    assert [cell.value for cell in sheet[1]] == list(constants.EXPORT_COLUMNS)
    assert sheet.cell(row=2, column=1).value == "Amazon"
    assert sheet.cell(row=2, column=6).value == "AMZ"


def test_write_csv_writes_header_and_blank_optionals(tmp_path, make_voucher, fixed_now):
    rows = interchange.build_export_rows([make_voucher(name="Swiggy", value=250)], fixed_now)

    written = interchange.write_csv(tmp_path / "export.csv", rows)

    with written.open(encoding="utf-8", newline="") as handle:
        records = list(csv.DictReader(handle))
    assert records[0]["name"] == "Swiggy"
    assert records[0]["value"] == "250"
    assert records[0]["code"] == ""
    assert records[0]["expires_on"] == ""


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def test_read_xlsx_uses_first_sheet_and_skips_empty_rows(tmp_path):
    path = _write_sheet(
        tmp_path / "in.xlsx",
        ["name", "value", "spent"],
        ["Gift", 100, 10],
        [None, None, None],
        ["Card", 50, None],
    )

    rows = interchange.read_xlsx(path)

    assert len(rows) == 2
    assert rows[0] == {"name": "Gift", "value": 100, "spent": 10}
    assert (rows[1]["name"], rows[1]["value"], rows[1].get("spent")) == ("Card", 50, None)


def test_read_csv_handles_bom_and_blank_lines(tmp_path):
    path = tmp_path / "in.csv"
    path.write_text("\ufeffname,value\nGift,100\n,\nCard,50\n", encoding="utf-8")

    rows = interchange.read_csv(path)

    assert rows == [{"name": "Gift", "value": "100"}, {"name": "Card", "value": "50"}]


def test_read_rows_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        interchange.read_rows(tmp_path / "absent.csv")


def test_read_rows_rejects_unsupported_suffix(tmp_path):
    path = tmp_path / "vouchers.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(interchange.UnsupportedFormat):
        interchange.read_rows(path)


def test_unsupported_format_is_a_validation_error():
    assert issubclass(interchange.UnsupportedFormat, core_logic.ValidationError)


def test_read_rows_requires_name_and_value_columns(tmp_path):
    path = tmp_path / "in.csv"
    path.write_text("title,amount\nGift,100\n", encoding="utf-8")

    with pytest.raises(core_logic.ValidationError, match="name, value"):
        interchange.read_rows(path)


def test_read_rows_matches_headers_case_insensitively(tmp_path):
    path = _write_sheet(tmp_path / "in.xlsx", ["Name", "VALUE"], ["Gift", 100])
    assert interchange.read_rows(path) == [{"Name": "Gift", "VALUE": 100}]


# ---------------------------------------------------------------------------
# Context-level export/import
# ---------------------------------------------------------------------------


def _seed(runtime_context, *commands):
    for command in commands:
        core_logic.record_add(runtime_context, command)


@pytest.mark.parametrize("filename", ["vouchers.xlsx", "vouchers.csv"])
def test_export_then_import_preserves_voucher_contents(runtime_context, tmp_path, filename):
    """Re-importing an export recreates the same name/value/spent/category set."""

    _seed(
        runtime_context,
        core_logic.AddVoucherCommand(name="Amazon", value="1000", initial_used="250", category="Shopping"),
        core_logic.AddVoucherCommand(name="Swiggy", value="500", initial_used="500", category="Food"),
        core_logic.AddVoucherCommand(
            name="Indigo", value="5000", category="Travel", code="IND-9", expires_on=date(2030, 1, 1)
        ),
    )
    original = core_logic.list_vouchers(runtime_context)

    exported = interchange.export_vouchers(runtime_context, tmp_path / filename)

    fresh = core_logic.RuntimeContext(
        settings=runtime_context.settings,
        workbook=runtime_context.workbook,
        owner_id="importer",
    )
    imported = interchange.import_file(fresh, exported)

    assert _snapshot(imported) == _snapshot(original)
    assert {v.owner_id for v in imported} == {"importer"}
    assert {v.voucher_id for v in imported}.isdisjoint({v.voucher_id for v in original})
    indigo = next(v for v in imported if v.name == "Indigo")
    assert indigo.code == "IND-9"
    assert indigo.expires_on == date(2030, 1, 1)


def test_export_writes_derived_status(runtime_context, tmp_path):
    _seed(
        runtime_context,
        core_logic.AddVoucherCommand(name="Old", value="100", expires_on=date(2000, 1, 1)),
    )

    exported = interchange.export_vouchers(runtime_context, tmp_path / "out.csv")

    with exported.open(encoding="utf-8", newline="") as handle:
        (record,) = list(csv.DictReader(handle))
    assert record["status"] == "expired"


def test_import_file_drops_invalid_rows(runtime_context, tmp_path):
    path = _write_sheet(
        tmp_path / "in.xlsx",
        ["name", "value", "spent", "status"],
        ["", 500, 0, "unused"],
        ["Gift", 0, 0, "unused"],
        ["Gift", 300, 400, "unused"],
    )

    imported = interchange.import_file(runtime_context, path)

    assert len(imported) == 1
    (voucher,) = core_logic.list_vouchers(runtime_context)
    assert voucher.value == Decimal("300")
    assert voucher.spent == Decimal("300")
    assert voucher.status == "used"


def test_import_file_with_no_valid_rows_writes_nothing(runtime_context, tmp_path):
    path = tmp_path / "in.csv"
    path.write_text("name,value\n,10\nX,-1\n", encoding="utf-8")

    with pytest.raises(core_logic.ValidationError):
        interchange.import_file(runtime_context, path)
    assert core_logic.list_vouchers(runtime_context) == []


def test_import_file_requires_owner(runtime_context, tmp_path, monkeypatch):
    anonymous = core_logic.RuntimeContext(
        settings=replace(runtime_context.settings, owner_id=None),
        workbook=runtime_context.workbook,
    )
    read_rows = Mock()
    monkeypatch.setattr(interchange, "read_rows", read_rows)

    with pytest.raises(core_logic.NotAuthenticated):
        interchange.import_file(anonymous, tmp_path / "in.csv")
    read_rows.assert_not_called()


def test_imported_vouchers_survive_persist(runtime_context, tmp_path):
    path = tmp_path / "in.csv"
    path.write_text("name,value,spent,category\nGift,100,20,Food\n", encoding="utf-8")

    interchange.import_file(runtime_context, path)
    core_logic.persist_context(runtime_context)

    reloaded = data_manager.open_workbook(runtime_context.settings.data_file)
    (voucher,) = data_manager.iter_vouchers(reloaded)
    assert (voucher.name, voucher.value, voucher.spent, voucher.category) == (
        "Gift",
        Decimal("100"),
        Decimal("20"),
        "Food",
    )
