"""Spreadsheet export and import for vouchers.

Exports flatten each voucher into the fixed ``EXPORT_COLUMNS`` layout and
write either an ``.xlsx`` workbook with a single ``vouchers`` sheet or a
``.csv`` file. Imports read the same layouts back into plain dictionaries and
hand them to :func:`voucher_ledger.core_logic.import_vouchers`, which owns
the per-row parsing rules.
"""

from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import core_logic, data_manager, log
from .constants import EXPORT_COLUMNS, SheetName


REQUIRED_IMPORT_COLUMNS: tuple[str, ...] = ("name", "value")
XLSX_SUFFIXES = frozenset({".xlsx", ".xlsm", ".xltx", ".xltm"})
CSV_SUFFIXES = frozenset({".csv"})


class UnsupportedFormat(core_logic.ValidationError):
    """Raised for files that are neither spreadsheets nor CSV."""


def voucher_to_row(voucher: data_manager.VoucherRow, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Flatten a voucher into an export row keyed by ``EXPORT_COLUMNS``.

    ``remaining`` is floored at zero and ``status`` is the effective status at
    ``now``. Missing optional text becomes an empty string.
    """

    return {
        "name": voucher.name,
        "value": voucher.value,
        "spent": voucher.spent,
        "remaining": core_logic.remaining_balance(voucher),
        "category": voucher.category,
        "code": voucher.code or "",
        "pin": voucher.pin or "",
        "expires_on": voucher.expires_on.isoformat() if voucher.expires_on else "",
        "status": core_logic.derive_status(voucher, now).value,
        "created_at": voucher.created_at,
    }


def build_export_rows(vouchers: Iterable[data_manager.VoucherRow], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    return [voucher_to_row(voucher, now) for voucher in vouchers]


def write_xlsx(destination: Path, rows: Sequence[Mapping[str, Any]]) -> Path:
    """Write ``rows`` to a workbook holding one ``vouchers`` sheet."""

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    sheet = workbook.create_sheet(title=SheetName.EXPORT.value)

    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(EXPORT_COLUMNS, start=1):
        cell = sheet.cell(row=1, column=column_index, value=column_name)
        cell.font = bold_font

    for row in rows:
        sheet.append([row.get(column) for column in EXPORT_COLUMNS])

    workbook.save(destination)
    return destination


def write_csv(destination: Path, rows: Sequence[Mapping[str, Any]]) -> Path:
    """Write ``rows`` as UTF-8 CSV with the export header."""

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(EXPORT_COLUMNS), extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({column: _csv_cell(row.get(column)) for column in EXPORT_COLUMNS})
    return destination


def read_xlsx(source: Path) -> List[Dict[str, Any]]:
    """Read the first sheet of a workbook into header-keyed dictionaries."""

    workbook = openpyxl.load_workbook(source, data_only=True, read_only=True)
    try:
        sheet = workbook.worksheets[0]
        data = list(sheet.iter_rows(values_only=True))
    finally:
        workbook.close()

    if not data:
        return []
    headers = [str(header).strip() if header is not None else "" for header in data[0]]
    rows = []
    for raw in data[1:]:
        if not any(cell not in (None, "") for cell in raw):
            continue
        rows.append({headers[i]: raw[i] for i in range(min(len(headers), len(raw))) if headers[i]})
    return rows


def read_csv(source: Path) -> List[Dict[str, Any]]:
    """Read a CSV file into header-keyed dictionaries, skipping blank lines."""

    with Path(source).open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        return [
            {key.strip(): value for key, value in row.items() if key}
            for row in reader
            if any((value or "").strip() for value in row.values() if isinstance(value, str))
        ]


def read_rows(source: Path) -> List[Dict[str, Any]]:
    """Read an import file, choosing the reader from its suffix.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        UnsupportedFormat: If the suffix is not a spreadsheet or CSV suffix.
        ValidationError: If the header lacks ``name`` or ``value``.
    """

    source = Path(source).expanduser().resolve()
    if not source.exists():
        raise FileNotFoundError(f"Import file not found: {source}")

    suffix = source.suffix.lower()
    if suffix in XLSX_SUFFIXES:
        rows = read_xlsx(source)
    elif suffix in CSV_SUFFIXES:
        rows = read_csv(source)
    else:
        log.warning("Rejected import file with unsupported suffix '%s'", suffix)
        raise UnsupportedFormat(f"Unsupported file format: {source.name}")

    if rows:
        present = {str(key).strip().lower() for key in rows[0]}
        missing = [column for column in REQUIRED_IMPORT_COLUMNS if column not in present]
        if missing:
            raise core_logic.ValidationError(f"Import file is missing required columns: {', '.join(missing)}")
    log.debug("Read %d rows from '%s'", len(rows), source)
    return rows


def export_vouchers(
    context: core_logic.RuntimeContext,
    destination: Path,
    *,
    now: Optional[datetime] = None,
) -> Path:
    """Export every voucher of the signed-in owner to ``destination``.

    The format follows the suffix: ``.csv`` writes CSV, anything else an
    ``.xlsx`` workbook.
    """

    vouchers = core_logic.list_vouchers(context)
    rows = build_export_rows(vouchers, now)
    destination = Path(destination)
    if destination.suffix.lower() in CSV_SUFFIXES:
        written = write_csv(destination, rows)
    else:
        written = write_xlsx(destination, rows)
    log.info("Exported %d vouchers to '%s'", len(rows), written)
    return written


def import_file(context: core_logic.RuntimeContext, source: Path) -> List[data_manager.VoucherRow]:
    """Import every valid row of ``source`` as new vouchers for the owner."""

    core_logic.require_owner(context)
    rows = read_rows(source)
    return core_logic.import_vouchers(context, rows)


def _csv_cell(value: object) -> object:
    return "" if value is None else value
