"""Data access layer for the voucher ledger.

This module is the voucher store: a single ``Vouchers`` worksheet inside an
Excel workbook. It knows nothing about balances or statuses beyond storing
them. Business rules belong in :mod:`voucher_ledger.core_logic`.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving, and reloading the Excel file.
3. Row operations: listing, inserting, updating, and deleting voucher rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CURRENCY_SYMBOL, VOUCHER_COLUMNS, SheetName


CONFIG_FILE_NAME = "config.ini"
VOUCHERS_SHEET = SheetName.VOUCHERS.value

# Maps VoucherRow attribute names onto worksheet headers.
FIELD_TO_COLUMN: Mapping[str, str] = {
    "voucher_id": "VoucherID",
    "owner_id": "OwnerID",
    "name": "Name",
    "value": "Value",
    "spent": "Spent",
    "category": "Category",
    "code": "Code",
    "pin": "Pin",
    "expires_on": "ExpiresOn",
    "status": "Status",
    "created_at": "CreatedAt",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    owner_id: Optional[str] = None
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL


@dataclass(frozen=True)
class VoucherRow:
    """In-memory view of a row from the ``Vouchers`` sheet."""

    voucher_id: str
    owner_id: str
    name: str
    value: Decimal
    spent: Decimal
    category: str
    code: Optional[str]
    pin: Optional[str]
    expires_on: Optional[date]
    status: str
    created_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path is returned untouched. Otherwise the search walks up from
    the current working directory and returns the first ``config.ini`` found.

    Raises:
        FileNotFoundError: If no parent directory holds a configuration file.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration. Missing
            sections are only reported later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are required. The
    ``[Session] Owner`` entry is optional; a blank or missing owner means no
    user is signed in. Relative data file paths are anchored on ``base_path``
    (or the current working directory when omitted).

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    owner_raw = parser.get("Session", "Owner", fallback="") or ""
    currency_symbol = parser.get("Display", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL)

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        owner_id=owner_raw.strip() or None,
        currency_symbol=currency_symbol or DEFAULT_CURRENCY_SYMBOL,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the voucher workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If the workbook has no ``Vouchers`` sheet.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    if VOUCHERS_SHEET not in wb.sheetnames:
        raise KeyError(f"Workbook '{data_file}' has no '{VOUCHERS_SHEET}' sheet")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_vouchers(workbook: Workbook) -> Iterable[VoucherRow]:
    """Yield every voucher row in sheet order, skipping fully empty rows."""

    sheet = workbook[VOUCHERS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_voucher(raw)


def insert_vouchers(workbook: Workbook, records: Sequence[VoucherRow]) -> None:
    """Append a batch of voucher rows.

    Every record is serialized before the first row is written so that a bad
    record leaves the sheet untouched.
    """

    rows = [serialize_voucher(record) for record in records]
    sheet = workbook[VOUCHERS_SHEET]
    for row in rows:
        sheet.append(row)
    log.debug("Appended %d voucher rows", len(rows))


def update_voucher(workbook: Workbook, voucher_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Overwrite selected fields of an existing voucher row.

    Args:
        workbook (Workbook): Workbook holding the vouchers sheet.
        voucher_id (str): Identifier of the row to change.
        field_values (Mapping[str, Any]): ``VoucherRow`` attribute names mapped
            to their replacement values.

    Raises:
        KeyError: If the voucher or any referenced field cannot be found.
    """

    for field in field_values:
        if field not in FIELD_TO_COLUMN or field == "voucher_id":
            raise KeyError(f"Unknown voucher field: {field}")

    row_index = locate_row(workbook, VOUCHERS_SHEET, "VoucherID", voucher_id)
    if row_index is None:
        raise KeyError(f"Voucher not found: {voucher_id}")

    sheet = workbook[VOUCHERS_SHEET]
    header_map = _header_map(sheet)
    # Resolve every column first so a missing one leaves the row untouched.
    targets = []
    for field, value in field_values.items():
        column = FIELD_TO_COLUMN[field]
        if column not in header_map:
            raise KeyError(f"Unknown column: {column}")
        targets.append((header_map[column], _to_cell(value)))
    for column_index, cell_value in targets:
        sheet.cell(row=row_index, column=column_index, value=cell_value)


def delete_voucher(workbook: Workbook, voucher_id: str) -> None:
    """Remove a voucher row permanently.

    Raises:
        KeyError: If no row carries ``voucher_id``.
    """

    row_index = locate_row(workbook, VOUCHERS_SHEET, "VoucherID", voucher_id)
    if row_index is None:
        raise KeyError(f"Voucher not found: {voucher_id}")
    workbook[VOUCHERS_SHEET].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Return the 1-based row index whose ``key_column`` equals ``key_value``.

    The header row is never matched. ``None`` is returned when nothing
    matches.

    Raises:
        KeyError: If ``key_column`` is not present in the header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_voucher(record: VoucherRow) -> list[object]:
    """Convert a voucher dataclass into the worksheet column order."""

    return [
        record.voucher_id,
        record.owner_id,
        record.name,
        record.value,
        record.spent,
        record.category,
        record.code,
        record.pin,
        _to_cell(record.expires_on),
        record.status,
        record.created_at,
    ]


def deserialize_voucher(raw_row: Sequence[object]) -> VoucherRow:
    """Convert a raw worksheet row into a :class:`VoucherRow`.

    Short rows are padded with ``None``. Numbers become
    :class:`~decimal.Decimal`, blank text cells stay ``None``, and the expiry
    cell accepts Excel dates as well as ISO strings.
    """

    padded = list(raw_row) + [None] * (len(VOUCHER_COLUMNS) - len(raw_row))
    (
        voucher_id,
        owner_id,
        name,
        value_raw,
        spent_raw,
        category,
        code,
        pin,
        expires_raw,
        status,
        created_at,
    ) = padded[: len(VOUCHER_COLUMNS)]

    return VoucherRow(
        voucher_id=str(voucher_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        name=str(name) if name is not None else "",
        value=_to_decimal(value_raw),
        spent=_to_decimal(spent_raw),
        category=str(category) if category is not None else "",
        code=_optional_text(code),
        pin=_optional_text(pin),
        expires_on=parse_date_cell(expires_raw),
        status=str(status) if status is not None else "",
        created_at=str(created_at) if created_at is not None else "",
    )


def parse_date_cell(raw: object) -> Optional[date]:
    """Interpret a cell as a calendar date, returning ``None`` when blank or unreadable."""

    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        log.debug("Ignoring unreadable date cell %r", raw)
        return None


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _to_cell(value: object) -> object:
    # Dates are stored as ISO text so they survive a round trip unchanged.
    if isinstance(value, date):
        return value.isoformat()
    return value


def _to_decimal(raw: object) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        log.warning("Non-numeric amount %r in voucher sheet; reading as 0", raw)
        return Decimal("0")


def _optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None
