"""Create an empty voucher workbook and, optionally, a starter ``config.ini``.

Usable as a library (tests call :func:`create_master_workbook`) and as a
script through ``python -m voucher_ledger.setup_excel``.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import EXPECTED_SCHEMA_VERSION, VOUCHER_COLUMNS, SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.VOUCHERS.value: VOUCHER_COLUMNS,
}

CONFIG_FILE = "config.ini"
DEFAULT_DATA_FILE = "vouchers.xlsx"


@dataclass(frozen=True)
class SetupSettings:
    """Values the setup script needs from ``config.ini``."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``[System] DataFile`` from ``config_path``.

    Relative paths are resolved against the config file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def write_default_config(
    config_path: Path,
    *,
    data_file: str = DEFAULT_DATA_FILE,
    owner: Optional[str] = None,
    overwrite: bool = False,
) -> Path:
    """Write a starter ``config.ini`` pointing at ``data_file``."""

    config_path = config_path.expanduser().resolve()
    if config_path.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {config_path}")

    parser = configparser.ConfigParser()
    parser["System"] = {"DataFile": data_file, "SchemaVersion": EXPECTED_SCHEMA_VERSION}
    parser["Session"] = {"Owner": owner or ""}
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return config_path


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty voucher workbook at ``destination``.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing voucher workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Drop the sheet openpyxl creates by default.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the voucher workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter config.ini first if none exists.",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Owner to record in a newly written config.ini.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Voucher Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        if args.init_config and not config_path.exists():
            write_default_config(config_path, owner=args.owner)
            print(f"Wrote starter configuration '{config_path}'.")
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created voucher workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
