"""Shared pytest fixtures and utilities for voucher ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from voucher_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from voucher_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OWNER = "owner-1"
FIXED_NOW = datetime(2025, 3, 15, 12, 0, 0)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Session]\n"
    "Owner = {owner}\n\n"
    "[Display]\n"
    "CurrencySymbol = {currency_symbol}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    owner: str
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def fixed_now() -> datetime:
    """Return the reference moment used by time-sensitive tests."""

    return FIXED_NOW


@pytest.fixture
def make_voucher() -> Callable[..., data_manager.VoucherRow]:
    """Factory producing voucher rows with sensible defaults."""

    counter = {"n": 0}

    def _make(
        *,
        name: str = "Voucher",
        value: Decimal | int | str = Decimal("1000"),
        spent: Decimal | int | str = Decimal("0"),
        category: str = constants.Category.GENERAL.value,
        code: Optional[str] = None,
        pin: Optional[str] = None,
        expires_on: Optional[date] = None,
        status: str = constants.VoucherStatus.UNUSED.value,
        owner_id: str = DEFAULT_OWNER,
        voucher_id: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> data_manager.VoucherRow:
        counter["n"] += 1
        return data_manager.VoucherRow(
            voucher_id=voucher_id or f"V{counter['n']:03d}",
            owner_id=owner_id,
            name=name,
            value=Decimal(str(value)),
            spent=Decimal(str(spent)),
            category=category,
            code=code,
            pin=pin,
            expires_on=expires_on,
            status=status,
            created_at=created_at or f"2025-01-01T00:00:{counter['n']:02d}+00:00",
        )

    return _make


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty voucher workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "vouchers.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh voucher workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        owner: str = DEFAULT_OWNER,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        currency_symbol: str = "Rs.",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                owner=owner,
                currency_symbol=currency_symbol,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            owner=owner,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="voucher-cli", description="Voucher CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "vouchers.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        owner_id=DEFAULT_OWNER,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)
