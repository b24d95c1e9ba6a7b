"""Enumerations and column layouts shared across the voucher ledger.

The data layer, the business layer, the interchange codec, and the CLI all
import their identifiers from here so the workbook layout and the accepted
option values never drift apart.
"""

from __future__ import annotations

from enum import Enum


# Bumped whenever the store workbook layout changes.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Category filter token meaning "do not filter".
ALL_CATEGORIES = "All"

DEFAULT_CURRENCY_SYMBOL = "₹"

RECENT_VOUCHER_LIMIT = 8


class Category(str, Enum):
    """Enumerate the categories offered when creating a voucher."""

    GENERAL = "General"
    SHOPPING = "Shopping"
    FOOD = "Food"
    TRAVEL = "Travel"
    RECHARGE = "Recharge"
    SUBSCRIPTION = "Subscription"


class VoucherStatus(str, Enum):
    """Enumerate voucher statuses.

    Only ``UNUSED`` and ``USED`` are ever written to the store. ``EXPIRED`` is
    produced by status derivation at read time.
    """

    UNUSED = "unused"
    USED = "used"
    EXPIRED = "expired"


class SortKey(str, Enum):
    """Enumerate the orderings supported by the list projection."""

    CREATED_DESC = "created_desc"
    VALUE_DESC = "value_desc"
    VALUE_ASC = "value_asc"
    EXPIRY_ASC = "expiry_asc"
    REMAINING_DESC = "remaining_desc"
    STATUS_USED_FIRST = "status_used_first"
    STATUS_UNUSED_FIRST = "status_unused_first"


class SheetName(str, Enum):
    """Enumerate worksheet names used by the store and by exports."""

    VOUCHERS = "Vouchers"
    EXPORT = "vouchers"


PERSISTED_STATUSES: frozenset[VoucherStatus] = frozenset(
    {VoucherStatus.UNUSED, VoucherStatus.USED}
)

# Header row of the store worksheet, in column order.
VOUCHER_COLUMNS: tuple[str, ...] = (
    "VoucherID",
    "OwnerID",
    "Name",
    "Value",
    "Spent",
    "Category",
    "Code",
    "Pin",
    "ExpiresOn",
    "Status",
    "CreatedAt",
)

# Header row of exported sheets, in column order.
EXPORT_COLUMNS: tuple[str, ...] = (
    "name",
    "value",
    "spent",
    "remaining",
    "category",
    "code",
    "pin",
    "expires_on",
    "status",
    "created_at",
)


__all__ = [
    "ALL_CATEGORIES",
    "Category",
    "DEFAULT_CURRENCY_SYMBOL",
    "EXPECTED_SCHEMA_VERSION",
    "EXPORT_COLUMNS",
    "PERSISTED_STATUSES",
    "RECENT_VOUCHER_LIMIT",
    "SheetName",
    "SortKey",
    "VOUCHER_COLUMNS",
    "VoucherStatus",
]
