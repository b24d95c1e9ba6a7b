"""Business logic layer for the voucher ledger.

Every change to a voucher passes through this module. Mutations validate
their inputs, compute the new ``value``/``spent``/``status`` fields with the
pure ``apply_*`` helpers, and only then ask the data access layer to write.
Reads go through an owner-scoped cache that is dropped after each write, so
the next read always reflects the store.

Effective status is derived on read by :func:`derive_status` and is never
written back.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    ALL_CATEGORIES,
    DEFAULT_CURRENCY_SYMBOL,
    EXPECTED_SCHEMA_VERSION,
    PERSISTED_STATUSES,
    RECENT_VOUCHER_LIMIT,
    Category,
    SortKey,
    VoucherStatus,
)


Amount = Union[Decimal, int, float, str]

END_OF_DAY = time(23, 59, 59, 999000)

# Zeros in front of another digit: "0500" -> "500", but "0.5" is untouched.
LEADING_ZEROS = re.compile(r"^0+(?=\d)")

USED_FIRST_RANK: Mapping[VoucherStatus, int] = {
    VoucherStatus.USED: 0,
    VoucherStatus.UNUSED: 1,
    VoucherStatus.EXPIRED: 2,
}

UNUSED_FIRST_RANK: Mapping[VoucherStatus, int] = {
    VoucherStatus.UNUSED: 0,
    VoucherStatus.USED: 1,
    VoucherStatus.EXPIRED: 2,
}


class VoucherError(Exception):
    """Base class for every error raised by the voucher ledger."""


class ValidationError(VoucherError):
    """Raised when input breaks a business rule. Nothing is written."""


class StoreError(VoucherError):
    """Raised when the voucher store rejects or fails a request."""


class VoucherNotFound(StoreError):
    """Raised when a voucher id is unknown or belongs to another owner."""


class NotAuthenticated(VoucherError):
    """Raised when an operation needs a signed-in owner and none is present."""


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, open workbook, and signed-in owner used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    owner_id: Optional[str] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)

    @property
    def owner(self) -> Optional[str]:
        return self.owner_id or self.settings.owner_id


@dataclass(frozen=True)
class AddVoucherCommand:
    """User intent for creating a voucher."""

    name: str
    value: Amount
    category: str = Category.GENERAL.value
    initial_used: Amount = Decimal("0")
    code: Optional[str] = None
    pin: Optional[str] = None
    expires_on: Optional[date] = None


@dataclass(frozen=True)
class PartialUseCommand:
    """User intent for redeeming part of a voucher's remaining balance."""

    voucher_id: str
    amount: Amount


@dataclass(frozen=True)
class EditVoucherCommand:
    """Full replacement of a voucher's editable fields."""

    voucher_id: str
    name: str
    value: Amount
    category: str = Category.GENERAL.value
    code: Optional[str] = None
    pin: Optional[str] = None
    expires_on: Optional[date] = None


@dataclass(frozen=True)
class VoucherSummary:
    """Aggregate figures shown on the dashboard."""

    total_value: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    unused: int
    used: int
    expired: int
    recent: tuple[data_manager.VoucherRow, ...]


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def _resolve_now(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as a naive local datetime, defaulting to now.

    Expiry is a calendar date interpreted in local time, so aware datetimes
    are converted to the local zone before comparison.
    """

    if candidate is None:
        return datetime.now()
    if candidate.tzinfo is not None:
        return candidate.astimezone().replace(tzinfo=None)
    return candidate


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Status derivation
# ---------------------------------------------------------------------------


def persisted_status(voucher: data_manager.VoucherRow) -> VoucherStatus:
    """Return the stored status, falling back to ``unused`` when unset or invalid."""

    try:
        status = VoucherStatus(voucher.status)
    except ValueError:
        return VoucherStatus.UNUSED
    if status not in PERSISTED_STATUSES:
        return VoucherStatus.UNUSED
    return status


def expiry_deadline(expires_on: date) -> datetime:
    """Return the last local instant (23:59:59.999) of ``expires_on``."""

    return datetime.combine(expires_on, END_OF_DAY)


def derive_status(voucher: data_manager.VoucherRow, now: Optional[datetime] = None) -> VoucherStatus:
    """Compute the effective status of a voucher.

    A voucher whose expiry date has fully passed is ``expired`` whatever its
    stored status says. Otherwise the stored status is returned. This is a
    read-only query and never touches the store.

    Args:
        voucher (data_manager.VoucherRow): Voucher to inspect.
        now (datetime | None): Moment of evaluation. Defaults to the current
            local time.

    Returns:
        VoucherStatus: ``expired``, ``used`` or ``unused``.
    """

    if voucher.expires_on is not None:
        if _resolve_now(now) > expiry_deadline(voucher.expires_on):
            return VoucherStatus.EXPIRED
    return persisted_status(voucher)


def remaining_balance(voucher: data_manager.VoucherRow) -> Decimal:
    """Return ``value - spent`` floored at zero."""

    return max(Decimal("0"), voucher.value - voucher.spent)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def coerce_amount(raw: Amount, *, field_name: str = "amount") -> Decimal:
    """Convert user input into a finite :class:`~decimal.Decimal`.

    Strings are trimmed and stripped of leading zeros before parsing.

    Raises:
        ValidationError: If the input is not a finite number.
    """

    if isinstance(raw, bool):
        raise ValidationError(f"Enter a valid {field_name}")
    if isinstance(raw, Decimal):
        amount = raw
    else:
        text = _strip_leading_zeros(str(raw).strip())
        try:
            amount = Decimal(text)
        except InvalidOperation as exc:
            log.warning("Rejected non-numeric %s %r", field_name, raw)
            raise ValidationError(f"Enter a valid {field_name}") from exc
    if not amount.is_finite():
        log.warning("Rejected non-finite %s %r", field_name, raw)
        raise ValidationError(f"Enter a valid {field_name}")
    return amount


def require_name(name: Optional[str]) -> str:
    """Return the trimmed name, rejecting blanks."""

    trimmed = (name or "").strip()
    if not trimmed:
        log.warning("Rejected voucher with an empty name")
        raise ValidationError("Please enter name")
    return trimmed


def require_positive_value(raw: Amount) -> Decimal:
    """Validate a face value, which must be finite and strictly positive."""

    value = coerce_amount(raw, field_name="value")
    if value <= Decimal("0"):
        log.warning("Rejected non-positive voucher value %s", value)
        raise ValidationError("Enter a valid amount > 0")
    return value


def require_category(category: Optional[str]) -> str:
    """Validate a category chosen interactively. Blank means ``General``."""

    candidate = (category or "").strip() or Category.GENERAL.value
    valid = {member.value for member in Category}
    if candidate not in valid:
        log.warning("Rejected unknown category %r", category)
        raise ValidationError(
            f"Unknown category '{candidate}'. Choose one of: {', '.join(sorted(valid))}"
        )
    return candidate


def _clean_optional(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    trimmed = str(text).strip()
    return trimmed or None


def _strip_leading_zeros(text: str) -> str:
    return LEADING_ZEROS.sub("", text)


# ---------------------------------------------------------------------------
# Ledger mutations (pure)
# ---------------------------------------------------------------------------


def build_new_voucher(
    command: AddVoucherCommand,
    *,
    owner_id: str,
    voucher_id: str,
    created_at: str,
) -> data_manager.VoucherRow:
    """Validate an :class:`AddVoucherCommand` and materialize the new row.

    Raises:
        ValidationError: On an empty name, a non-positive or non-finite value,
            a negative initial usage, or an initial usage above the value.
    """

    name = require_name(command.name)
    value = require_positive_value(command.value)
    initial_used = coerce_amount(command.initial_used or Decimal("0"), field_name="initial used amount")
    if initial_used < Decimal("0"):
        log.warning("Rejected negative initial usage %s", initial_used)
        raise ValidationError("Initial used amount must be >= 0")
    if initial_used > value:
        log.warning("Rejected initial usage %s above value %s", initial_used, value)
        raise ValidationError("Initial used amount cannot exceed total value")

    status = VoucherStatus.USED if initial_used >= value else VoucherStatus.UNUSED
    return data_manager.VoucherRow(
        voucher_id=voucher_id,
        owner_id=owner_id,
        name=name,
        value=value,
        spent=initial_used,
        category=require_category(command.category),
        code=_clean_optional(command.code),
        pin=_clean_optional(command.pin),
        expires_on=command.expires_on,
        status=status.value,
        created_at=created_at,
    )


def apply_partial_use(voucher: data_manager.VoucherRow, amount: Amount) -> data_manager.VoucherRow:
    """Return ``voucher`` with ``amount`` added to its spent total.

    The status is ``used`` once the voucher is fully spent and ``unused``
    while a balance remains. A voucher with nothing remaining rejects every
    amount.

    Raises:
        ValidationError: If ``amount`` is not positive or exceeds the
            remaining balance.
    """

    amount = coerce_amount(amount)
    if amount <= Decimal("0"):
        log.warning("Rejected non-positive usage %s on voucher '%s'", amount, voucher.voucher_id)
        raise ValidationError("Amount must be > 0")
    remaining = voucher.value - voucher.spent
    if amount > remaining:
        log.warning(
            "Rejected usage %s above remaining %s on voucher '%s'",
            amount,
            remaining,
            voucher.voucher_id,
        )
        raise ValidationError("Amount exceeds remaining balance")

    new_spent = voucher.spent + amount
    status = VoucherStatus.USED if new_spent >= voucher.value else VoucherStatus.UNUSED
    return replace(voucher, spent=new_spent, status=status.value)


def apply_toggle(voucher: data_manager.VoucherRow) -> data_manager.VoucherRow:
    """Flip a voucher between fully unused and fully used.

    Only a stored ``unused`` status flips to ``used``. Any other stored value,
    blank or unknown included, resets the voucher to ``unused``.
    """

    if voucher.status == VoucherStatus.UNUSED.value:
        return replace(voucher, spent=voucher.value, status=VoucherStatus.USED.value)
    return replace(voucher, spent=Decimal("0"), status=VoucherStatus.UNUSED.value)


def apply_edit(voucher: data_manager.VoucherRow, command: EditVoucherCommand) -> data_manager.VoucherRow:
    """Replace the editable fields of ``voucher``.

    ``spent`` is clamped down to a lowered value, and a voucher whose clamped
    spend reaches the new value becomes ``used``. Otherwise the stored status
    is kept.

    Raises:
        ValidationError: On an empty name or a non-positive value.
    """

    name = require_name(command.name)
    value = require_positive_value(command.value)
    spent = min(voucher.spent, value)
    status = VoucherStatus.USED if spent >= value else persisted_status(voucher)
    return replace(
        voucher,
        name=name,
        value=value,
        spent=spent,
        category=require_category(command.category),
        code=_clean_optional(command.code),
        pin=_clean_optional(command.pin),
        expires_on=command.expires_on,
        status=status.value,
    )


def parse_import_number(raw: object) -> Decimal:
    """Parse a spreadsheet cell as a number; anything unreadable or non-finite is 0."""

    if raw is None or isinstance(raw, bool):
        return Decimal("0")
    if isinstance(raw, (int, float, Decimal)):
        text = str(raw)
    else:
        text = _strip_leading_zeros(str(raw).strip())
    if not text:
        return Decimal("0")
    try:
        number = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


def _import_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    text = str(raw).strip()
    return text or None


def parse_import_row(
    raw: Mapping[str, object],
    *,
    owner_id: str,
    voucher_id: str,
    created_at: str,
) -> Optional[data_manager.VoucherRow]:
    """Turn one imported row into a voucher, or ``None`` if it must be dropped.

    Keys are matched case-insensitively. Rows without a name or with a
    non-positive value are dropped. ``spent`` is clamped into ``[0, value]``
    and the status is recomputed from it; any status column is ignored.
    """

    row = {str(key).strip().lower(): cell for key, cell in raw.items() if key is not None}
    name = (_import_text(row.get("name")) or "").strip()
    value = parse_import_number(row.get("value"))
    if not name or value <= Decimal("0"):
        log.debug("Dropping import row without name or positive value: %r", raw)
        return None

    spent = min(max(Decimal("0"), parse_import_number(row.get("spent"))), value)
    status = VoucherStatus.USED if spent >= value else VoucherStatus.UNUSED
    return data_manager.VoucherRow(
        voucher_id=voucher_id,
        owner_id=owner_id,
        name=name,
        value=value,
        spent=spent,
        category=_import_text(row.get("category")) or Category.GENERAL.value,
        code=_import_text(row.get("code")),
        pin=_import_text(row.get("pin")),
        expires_on=data_manager.parse_date_cell(row.get("expires_on")),
        status=status.value,
        created_at=created_at,
    )


def generate_voucher_id() -> str:
    """Return a fresh opaque voucher identifier."""

    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Runtime context and caching
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None, *, owner_id: Optional[str] = None) -> RuntimeContext:
    """Resolve ``config.ini``, open the workbook, and build a context.

    Args:
        config_path (Path | None): Explicit configuration path. When omitted
            the data layer searches upwards from the working directory.
        owner_id (str | None): Owner overriding ``[Session] Owner``.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded voucher workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, owner_id=owner_id or None)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a workbook whose declared schema is not ours.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def require_owner(context: RuntimeContext) -> str:
    """Return the signed-in owner or raise :class:`NotAuthenticated`."""

    owner = context.owner
    if not owner:
        log.warning("Voucher operation attempted without a signed-in owner")
        raise NotAuthenticated("Not logged in")
    return owner


def _invalidate_cache(context: RuntimeContext) -> None:
    if context._cache.pop("vouchers", None) is not None:
        log.debug("Invalidated voucher cache")


def _ensure_vouchers_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Load the owner's vouchers, newest first, unless already cached."""

    owner = require_owner(context)
    bucket = context._cache.get("vouchers")
    if bucket is not None and bucket.get("owner") == owner:
        return bucket

    try:
        rows = [row for row in data_manager.iter_vouchers(context.workbook) if row.owner_id == owner]
    except KeyError as exc:
        log.error("Unable to read vouchers: %s", exc)
        raise StoreError(f"Unable to read vouchers: {exc}") from exc

    ordered = sorted(rows, key=lambda row: row.created_at, reverse=True)
    bucket = {
        "owner": owner,
        "all": ordered,
        "by_id": {row.voucher_id: row for row in ordered},
    }
    context._cache["vouchers"] = bucket
    log.debug("Loaded %d vouchers for owner '%s'", len(ordered), owner)
    return bucket


def list_vouchers(context: RuntimeContext) -> List[data_manager.VoucherRow]:
    """Return the signed-in owner's vouchers ordered newest first."""

    return list(_ensure_vouchers_cache(context)["all"])


def get_voucher(context: RuntimeContext, voucher_id: str) -> data_manager.VoucherRow:
    """Resolve one of the owner's vouchers by id.

    Raises:
        VoucherNotFound: If the id is unknown or belongs to someone else.
    """

    cache = _ensure_vouchers_cache(context)
    try:
        return cache["by_id"][voucher_id]
    except KeyError as exc:
        log.warning("Voucher lookup failed for id '%s'", voucher_id)
        raise VoucherNotFound(f"Unknown voucher id: {voucher_id}") from exc


def _write_changes(
    context: RuntimeContext,
    before: data_manager.VoucherRow,
    after: data_manager.VoucherRow,
) -> data_manager.VoucherRow:
    changed = {
        name: getattr(after, name)
        for name in data_manager.FIELD_TO_COLUMN
        if name not in ("voucher_id", "owner_id", "created_at") and getattr(after, name) != getattr(before, name)
    }
    if not changed:
        return after
    try:
        data_manager.update_voucher(context.workbook, before.voucher_id, field_values=changed)
    except KeyError as exc:
        log.error("Store rejected update of voucher '%s': %s", before.voucher_id, exc)
        raise StoreError(f"Unable to update voucher '{before.voucher_id}': {exc}") from exc
    finally:
        _invalidate_cache(context)
    return after


# ---------------------------------------------------------------------------
# Ledger mutations (store-backed)
# ---------------------------------------------------------------------------


def record_add(context: RuntimeContext, command: AddVoucherCommand) -> data_manager.VoucherRow:
    """Validate and insert a new voucher for the signed-in owner."""

    owner = require_owner(context)
    voucher = build_new_voucher(
        command,
        owner_id=owner,
        voucher_id=generate_voucher_id(),
        created_at=_utc_timestamp(),
    )
    try:
        data_manager.insert_vouchers(context.workbook, [voucher])
    except KeyError as exc:
        log.error("Store rejected new voucher '%s': %s", voucher.name, exc)
        raise StoreError(f"Unable to add voucher: {exc}") from exc
    finally:
        _invalidate_cache(context)
    log.info(
        "Added voucher '%s' (%s) value=%s spent=%s status=%s",
        voucher.voucher_id,
        voucher.name,
        voucher.value,
        voucher.spent,
        voucher.status,
    )
    return voucher


def record_partial_use(context: RuntimeContext, command: PartialUseCommand) -> data_manager.VoucherRow:
    """Redeem part of a voucher's remaining balance."""

    require_owner(context)
    current = get_voucher(context, command.voucher_id)
    updated = apply_partial_use(current, command.amount)
    _write_changes(context, current, updated)
    log.info(
        "Used %s of voucher '%s' (spent %s -> %s, status=%s)",
        updated.spent - current.spent,
        current.voucher_id,
        current.spent,
        updated.spent,
        updated.status,
    )
    return updated


def record_toggle(context: RuntimeContext, voucher_id: str) -> data_manager.VoucherRow:
    """Flip a voucher between fully used and fully unused."""

    require_owner(context)
    current = get_voucher(context, voucher_id)
    updated = apply_toggle(current)
    _write_changes(context, current, updated)
    log.info("Toggled voucher '%s' to %s", voucher_id, updated.status)
    return updated


def record_edit(context: RuntimeContext, command: EditVoucherCommand) -> data_manager.VoucherRow:
    """Replace a voucher's editable fields, clamping ``spent`` when needed."""

    require_owner(context)
    current = get_voucher(context, command.voucher_id)
    updated = apply_edit(current, command)
    _write_changes(context, current, updated)
    if updated.spent != current.spent:
        log.info(
            "Clamped spent of voucher '%s' from %s to %s",
            current.voucher_id,
            current.spent,
            updated.spent,
        )
    log.info("Edited voucher '%s'", current.voucher_id)
    return updated


def record_delete(context: RuntimeContext, voucher_id: str) -> None:
    """Permanently remove one of the owner's vouchers.

    Confirmation is the caller's job.
    """

    require_owner(context)
    current = get_voucher(context, voucher_id)
    try:
        data_manager.delete_voucher(context.workbook, current.voucher_id)
    except KeyError as exc:
        log.error("Store rejected delete of voucher '%s': %s", voucher_id, exc)
        raise StoreError(f"Unable to delete voucher '{voucher_id}': {exc}") from exc
    finally:
        _invalidate_cache(context)
    log.info("Deleted voucher '%s' (%s)", voucher_id, current.name)


def import_vouchers(context: RuntimeContext, rows: Iterable[Mapping[str, object]]) -> List[data_manager.VoucherRow]:
    """Insert every valid row as a new voucher in one batch.

    Malformed rows are dropped individually. If nothing survives, nothing is
    written.

    Raises:
        ValidationError: If no row is valid.
    """

    owner = require_owner(context)
    created_at = _utc_timestamp()
    raw_rows = list(rows)
    vouchers = [
        voucher
        for voucher in (
            parse_import_row(raw, owner_id=owner, voucher_id=generate_voucher_id(), created_at=created_at)
            for raw in raw_rows
        )
        if voucher is not None
    ]
    if not vouchers:
        log.warning("Import rejected: none of %d rows were valid", len(raw_rows))
        raise ValidationError("no valid rows")

    try:
        data_manager.insert_vouchers(context.workbook, vouchers)
    except KeyError as exc:
        log.error("Store rejected import batch: %s", exc)
        raise StoreError(f"Unable to import vouchers: {exc}") from exc
    finally:
        _invalidate_cache(context)
    log.info("Imported %d vouchers (%d rows dropped)", len(vouchers), len(raw_rows) - len(vouchers))
    return vouchers


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file.

    Raises:
        StoreError: If the file cannot be written.
    """

    try:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", context.settings.data_file, exc)
        raise StoreError(f"Unable to save workbook: {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk into a new context with an empty cache."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, owner_id=context.owner_id)


# ---------------------------------------------------------------------------
# List projection
# ---------------------------------------------------------------------------


def filter_by_category(vouchers: Iterable[data_manager.VoucherRow], category: Optional[str]) -> List[data_manager.VoucherRow]:
    if not category or category == ALL_CATEGORIES:
        return list(vouchers)
    return [voucher for voucher in vouchers if voucher.category == category]


def matches_search(voucher: data_manager.VoucherRow, term: str) -> bool:
    """Case-insensitive substring match on name, code, and category."""

    needle = term.strip().lower()
    if not needle:
        return True
    return any(needle in (text or "").lower() for text in (voucher.name, voucher.code, voucher.category))


def sort_vouchers(
    vouchers: Sequence[data_manager.VoucherRow],
    sort_key: Union[SortKey, str] = SortKey.CREATED_DESC,
    now: Optional[datetime] = None,
) -> List[data_manager.VoucherRow]:
    """Return a sorted copy of ``vouchers``. Ties keep their input order.

    ``created_desc`` keeps the input order, which the store already sorts
    newest first.
    """

    key = SortKey(sort_key)
    moment = _resolve_now(now)

    if key is SortKey.VALUE_DESC:
        return sorted(vouchers, key=lambda v: v.value, reverse=True)
    if key is SortKey.VALUE_ASC:
        return sorted(vouchers, key=lambda v: v.value)
    if key is SortKey.EXPIRY_ASC:
        return sorted(vouchers, key=lambda v: (v.expires_on is None, v.expires_on or date.min))
    if key is SortKey.REMAINING_DESC:
        return sorted(vouchers, key=remaining_balance, reverse=True)
    if key is SortKey.STATUS_USED_FIRST:
        return sorted(vouchers, key=lambda v: USED_FIRST_RANK[derive_status(v, moment)])
    if key is SortKey.STATUS_UNUSED_FIRST:
        return sorted(vouchers, key=lambda v: UNUSED_FIRST_RANK[derive_status(v, moment)])
    return list(vouchers)


def project_vouchers(
    vouchers: Sequence[data_manager.VoucherRow],
    *,
    category: Optional[str] = ALL_CATEGORIES,
    search: str = "",
    sort_key: Union[SortKey, str] = SortKey.CREATED_DESC,
    now: Optional[datetime] = None,
) -> List[data_manager.VoucherRow]:
    """Filter by category, then search, then sort, without mutating the input.

    Raises:
        ValueError: If ``sort_key`` is not a known :class:`SortKey`.
    """

    in_category = filter_by_category(vouchers, category)
    found = [voucher for voucher in in_category if matches_search(voucher, search or "")]
    return sort_vouchers(found, sort_key, now)


# ---------------------------------------------------------------------------
# Reporting and display
# ---------------------------------------------------------------------------


def summarize(
    vouchers: Sequence[data_manager.VoucherRow],
    now: Optional[datetime] = None,
    *,
    recent_limit: int = RECENT_VOUCHER_LIMIT,
) -> VoucherSummary:
    """Compute dashboard totals and effective-status counts."""

    moment = _resolve_now(now)
    total_value = sum((v.value for v in vouchers), Decimal("0"))
    total_spent = sum((v.spent for v in vouchers), Decimal("0"))
    counts = {status: 0 for status in VoucherStatus}
    for voucher in vouchers:
        counts[derive_status(voucher, moment)] += 1

    return VoucherSummary(
        total_value=total_value,
        total_spent=total_spent,
        total_remaining=total_value - total_spent,
        unused=counts[VoucherStatus.UNUSED],
        used=counts[VoucherStatus.USED],
        expired=counts[VoucherStatus.EXPIRED],
        recent=tuple(vouchers[:recent_limit]),
    )


def format_money(amount: Amount, symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    """Render an amount with no decimals and Indian digit grouping.

    ``1234567.5`` becomes ``₹12,34,568``. Non-numeric and non-finite amounts
    render as zero.
    """

    try:
        number = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        number = Decimal("0")
    if not number.is_finite():
        number = Decimal("0")
    whole = int(number.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    sign = "-" if whole < 0 else ""
    return f"{sign}{symbol}{_group_lakh(str(abs(whole)))}"


def _group_lakh(digits: str) -> str:
    # Last three digits, then pairs: 1234567 -> 12,34,567.
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    pairs = []
    while len(head) > 2:
        pairs.insert(0, head[-2:])
        head = head[:-2]
    return ",".join([head, *pairs, tail])


def days_until(expires_on: date, now: Optional[datetime] = None) -> int:
    """Whole days from ``now`` to the start of ``expires_on``, rounded up."""

    delta = datetime.combine(expires_on, time.min) - _resolve_now(now)
    return math.ceil(delta.total_seconds() / 86400)


def format_share_message(
    voucher: data_manager.VoucherRow,
    now: Optional[datetime] = None,
    *,
    symbol: str = DEFAULT_CURRENCY_SYMBOL,
) -> str:
    """Build the plain-text card used to share a voucher with someone."""

    if voucher.expires_on is not None:
        days_left = days_until(voucher.expires_on, now)
        plural = "" if days_left == 1 else "s"
        expiry = f"{voucher.expires_on.isoformat()} ({days_left} day{plural} left)"
    else:
        expiry = "-"

    lines = [
        voucher.name,
        f"Value: {format_money(voucher.value, symbol)}",
        f"Used: {format_money(voucher.spent, symbol)}",
        f"Remaining: {format_money(remaining_balance(voucher), symbol)}",
        f"Expiry: {expiry}",
        f"Category: {voucher.category}",
        f"Code: {voucher.code or '-'}",
        f"PIN: {voucher.pin or '-'}",
        f"Status: {derive_status(voucher, now).value}",
    ]
    return "\n".join(lines)
