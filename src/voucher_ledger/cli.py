"""Command-line front-end for the voucher ledger.

This module only wires argparse and turns parsed arguments into the command
objects used by the business layer. It also renders read-only results as
plain text. Rules and persistence live in :mod:`voucher_ledger.core_logic`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, interchange, log
from .constants import ALL_CATEGORIES, Category, SortKey

CATEGORY_CHOICES = [member.value for member in Category]
SORT_CHOICES = [member.value for member in SortKey]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="voucher-cli",
        description="Track gift voucher balances, usage, and expiry in a Voucher workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini at or above the working directory).",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Act as this owner instead of [Session] Owner from config.ini.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change vouchers."""
    specs = {
        "add": register_add_command(subparsers),
        "use": register_use_command(subparsers),
        "toggle": register_toggle_command(subparsers),
        "edit": register_edit_command(subparsers),
        "delete": register_delete_command(subparsers),
        "import": register_import_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "list": register_list_command(subparsers),
        "show": register_show_command(subparsers),
        "summary": register_summary_command(subparsers),
        "share": register_share_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_voucher_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--value", required=required)
    parser.add_argument("--category", choices=CATEGORY_CHOICES, default=None)
    parser.add_argument("--code", default=None)
    parser.add_argument("--pin", default=None)
    parser.add_argument(
        "--expires-on",
        dest="expires_on",
        default=None,
        help="Expiry date as YYYY-MM-DD. Pass an empty string to clear it.",
    )


def register_add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add``."""
    name = "add"
    help_text = "Add a new voucher."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_voucher_fields(parser, required=True)
        parser.add_argument("--initial-used", dest="initial_used", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add, mutates=True)


def register_use_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``use``."""
    name = "use"
    help_text = "Redeem part of a voucher's remaining balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_use, mutates=True)


def register_toggle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``toggle``."""
    name = "toggle"
    help_text = "Mark a voucher fully used, or reset a used voucher to unused."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_toggle, mutates=True)


def register_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit``."""
    name = "edit"
    help_text = "Edit a voucher. Omitted fields keep their current values."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        _add_voucher_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit, mutates=True)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a voucher permanently."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the deletion.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete, mutates=True)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Import vouchers from an .xlsx or .csv file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--input", dest="input_path", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import, mutates=True)


def register_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "List vouchers with optional filter, search, and sort."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", choices=[ALL_CATEGORIES, *CATEGORY_CHOICES], default=ALL_CATEGORIES)
        parser.add_argument("--search", default="")
        parser.add_argument("--sort", choices=SORT_CHOICES, default=SortKey.CREATED_DESC.value)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Show every field of one voucher."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display totals, status counts, and recent vouchers."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary)


def register_share_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``share``."""
    name = "share"
    help_text = "Print a shareable text card for a voucher."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_share)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export all vouchers to .xlsx or .csv."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", dest="output_path", type=Path, default=Path("vouchers.xlsx"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None, owner_id: Optional[str] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the data layer searches upwards from the working
    directory for ``config.ini``.
    """
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target, owner_id=owner_id)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_expiry(raw: Optional[str]) -> Optional[date]:
    """Parse ``YYYY-MM-DD``; blank input means "never expires".

    Raises:
        core_logic.ValidationError: If the text is not an ISO date.
    """
    if raw is None or not raw.strip():
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise core_logic.ValidationError(f"Invalid expiry date '{raw}', expected YYYY-MM-DD") from exc


def translate_add(args: argparse.Namespace) -> core_logic.AddVoucherCommand:
    """Translate CLI args into an add command object."""
    return core_logic.AddVoucherCommand(
        name=args.name,
        value=args.value,
        category=args.category or Category.GENERAL.value,
        initial_used=args.initial_used or "0",
        code=args.code,
        pin=args.pin,
        expires_on=parse_expiry(args.expires_on),
    )


def translate_use(args: argparse.Namespace) -> core_logic.PartialUseCommand:
    """Translate CLI args into a partial-use command object."""
    return core_logic.PartialUseCommand(voucher_id=args.voucher_id, amount=args.amount)


def translate_edit(args: argparse.Namespace, current: data_manager.VoucherRow) -> core_logic.EditVoucherCommand:
    """Translate CLI args into an edit command, filling gaps from ``current``."""
    return core_logic.EditVoucherCommand(
        voucher_id=current.voucher_id,
        name=args.name if args.name is not None else current.name,
        value=args.value if args.value is not None else current.value,
        category=args.category or current.category,
        code=args.code if args.code is not None else current.code,
        pin=args.pin if args.pin is not None else current.pin,
        expires_on=parse_expiry(args.expires_on) if args.expires_on is not None else current.expires_on,
    )


def run_add(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add workflow via the BLL."""
    voucher = core_logic.record_add(context, translate_add(args))
    print(f"Added voucher {voucher.voucher_id} ({voucher.name}).")
    return 0


def run_use(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the partial-use workflow via the BLL."""
    voucher = core_logic.record_partial_use(context, translate_use(args))
    symbol = context.settings.currency_symbol
    print(
        f"{voucher.name}: remaining {core_logic.format_money(core_logic.remaining_balance(voucher), symbol)}"
        f" ({voucher.status})."
    )
    return 0


def run_toggle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the toggle workflow via the BLL."""
    voucher = core_logic.record_toggle(context, args.voucher_id)
    print(f"{voucher.name} is now {voucher.status}.")
    return 0


def run_edit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit workflow via the BLL."""
    current = core_logic.get_voucher(context, args.voucher_id)
    voucher = core_logic.record_edit(context, translate_edit(args, current))
    print(f"Updated voucher {voucher.voucher_id} ({voucher.name}).")
    return 0


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow once the user has confirmed it."""
    if not getattr(args, "yes", False):
        log.warning("Deletion of voucher '%s' not confirmed", args.voucher_id)
        print("Deletion not confirmed; re-run with --yes to delete this voucher.")
        return 1
    core_logic.record_delete(context, args.voucher_id)
    print(f"Deleted voucher {args.voucher_id}.")
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bulk import workflow."""
    imported = interchange.import_file(context, args.input_path)
    print(f"Imported {len(imported)} vouchers.")
    return 0


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the list workflow."""
    vouchers = core_logic.project_vouchers(
        core_logic.list_vouchers(context),
        category=args.category,
        search=args.search,
        sort_key=args.sort,
    )
    print(render_table(vouchers, symbol=context.settings.currency_symbol))
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the show workflow."""
    voucher = core_logic.get_voucher(context, args.voucher_id)
    symbol = context.settings.currency_symbol
    print(f"ID: {voucher.voucher_id}")
    print(core_logic.format_share_message(voucher, symbol=symbol))
    print(f"Created: {voucher.created_at}")
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard summary workflow."""
    vouchers = core_logic.list_vouchers(context)
    summary = core_logic.summarize(vouchers)
    print(render_summary(summary, count=len(vouchers), symbol=context.settings.currency_symbol))
    return 0


def run_share(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the share workflow."""
    voucher = core_logic.get_voucher(context, args.voucher_id)
    print(core_logic.format_share_message(voucher, symbol=context.settings.currency_symbol))
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the export workflow."""
    written = interchange.export_vouchers(context, args.output_path)
    print(f"Exported vouchers to {written}.")
    return 0


def render_table(vouchers: Sequence[data_manager.VoucherRow], *, symbol: str) -> str:
    """Render vouchers as a fixed-width text table."""
    if not vouchers:
        return "No vouchers found."
    header = f"{'ID':<32}  {'Name':<24}  {'Value':>10}  {'Remaining':>10}  {'Category':<12}  {'Expires':<10}  Status"
    lines = [header, "-" * len(header)]
    for voucher in vouchers:
        expires = voucher.expires_on.isoformat() if voucher.expires_on else "-"
        lines.append(
            f"{voucher.voucher_id:<32}  {voucher.name[:24]:<24}  "
            f"{core_logic.format_money(voucher.value, symbol):>10}  "
            f"{core_logic.format_money(core_logic.remaining_balance(voucher), symbol):>10}  "
            f"{voucher.category[:12]:<12}  {expires:<10}  {core_logic.derive_status(voucher).value}"
        )
    return "\n".join(lines)


def render_summary(summary: core_logic.VoucherSummary, *, count: int, symbol: str) -> str:
    """Render the dashboard summary as text."""
    lines = [
        f"Total Value: {core_logic.format_money(summary.total_value, symbol)}",
        f"Total Spent: {core_logic.format_money(summary.total_spent, symbol)}",
        f"Remaining:   {core_logic.format_money(summary.total_remaining, symbol)}",
        f"You have {count} vouchers. Unused: {summary.unused}, Used: {summary.used}, Expired: {summary.expired}.",
    ]
    if summary.recent:
        lines.append("")
        lines.append("Recent vouchers:")
        lines.append(render_table(summary.recent, symbol=symbol))
    return "\n".join(lines)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes and log the message."""
    log.error("%s", error)
    if isinstance(error, core_logic.ValidationError):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, core_logic.NotAuthenticated):
        return 4
    if isinstance(error, core_logic.StoreError):
        return 5
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after a successful mutating command."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "owner", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        spec = command_table.get(args.command)
        if exit_code == 0 and spec is not None and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
