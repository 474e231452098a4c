"""Command-line entry points for the invoicing toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end
that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, importers, log, setup_excel, summary
from .constants import API_PROVIDERS, UNIT_TYPES, ApiEnvironment, InvoiceStatus, TaxType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    Commands with ``requires_context=False`` run before any workbook exists
    and receive ``None`` instead of a runtime context.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    requires_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-cli",
        description="Command-line tools for the invoicing workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
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
    """Declare mutating CLI commands such as registrations and invoices."""
    specs = {
        "init": register_init_command(subparsers),
        "add-client": register_add_client_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "import-clients": register_import_clients_command(subparsers),
        "import-products": register_import_products_command(subparsers),
        "company": register_company_command(subparsers),
        "create-invoice": register_create_invoice_command(subparsers),
        "set-status": register_set_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "next-number": register_next_number_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "report": register_report_command(subparsers),
        "summarize": register_summarize_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty invoice workbook as named by config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, requires_context=False)


def register_add_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-client``."""
    name = "add-client"
    help_text = "Register a new client in the Clients sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--tax-id", required=True)
        parser.add_argument("--email", required=True)
        parser.add_argument("--address", required=True)
        parser.add_argument("--zip", dest="zip_code", required=True)
        parser.add_argument("--city", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--country", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_client)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product or service in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--code", required=True, help="SKU or fiscal product code.")
        parser.add_argument("--price", required=True)
        parser.add_argument("--unit", choices=sorted(UNIT_TYPES), default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_import_clients_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-clients``."""
    name = "import-clients"
    help_text = "Import clients from a CSV file (name,tax_id,email,address)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("path", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_clients)


def register_import_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-products``."""
    name = "import-products"
    help_text = "Import products from a CSV file (name,price,code)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("path", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_products)


def register_company_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``company``."""
    name = "company"
    help_text = "Show or update the issuer profile."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", default=None)
        parser.add_argument("--tax-id", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--currency", default=None, help="Three-letter currency code, e.g. MXN.")
        parser.add_argument("--logo-url", default=None)
        parser.add_argument("--api-provider", choices=API_PROVIDERS, default=None)
        parser.add_argument(
            "--api-environment",
            choices=[member.value for member in ApiEnvironment],
            default=ApiEnvironment.SANDBOX.value,
        )
        parser.add_argument("--api-key", default="")
        parser.add_argument("--api-secret", default="")
        parser.add_argument("--api-endpoint", default="")
        parser.add_argument("--api-cert-password", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_company)


def register_create_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-invoice``."""
    name = "create-invoice"
    help_text = "Create and number a new invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            default=[],
            metavar="PRODUCT_ID:QUANTITY",
            help="Invoice line; repeat for several lines.",
        )
        parser.add_argument("--tax-name", default="IVA")
        parser.add_argument("--tax-rate", default=None, help="Fractional tax rate, e.g. 0.16.")
        parser.add_argument("--retention-name", default="Retención")
        parser.add_argument("--retention-rate", default=None, help="Fractional retention rate, e.g. 0.10.")
        parser.add_argument("--date", dest="invoice_date", default=None, help="Issue date (YYYY-MM-DD).")
        parser.add_argument("--issue", action="store_true", help="Create the invoice as pending instead of draft.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_invoice)


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Move an invoice to another status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("invoice", help="Invoice id or number.")
        parser.add_argument("status", choices=[member.value for member in InvoiceStatus])
        parser.add_argument(
            "--override",
            action="store_true",
            help="Administrative override required to move a paid invoice.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_next_number_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``next-number``."""
    name = "next-number"
    help_text = "Preview the number the next invoice would receive."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_next_number)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in InvoiceStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display total sales, invoice count, average ticket, and daily sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--status",
            dest="statuses",
            action="append",
            choices=[member.value for member in InvoiceStatus],
            default=None,
            help="Restrict the report to a status; repeat for several.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_summarize_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summarize``."""
    name = "summarize"
    help_text = "Ask the configured summary service for a sales analysis."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the service.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summarize)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


def parse_decimal(raw: Optional[str], field: str) -> Optional[Decimal]:
    """Parse ``raw`` into a Decimal, reporting bad input as a validation error."""
    if raw is None:
        return None
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise core_logic.ValidationError(field, f"'{raw}' is not a number") from exc
    if not value.is_finite():
        raise core_logic.ValidationError(field, f"'{raw}' is not a number")
    return value


def parse_line(raw: str) -> core_logic.InvoiceLine:
    """Parse ``PRODUCT_ID:QUANTITY`` (quantity defaults to 1)."""
    product_id, separator, quantity = raw.rpartition(":")
    if not separator:
        product_id, quantity = raw, "1"
    product_id = product_id.strip()
    if not product_id:
        raise core_logic.ValidationError("lines", f"'{raw}' does not name a product")
    return core_logic.InvoiceLine(product_id=product_id, quantity=parse_decimal(quantity, "quantity"))


def translate_add_client(args: argparse.Namespace) -> core_logic.ClientCommand:
    """Translate CLI args into a client registration command."""
    return core_logic.ClientCommand(
        name=args.name,
        tax_id=args.tax_id,
        email=args.email,
        address=args.address,
        zip_code=args.zip_code,
        city=args.city,
        phone=args.phone,
        country=args.country,
    )


def translate_add_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product registration command."""
    return core_logic.ProductCommand(
        name=args.name,
        code=args.code,
        price=parse_decimal(args.price, "price"),
        unit=args.unit,
        description=args.description,
    )


def translate_create_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice creation command."""
    tax_rate = parse_decimal(args.tax_rate, "tax_rate")
    retention_rate = parse_decimal(args.retention_rate, "retention_rate")
    tax = None
    if tax_rate is not None:
        tax = core_logic.TaxSetting(name=args.tax_name, rate=tax_rate, tax_type=TaxType.TAX)
    retention = None
    if retention_rate is not None:
        retention = core_logic.TaxSetting(
            name=args.retention_name,
            rate=retention_rate,
            tax_type=TaxType.RETENTION,
        )
    invoice_date = None
    if args.invoice_date:
        try:
            invoice_date = date.fromisoformat(args.invoice_date)
        except ValueError as exc:
            raise core_logic.ValidationError("date", f"'{args.invoice_date}' is not an ISO date") from exc
    return core_logic.InvoiceCommand(
        client_id=args.client_id,
        lines=tuple(parse_line(raw) for raw in args.lines),
        tax=tax,
        retention=retention,
        invoice_date=invoice_date,
        issue=args.issue,
    )


def translate_api_config(args: argparse.Namespace) -> Optional[data_manager.ApiConfig]:
    """Translate the ``--api-*`` options into an :class:`ApiConfig`."""
    if args.api_provider is None:
        return None
    return data_manager.ApiConfig(
        provider=args.api_provider,
        environment=ApiEnvironment(args.api_environment),
        api_key=args.api_key,
        api_secret=args.api_secret,
        endpoint_url=args.api_endpoint,
        cert_password=args.api_cert_password,
    )


def format_invoice_line(invoice: data_manager.InvoiceRow) -> str:
    """Render an invoice as a single listing row."""
    return (
        f"{invoice.number}  {invoice.invoice_date.isoformat()}  {invoice.status.value:<8}  "
        f"{core_logic.format_currency(invoice.total, invoice.currency):>14}  {invoice.client_name}"
    )


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the workbook named by the configuration file."""
    config_path = data_manager.find_config_file(args.config)
    destination = setup_excel.run_from_config(Path(config_path), overwrite=args.force)
    print(f"Created invoice workbook at '{destination}'.")
    return 0


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the client registration workflow in the BLL."""
    client = core_logic.register_client(context, translate_add_client(args))
    print(f"Registered client {client.client_id} ({client.name}, {client.tax_id}).")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product registration workflow in the BLL."""
    product = core_logic.register_product(context, translate_add_product(args))
    print(f"Registered product {product.product_id} ({product.name}, {product.price}).")
    return 0


def run_import_clients(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Import clients from CSV."""
    result = importers.import_clients(context, args.path)
    print(f"Imported {len(result.imported)} clients.")
    return 0


def run_import_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Import products from CSV, listing rejected rows."""
    result = importers.import_products(context, args.path)
    print(f"Imported {len(result.imported)} products.")
    for skipped in result.skipped:
        print(f"  skipped line {skipped.line}: {skipped.reason}")
    return 0


def run_company(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Update the issuer profile when options are given, then display it."""
    changes = {
        "name": args.name,
        "tax_id": args.tax_id,
        "address": args.address,
        "currency": args.currency,
        "logo_url": args.logo_url,
        "api_config": translate_api_config(args),
    }
    if any(value is not None for value in changes.values()):
        profile = core_logic.update_company_profile(context, **changes)
    else:
        profile = core_logic.get_company_profile(context)
    print(f"Name:     {profile.name}")
    print(f"Tax ID:   {profile.tax_id}")
    print(f"Address:  {profile.address}")
    print(f"Currency: {profile.currency}")
    if profile.api_config is not None:
        print(f"API:      {profile.api_config.provider} ({profile.api_config.environment.value})")
    return 0


def run_create_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice creation workflow via the BLL."""
    invoice = core_logic.create_invoice(context, translate_create_invoice(args))
    currency = invoice.currency
    print(f"Created invoice {invoice.number} ({invoice.status.value}) for {invoice.client_name}.")
    print(f"  Subtotal:  {core_logic.format_currency(invoice.subtotal, currency)}")
    if invoice.tax_name:
        print(f"  {invoice.tax_name}: {core_logic.format_currency(invoice.tax_amount, currency)}")
    if invoice.retention_name:
        print(f"  {invoice.retention_name}: -{core_logic.format_currency(invoice.retention_amount, currency)}")
    print(f"  Total:     {core_logic.format_currency(invoice.total, currency)}")
    return 0


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a status transition via the BLL."""
    invoice = core_logic.change_invoice_status(context, args.invoice, args.status, override=args.override)
    print(f"Invoice {invoice.number} is now {invoice.status.value}.")
    return 0


def run_next_number(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the number the next invoice would receive."""
    numbering = context.settings.numbering
    print(
        core_logic.next_invoice_number(
            core_logic.list_invoices(context),
            prefix=numbering.prefix,
            width=numbering.width,
        )
    )
    return 0


def run_invoices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List invoices, optionally filtered by status."""
    status = InvoiceStatus(args.status) if args.status else None
    for invoice in core_logic.list_invoices(context, status=status):
        print(format_invoice_line(invoice))
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales reporting workflow."""
    statuses = [InvoiceStatus(value) for value in args.statuses] if args.statuses else None
    report = core_logic.build_sales_report(context, statuses=statuses)
    currency = core_logic.get_company_profile(context).currency
    print(f"Total sales:    {core_logic.format_currency(report.total_sales, currency)}")
    print(f"Invoices:       {report.invoice_count}")
    print(f"Average ticket: {core_logic.format_currency(report.average_ticket, currency)}")
    for point in report.series:
        print(f"  {point.date.isoformat()}  {core_logic.format_currency(point.amount, currency)}")
    return 0


def run_summarize(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Request and print a natural-language sales analysis."""
    currency = core_logic.get_company_profile(context).currency
    service = summary.service_from_settings(context.settings.summary, currency=currency)
    analysis = summary.SalesAnalysis()
    text = asyncio.run(analysis.refresh(service, core_logic.list_invoices(context), timeout=args.timeout))
    print(text)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.ValidationError, core_logic.LifecycleError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.NumberingConflictError):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.CollaboratorError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = None
        if command_table[args.command].requires_context:
            context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    raise SystemExit(main())
