"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping
from unittest.mock import Mock

import pytest

from invoicing_erp import cli, core_logic, importers, setup_excel, summary
from invoicing_erp.constants import InvoiceStatus, TaxType


WRITE_COMMANDS = {
    "init",
    "add-client",
    "add-product",
    "import-clients",
    "import-products",
    "company",
    "create-invoice",
    "set-status",
}

READ_COMMANDS = {
    "next-number",
    "invoices",
    "report",
    "summarize",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "invoice-cli"


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_only_init_runs_without_context(cli_parser):
    """Every command but init needs a loaded workbook."""

    command_table = cli.configure_subcommands(cli_parser)

    assert {name for name, spec in command_table.items() if not spec.requires_context} == {"init"}


def test_create_invoice_parser_collects_lines():
    """Repeated --line options accumulate in order."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["create-invoice", "--client-id", "C1", "--line", "P1:2", "--line", "P2", "--tax-rate", "0.16", "--issue"]
    )

    assert args.command == "create-invoice"
    assert args.lines == ["P1:2", "P2"]
    assert args.issue is True


def test_set_status_parser_restricts_choices():
    """Unknown statuses are rejected by argparse itself."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["set-status", "INV-0001", "void"])


# ---------------------------------------------------------------------------
# Dispatch and tables
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor of the parsed command."""

    execute = Mock(return_value=0)
    table = {"x": cli.CommandSpec("x", "help", lambda sub: sub.add_parser("x"), execute)}
    args = argparse.Namespace(command="x")

    assert cli.dispatch_command(context, args, table) == 0
    execute.assert_called_once_with(context, args)


def test_dispatch_command_handles_unknown_commands(context):
    """Unknown commands raise KeyError."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="missing"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """Specs are indexed by name."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    """Duplicate names are a programming error."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def test_parse_line_defaults_quantity():
    """A bare product id means one unit."""

    assert cli.parse_line("P9") == core_logic.InvoiceLine(product_id="P9", quantity=Decimal("1"))
    assert cli.parse_line("P9:2.5") == core_logic.InvoiceLine(product_id="P9", quantity=Decimal("2.5"))


@pytest.mark.parametrize("raw", [":2", "P1:abc", "P1:NaN"])
def test_parse_line_rejects_malformed_input(raw):
    """Malformed lines are validation errors, not crashes."""

    with pytest.raises(core_logic.ValidationError):
        cli.parse_line(raw)


def test_translate_create_invoice_builds_command():
    """Rates become typed tax settings and the date is parsed."""

    args = argparse.Namespace(
        client_id="C1",
        lines=["P1:2"],
        tax_name="IVA",
        tax_rate="0.16",
        retention_name="ISR",
        retention_rate="0.10",
        invoice_date="2024-05-01",
        issue=True,
    )

    command = cli.translate_create_invoice(args)

    assert command.client_id == "C1"
    assert command.lines == (core_logic.InvoiceLine("P1", Decimal("2")),)
    assert command.tax == core_logic.TaxSetting("IVA", Decimal("0.16"), TaxType.TAX)
    assert command.retention == core_logic.TaxSetting("ISR", Decimal("0.10"), TaxType.RETENTION)
    assert command.invoice_date == date(2024, 5, 1)
    assert command.issue is True


def test_translate_create_invoice_without_rates():
    """Omitted rates leave the tax settings unset."""

    args = argparse.Namespace(
        client_id="C1",
        lines=[],
        tax_name="IVA",
        tax_rate=None,
        retention_name="ISR",
        retention_rate=None,
        invoice_date=None,
        issue=False,
    )

    command = cli.translate_create_invoice(args)

    assert command.tax is None
    assert command.retention is None
    assert command.invoice_date is None


def test_translate_create_invoice_rejects_bad_date():
    """Dates must be ISO formatted."""

    args = argparse.Namespace(
        client_id="C1",
        lines=[],
        tax_name="IVA",
        tax_rate=None,
        retention_name="ISR",
        retention_rate=None,
        invoice_date="01/05/2024",
        issue=False,
    )

    with pytest.raises(core_logic.ValidationError) as excinfo:
        cli.translate_create_invoice(args)
    assert excinfo.value.field == "date"


def test_translate_add_product_parses_price():
    """Prices are converted to Decimal."""

    args = argparse.Namespace(name="Cable", code="C-1", price="19.99", unit=None, description="")

    command = cli.translate_add_product(args)

    assert command.price == Decimal("19.99")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_create_invoice_prints_totals(seeded_context, capsys):
    """The created invoice number and total are printed."""

    args = argparse.Namespace(
        client_id="C1",
        lines=["P1:2"],
        tax_name="IVA",
        tax_rate="0.16",
        retention_name="ISR",
        retention_rate=None,
        invoice_date=None,
        issue=False,
    )

    assert cli.run_create_invoice(seeded_context, args) == 0

    output = capsys.readouterr().out
    assert "INV-0001" in output
    assert "$232.00" in output


def test_run_set_status_invokes_bll(context, monkeypatch, make_invoice, capsys):
    """set-status forwards the override flag to the BLL."""

    change = Mock(return_value=make_invoice("INV-0001", status=InvoiceStatus.DRAFT))
    monkeypatch.setattr(core_logic, "change_invoice_status", change)

    args = argparse.Namespace(invoice="INV-0001", status="draft", override=True)
    assert cli.run_set_status(context, args) == 0

    change.assert_called_once_with(context, "INV-0001", "draft", override=True)
    assert "draft" in capsys.readouterr().out


def test_run_next_number_prints_preview(context, storage, make_invoice, capsys):
    """next-number prints the number without storing anything."""

    storage.invoices = [make_invoice("INV-0001")]

    assert cli.run_next_number(context, argparse.Namespace()) == 0

    assert capsys.readouterr().out.strip() == "INV-0002"
    assert storage.save_calls == 0


def test_run_report_prints_metrics(context, storage, make_invoice, capsys):
    """The report shows the totals in the profile currency."""

    storage.invoices = [
        make_invoice("INV-0001", total="100.00", status=InvoiceStatus.PAID),
        make_invoice("INV-0002", total="50.00"),
    ]

    assert cli.run_report(context, argparse.Namespace(statuses=["paid"])) == 0

    output = capsys.readouterr().out
    assert "$100.00" in output
    assert "Invoices:       1" in output


def test_run_import_products_lists_skipped_rows(context, monkeypatch, capsys, tmp_path):
    """Rejected CSV rows are reported to the user."""

    result = importers.ImportResult(imported=(), skipped=(importers.SkippedRow(line=3, reason="bad price"),))
    monkeypatch.setattr(importers, "import_products", Mock(return_value=result))

    assert cli.run_import_products(context, argparse.Namespace(path=tmp_path / "p.csv")) == 0

    assert "skipped line 3: bad price" in capsys.readouterr().out


def test_run_company_displays_profile_without_changes(context, storage, capsys):
    """Without options the profile is only displayed."""

    args = argparse.Namespace(
        name=None,
        tax_id=None,
        address=None,
        currency=None,
        logo_url=None,
        api_provider=None,
        api_environment="sandbox",
        api_key="",
        api_secret="",
        api_endpoint="",
        api_cert_password="",
    )

    assert cli.run_company(context, args) == 0

    assert "Mi Empresa" in capsys.readouterr().out
    assert storage.save_calls == 0


def test_run_summarize_uses_configured_service(context, monkeypatch, capsys):
    """summarize builds the service from settings and prints the text."""

    class _Service:
        async def summarize(self, invoices):
            return "Sales look healthy."

    factory = Mock(return_value=_Service())
    monkeypatch.setattr(summary, "service_from_settings", factory)

    assert cli.run_summarize(context, argparse.Namespace(timeout=1.0)) == 0

    factory.assert_called_once_with(context.settings.summary, currency="MXN")
    assert "Sales look healthy." in capsys.readouterr().out


def test_run_init_creates_workbook(config_factory, monkeypatch, capsys):
    """init creates the workbook named by the configuration."""

    bundle = config_factory(create_workbook=False)
    created = Mock(return_value=bundle.workbook_path)
    monkeypatch.setattr(setup_excel, "run_from_config", created)

    assert cli.run_init(None, argparse.Namespace(config=bundle.config_path, force=False)) == 0

    created.assert_called_once_with(bundle.config_path, overwrite=False)
    assert "Created invoice workbook" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (core_logic.ValidationError("price", "must be positive"), 2),
        (core_logic.MissingReferenceError("client_id", "C9"), 2),
        (core_logic.LifecycleError("paid", "pending"), 2),
        (FileNotFoundError("missing"), 3),
        (core_logic.NumberingConflictError("INV-0001", attempts=3), 4),
        (core_logic.CollaboratorError("disk full"), 5),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """Each failure category maps to its own exit code."""

    assert cli.handle_cli_error(error) == expected
    assert str(error) in caplog.text


def test_main_executes_specified_command(monkeypatch, context):
    """main should load the context and execute the parsed command."""

    parser = _stub_parser(command="report")
    command_table = {"report": cli.CommandSpec("report", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    called = {}

    def fake_dispatch(ctx, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = ctx
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["report"]) == 0
    assert called["context"] is context
    assert called["args"].command == "report"


def test_main_skips_context_for_init(monkeypatch):
    """init must run before a workbook exists."""

    parser = _stub_parser(command="init")
    execute = Mock(return_value=0)
    command_table = {"init": cli.CommandSpec("init", "help", lambda _: parser, execute, requires_context=False)}
    loader = Mock()

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", loader)

    assert cli.main(["init"]) == 0
    loader.assert_not_called()
    assert execute.call_args.args[0] is None


def test_main_handles_bll_errors(monkeypatch, context):
    """Domain failures are converted into exit codes."""

    parser = _stub_parser(command="set-status")

    def failing(*_):
        raise core_logic.LifecycleError("paid", "draft")

    command_table = {"set-status": cli.CommandSpec("set-status", "help", lambda _: parser, failing)}
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    assert cli.main(["set-status"]) == 2


def test_main_reports_missing_config(monkeypatch, tmp_path):
    """A missing configuration file maps to exit code 3."""

    monkeypatch.chdir(tmp_path)

    assert cli.main(["invoices"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
