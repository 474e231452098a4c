"""Shared pytest fixtures and utilities for invoicing tests."""

from __future__ import annotations

import argparse
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from invoicing_erp import cli, constants, core_logic, data_manager  # noqa: E402
from invoicing_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Numbering]\n"
    "Prefix = {prefix}\n"
    "Width = 4\n\n"
    "[Defaults]\n"
    "Currency = {currency}\n"
    "Country = México\n\n"
    "[Summary]\n"
    "Endpoint = {endpoint}\n"
    "ApiKey = {api_key}\n"
    "Timeout = 5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@dataclass
class MemoryStorage:
    """In-memory :class:`data_manager.InvoiceStore` used by unit tests.

    ``on_reload`` lets a test simulate another process writing between the
    moment an invoice is built and the moment it is committed.
    """

    clients: List[data_manager.ClientRow] = field(default_factory=list)
    products: List[data_manager.ProductRow] = field(default_factory=list)
    invoices: List[data_manager.InvoiceRow] = field(default_factory=list)
    profile: data_manager.CompanyProfile = field(
        default_factory=lambda: data_manager.CompanyProfile(name="Mi Empresa", tax_id="EMP010101AAA", address="Centro 1")
    )
    on_reload: Optional[Callable[["MemoryStorage"], None]] = None
    reload_calls: int = 0
    save_calls: int = 0
    write_lock: threading.RLock = field(default_factory=threading.RLock)

    def get_clients(self) -> List[data_manager.ClientRow]:
        return list(self.clients)

    def save_clients(self, clients: Sequence[data_manager.ClientRow]) -> None:
        self.save_calls += 1
        self.clients = list(clients)

    def get_products(self) -> List[data_manager.ProductRow]:
        return list(self.products)

    def save_products(self, products: Sequence[data_manager.ProductRow]) -> None:
        self.save_calls += 1
        self.products = list(products)

    def get_invoices(self) -> List[data_manager.InvoiceRow]:
        return list(self.invoices)

    def save_invoices(self, invoices: Sequence[data_manager.InvoiceRow]) -> None:
        self.save_calls += 1
        self.invoices = list(invoices)

    def get_company_profile(self) -> data_manager.CompanyProfile:
        return self.profile

    def save_company_profile(self, profile: data_manager.CompanyProfile) -> None:
        self.save_calls += 1
        self.profile = profile

    def reload(self) -> None:
        self.reload_calls += 1
        if self.on_reload is not None:
            self.on_reload(self)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized invoice workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        company_name: str = "Test Company",
        currency: str = "MXN",
        filename: str = "invoices.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, company_name=company_name, currency=currency, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh invoice workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Company",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        prefix: str = "INV-",
        currency: str = "MXN",
        endpoint: str = "",
        api_key: str = "",
        create_workbook: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", company_name=company_name, currency=currency)
        else:
            workbook_path = bundle_dir / "invoices.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                prefix=prefix,
                currency=currency,
                endpoint=endpoint,
                api_key=api_key,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "invoices.xlsx",
        company_name="Test Company",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def storage() -> MemoryStorage:
    """Return an empty in-memory store."""

    return MemoryStorage()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, storage: MemoryStorage) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and storage."""

    return core_logic.RuntimeContext(settings=settings, storage=storage)


@pytest.fixture
def sample_client() -> data_manager.ClientRow:
    """A client carrying every field an invoice snapshots."""

    return data_manager.ClientRow(
        client_id="C1",
        name="Cliente Uno",
        tax_id="CUNO800101AB1",
        email="uno@example.com",
        address="Av. Reforma 100",
        city="CDMX",
        zip_code="06600",
        country="México",
    )


@pytest.fixture
def sample_products() -> List[data_manager.ProductRow]:
    """Two priced products."""

    return [
        data_manager.ProductRow("P1", "SKU-1", "Consultoría", Decimal("100.00"), "E48"),
        data_manager.ProductRow("P2", "SKU-2", "Cable", Decimal("19.99"), "H87"),
    ]


@pytest.fixture
def seeded_context(
    context: core_logic.RuntimeContext,
    storage: MemoryStorage,
    sample_client: data_manager.ClientRow,
    sample_products: List[data_manager.ProductRow],
) -> core_logic.RuntimeContext:
    """In-memory context pre-populated with one client and two products."""

    storage.clients = [sample_client]
    storage.products = list(sample_products)
    return context


@pytest.fixture
def make_invoice() -> Callable[..., data_manager.InvoiceRow]:
    """Factory building stored-looking invoices for numbering and reports."""

    def _make(
        number: str,
        *,
        total: str = "100.00",
        invoice_date: date = date(2024, 1, 1),
        status: constants.InvoiceStatus = constants.InvoiceStatus.DRAFT,
    ) -> data_manager.InvoiceRow:
        amount = Decimal(total)
        return data_manager.InvoiceRow(
            invoice_id=f"F-{number}",
            number=number,
            client_id="C1",
            client_name="Cliente Uno",
            client_address="Av. Reforma 100",
            client_tax_id="CUNO800101AB1",
            invoice_date=invoice_date,
            items=(),
            subtotal=amount,
            tax_rate=Decimal("0"),
            tax_name="",
            tax_amount=Decimal("0.00"),
            retention_rate=Decimal("0"),
            retention_name="",
            retention_amount=Decimal("0.00"),
            total=amount,
            status=status,
        )

    return _make


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="invoice-cli", description="Invoice CLI")


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
