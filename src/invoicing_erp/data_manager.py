"""Data access layer for the invoicing toolkit.

This module provides low-level helpers that read from and write to the
invoice workbook (``invoices.xlsx`` by default). Business logic belongs
elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and replacing whole
   collections (clients, products, invoices, company profile).
4. The :class:`WorkbookStorage` adapter that exposes those operations through
   the :class:`InvoiceStore` protocol consumed by the business layer.
"""


from __future__ import annotations

import configparser
import os
import threading
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar

from filelock import FileLock, Timeout
import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import DEFAULTS, ApiEnvironment, InvoiceStatus, SheetName
from .exceptions import CollaboratorError


CONFIG_FILE_NAME = "config.ini"
CLIENTS_SHEET = SheetName.CLIENTS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
INVOICES_SHEET = SheetName.INVOICES.value
INVOICE_ITEMS_SHEET = SheetName.INVOICE_ITEMS.value
COMPANY_PROFILE_SHEET = SheetName.COMPANY_PROFILE.value

MONEY_QUANTUM = Decimal("0.01")

# Column layout of every managed sheet, in worksheet order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    CLIENTS_SHEET: [
        "ClientID",
        "Name",
        "TaxID",
        "Email",
        "Address",
        "City",
        "Zip",
        "Phone",
        "Country",
    ],
    PRODUCTS_SHEET: [
        "ProductID",
        "Code",
        "Name",
        "Price",
        "Unit",
        "Description",
    ],
    INVOICES_SHEET: [
        "InvoiceID",
        "Number",
        "ClientID",
        "ClientName",
        "ClientAddress",
        "ClientTaxID",
        "Date",
        "Subtotal",
        "TaxRate",
        "TaxName",
        "TaxAmount",
        "RetentionRate",
        "RetentionName",
        "RetentionAmount",
        "Total",
        "Status",
        "Currency",
    ],
    INVOICE_ITEMS_SHEET: [
        "ItemID",
        "InvoiceID",
        "ProductID",
        "ProductName",
        "Quantity",
        "UnitPrice",
        "Total",
    ],
    COMPANY_PROFILE_SHEET: [
        "Field",
        "Value",
    ],
}

T = TypeVar("T")


@dataclass(frozen=True)
class NumberingSettings:
    """Invoice number formatting rules from the ``[Numbering]`` section."""

    prefix: str = DEFAULTS["Prefix"]
    width: int = int(DEFAULTS["Width"])


@dataclass(frozen=True)
class RecordDefaults:
    """Fallback values for fields omitted by forms or CSV imports."""

    currency: str = DEFAULTS["Currency"]
    country: str = DEFAULTS["Country"]
    unit: str = DEFAULTS["Unit"]
    placeholder_tax_id: str = DEFAULTS["PlaceholderTaxId"]
    import_product_code: str = DEFAULTS["ImportProductCode"]


@dataclass(frozen=True)
class SummarySettings:
    """Connection details for the sales summary service."""

    endpoint: str = ""
    api_key: str = ""
    model: str = DEFAULTS["Model"]
    timeout: float = float(DEFAULTS["Timeout"])

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint and self.api_key)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    numbering: NumberingSettings = field(default_factory=NumberingSettings)
    defaults: RecordDefaults = field(default_factory=RecordDefaults)
    summary: SummarySettings = field(default_factory=SummarySettings)


@dataclass(frozen=True)
class ClientRow:
    """In-memory view of a row from the ``Clients`` sheet."""

    client_id: str
    name: str
    tax_id: str
    email: str
    address: str
    city: str = ""
    zip_code: str = ""
    phone: str = ""
    country: str = ""


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    code: str
    name: str
    price: Decimal
    unit: str
    description: str = ""


@dataclass(frozen=True)
class InvoiceItemRow:
    """In-memory view of a row from the ``InvoiceItems`` sheet."""

    item_id: str
    product_id: str
    product_name: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceRow:
    """An invoice header joined with its ordered line items."""

    invoice_id: str
    number: str
    client_id: str
    client_name: str
    client_address: str
    client_tax_id: str
    invoice_date: date
    items: tuple[InvoiceItemRow, ...]
    subtotal: Decimal
    tax_rate: Decimal
    tax_name: str
    tax_amount: Decimal
    retention_rate: Decimal
    retention_name: str
    retention_amount: Decimal
    total: Decimal
    status: InvoiceStatus
    currency: str = DEFAULTS["Currency"]


@dataclass(frozen=True)
class ApiConfig:
    """Opaque e-invoicing provider credentials stored with the profile."""

    provider: str
    environment: ApiEnvironment
    api_key: str
    api_secret: str
    endpoint_url: str = ""
    cert_password: str = ""


@dataclass(frozen=True)
class CompanyProfile:
    """Issuer identity printed on every invoice."""

    name: str
    tax_id: str
    address: str
    currency: str = DEFAULTS["Currency"]
    logo_url: str = ""
    api_config: Optional[ApiConfig] = None


class InvoiceStore(Protocol):
    """Whole-collection storage contract consumed by the business layer."""

    # Re-entrant context manager shared by every store on the same backing data.
    write_lock: Any

    def get_clients(self) -> List[ClientRow]: ...

    def save_clients(self, clients: Sequence[ClientRow]) -> None: ...

    def get_products(self) -> List[ProductRow]: ...

    def save_products(self, products: Sequence[ProductRow]) -> None: ...

    def get_invoices(self) -> List[InvoiceRow]: ...

    def save_invoices(self, invoices: Sequence[InvoiceRow]) -> None: ...

    def get_company_profile(self) -> CompanyProfile: ...

    def save_company_profile(self, profile: CompanyProfile) -> None: ...

    def reload(self) -> None: ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Only the ``[System]`` section is mandatory. ``[Numbering]``, ``[Defaults]``
    and ``[Summary]`` fall back to :data:`constants.DEFAULTS` option by
    option, so a minimal configuration keeps working as new options appear.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the current
    working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    def option(section: str, name: str) -> str:
        return parser.get(section, name, fallback=DEFAULTS.get(name, "")).strip()

    numbering = NumberingSettings(
        prefix=option("Numbering", "Prefix"),
        width=int(option("Numbering", "Width")),
    )
    defaults = RecordDefaults(
        currency=option("Defaults", "Currency").upper(),
        country=option("Defaults", "Country"),
        unit=option("Defaults", "Unit"),
        placeholder_tax_id=option("Defaults", "PlaceholderTaxId").upper(),
        import_product_code=option("Defaults", "ImportProductCode"),
    )
    summary = SummarySettings(
        endpoint=option("Summary", "Endpoint"),
        api_key=option("Summary", "ApiKey"),
        model=option("Summary", "Model"),
        timeout=float(option("Summary", "Timeout")),
    )

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        numbering=numbering,
        defaults=defaults,
        summary=summary,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the invoice workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is written to a sibling temporary file and then moved over
    ``destination`` with :func:`os.replace`, so readers always open either the
    previous or the new complete file. Parent directories are created on
    demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.stem}.saving{dest.suffix}")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_clients(workbook: Workbook) -> Iterable[ClientRow]:
    """Iterate over the ``Clients`` worksheet and yield typed records.

    Args:
        workbook (Workbook): Workbook containing the ``Clients`` sheet.

    Yields:
        ClientRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet_rows(workbook, CLIENTS_SHEET):
        yield deserialize_client(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_sheet_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_invoice_items(workbook: Workbook) -> Iterable[tuple[str, InvoiceItemRow]]:
    """Stream ``(invoice_id, item)`` pairs from the ``InvoiceItems`` sheet."""

    for raw in _iter_sheet_rows(workbook, INVOICE_ITEMS_SHEET):
        yield deserialize_invoice_item(raw)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Stream invoices joined with their line items.

    Items are grouped by ``InvoiceID`` in sheet order, so each invoice keeps
    the line ordering it was created with. Item rows whose parent header is
    missing are ignored.

    Args:
        workbook (Workbook): Workbook containing the invoice sheets.

    Yields:
        InvoiceRow: Fully populated invoice in ``Invoices`` sheet order.
    """

    items_by_invoice: Dict[str, List[InvoiceItemRow]] = {}
    for invoice_id, item in iter_invoice_items(workbook):
        items_by_invoice.setdefault(invoice_id, []).append(item)

    for raw in _iter_sheet_rows(workbook, INVOICES_SHEET):
        invoice_id = str(raw[0])
        yield deserialize_invoice(raw, items=items_by_invoice.get(invoice_id, []))


def read_company_profile(workbook: Workbook, *, default_currency: str = DEFAULTS["Currency"]) -> CompanyProfile:
    """Load the key/value ``CompanyProfile`` sheet into a dataclass.

    An empty sheet yields a blank profile carrying ``default_currency``.
    """

    values = {
        str(raw[0]): ("" if raw[1] is None else str(raw[1]))
        for raw in _iter_sheet_rows(workbook, COMPANY_PROFILE_SHEET)
    }
    return deserialize_company_profile(values, default_currency=default_currency)


def replace_rows(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> None:
    """Replace every data row of ``sheet_name`` while keeping its header."""

    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)


def replace_clients(workbook: Workbook, records: Iterable[ClientRow]) -> None:
    """Overwrite the ``Clients`` sheet with ``records``."""

    replace_rows(workbook, CLIENTS_SHEET, (serialize_client(record) for record in records))


def replace_products(workbook: Workbook, records: Iterable[ProductRow]) -> None:
    """Overwrite the ``Products`` sheet with ``records``."""

    replace_rows(workbook, PRODUCTS_SHEET, (serialize_product(record) for record in records))


def replace_invoices(workbook: Workbook, records: Iterable[InvoiceRow]) -> None:
    """Overwrite both invoice sheets with ``records`` and their items."""

    records = list(records)
    replace_rows(workbook, INVOICES_SHEET, (serialize_invoice(record) for record in records))
    replace_rows(
        workbook,
        INVOICE_ITEMS_SHEET,
        (
            serialize_invoice_item(record.invoice_id, item)
            for record in records
            for item in record.items
        ),
    )


def write_company_profile(workbook: Workbook, profile: CompanyProfile) -> None:
    """Overwrite the ``CompanyProfile`` sheet with ``profile``."""

    replace_rows(workbook, COMPANY_PROFILE_SHEET, serialize_company_profile(profile).items())


def to_decimal(raw: object, default: str = "0") -> Decimal:
    """Normalize a worksheet cell into a :class:`~decimal.Decimal`.

    Floats are routed through ``str`` so ``0.16`` stays ``Decimal("0.16")``.
    """

    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def to_money(raw: object) -> Decimal:
    """Normalize a worksheet cell into a two-decimal monetary amount."""

    return to_decimal(raw).quantize(MONEY_QUANTUM)


def to_date(raw: object) -> date:
    """Accept ISO strings as well as the date/datetime cells Excel produces."""

    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _text(raw: object) -> str:
    return "" if raw is None else str(raw)


def serialize_client(record: ClientRow) -> list[object]:
    """Convert a client dataclass into the ``Clients`` column ordering."""

    return [
        record.client_id,
        record.name,
        record.tax_id,
        record.email,
        record.address,
        record.city,
        record.zip_code,
        record.phone,
        record.country,
    ]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [record.product_id, record.code, record.name, record.price, record.unit, record.description]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    """Convert an invoice header into the ``Invoices`` column ordering.

    Numeric fields stay :class:`~decimal.Decimal` so Excel receives numbers,
    the date is stored as ISO text, and the status as its enum value.
    """

    return [
        record.invoice_id,
        record.number,
        record.client_id,
        record.client_name,
        record.client_address,
        record.client_tax_id,
        record.invoice_date.isoformat(),
        record.subtotal,
        record.tax_rate,
        record.tax_name,
        record.tax_amount,
        record.retention_rate,
        record.retention_name,
        record.retention_amount,
        record.total,
        record.status.value,
        record.currency,
    ]


def serialize_invoice_item(invoice_id: str, record: InvoiceItemRow) -> list[object]:
    """Convert an invoice item into the ``InvoiceItems`` column ordering."""

    return [
        record.item_id,
        invoice_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.unit_price,
        record.total,
    ]


def serialize_company_profile(profile: CompanyProfile) -> Dict[str, str]:
    """Flatten a profile (and its optional API settings) into field/value pairs."""

    values = {
        "Name": profile.name,
        "TaxId": profile.tax_id,
        "Address": profile.address,
        "Currency": profile.currency,
        "LogoUrl": profile.logo_url,
    }
    if profile.api_config is not None:
        api = profile.api_config
        values.update(
            {
                "ApiProvider": api.provider,
                "ApiEnvironment": api.environment.value,
                "ApiKey": api.api_key,
                "ApiSecret": api.api_secret,
                "ApiEndpointUrl": api.endpoint_url,
                "ApiCertPassword": api.cert_password,
            }
        )
    return values


def deserialize_client(raw_row: Sequence[object]) -> ClientRow:
    """Convert a raw worksheet row into a strongly typed client record.

    Blank optional cells become empty strings, and the tax id is upper-cased
    so lookups stay consistent with form input.
    """

    padded = list(raw_row) + [None] * (len(SHEET_COLUMNS[CLIENTS_SHEET]) - len(raw_row))
    client_id, name, tax_id, email, address, city, zip_code, phone, country = padded[:9]
    return ClientRow(
        client_id=str(client_id),
        name=_text(name),
        tax_id=_text(tax_id).upper(),
        email=_text(email),
        address=_text(address),
        city=_text(city),
        zip_code=_text(zip_code),
        phone=_text(phone),
        country=_text(country),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices are normalized to two-decimal :class:`~decimal.Decimal` values and
    identifiers coerced to ``str`` to avoid surprises caused by Excel
    automatically interpreting numbers.
    """

    padded = list(raw_row) + [None] * (len(SHEET_COLUMNS[PRODUCTS_SHEET]) - len(raw_row))
    product_id, code, name, price, unit, description = padded[:6]
    return ProductRow(
        product_id=str(product_id),
        code=_text(code),
        name=_text(name),
        price=to_money(price),
        unit=_text(unit) or DEFAULTS["Unit"],
        description=_text(description),
    )


def deserialize_invoice_item(raw_row: Sequence[object]) -> tuple[str, InvoiceItemRow]:
    """Convert a raw ``InvoiceItems`` row into ``(invoice_id, item)``."""

    item_id, invoice_id, product_id, product_name, quantity, unit_price, total = raw_row[:7]
    item = InvoiceItemRow(
        item_id=str(item_id),
        product_id=str(product_id),
        product_name=_text(product_name),
        quantity=to_decimal(quantity),
        unit_price=to_money(unit_price),
        total=to_money(total),
    )
    return str(invoice_id), item


def deserialize_invoice(raw_row: Sequence[object], *, items: Sequence[InvoiceItemRow]) -> InvoiceRow:
    """Convert a raw ``Invoices`` row plus its items into an invoice record.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.
        items (Sequence[InvoiceItemRow]): Items already grouped for this
            invoice, in creation order.

    Returns:
        InvoiceRow: Dataclass with :class:`~decimal.Decimal` amounts, a
            :class:`~datetime.date`, and an :class:`InvoiceStatus` member.

    Raises:
        ValueError: If the status or date cell holds an unknown value.
    """

    padded = list(raw_row) + [None] * (len(SHEET_COLUMNS[INVOICES_SHEET]) - len(raw_row))
    (
        invoice_id,
        number,
        client_id,
        client_name,
        client_address,
        client_tax_id,
        invoice_date,
        subtotal,
        tax_rate,
        tax_name,
        tax_amount,
        retention_rate,
        retention_name,
        retention_amount,
        total,
        status,
        currency,
    ) = padded[:17]

    return InvoiceRow(
        invoice_id=str(invoice_id),
        number=_text(number),
        client_id=_text(client_id),
        client_name=_text(client_name),
        client_address=_text(client_address),
        client_tax_id=_text(client_tax_id),
        invoice_date=to_date(invoice_date),
        items=tuple(items),
        subtotal=to_money(subtotal),
        tax_rate=to_decimal(tax_rate),
        tax_name=_text(tax_name),
        tax_amount=to_money(tax_amount),
        retention_rate=to_decimal(retention_rate),
        retention_name=_text(retention_name),
        retention_amount=to_money(retention_amount),
        total=to_money(total),
        status=InvoiceStatus(_text(status) or InvoiceStatus.DRAFT.value),
        currency=_text(currency) or DEFAULTS["Currency"],
    )


def deserialize_company_profile(values: Mapping[str, str], *, default_currency: str = DEFAULTS["Currency"]) -> CompanyProfile:
    """Build a :class:`CompanyProfile` from field/value pairs.

    API settings are only materialized when a provider has been stored.
    """

    api_config = None
    if values.get("ApiProvider"):
        api_config = ApiConfig(
            provider=values["ApiProvider"],
            environment=ApiEnvironment(values.get("ApiEnvironment") or ApiEnvironment.SANDBOX.value),
            api_key=values.get("ApiKey", ""),
            api_secret=values.get("ApiSecret", ""),
            endpoint_url=values.get("ApiEndpointUrl", ""),
            cert_password=values.get("ApiCertPassword", ""),
        )
    return CompanyProfile(
        name=values.get("Name", ""),
        tax_id=values.get("TaxId", ""),
        address=values.get("Address", ""),
        currency=values.get("Currency") or default_currency,
        logo_url=values.get("LogoUrl", ""),
        api_config=api_config,
    )


_STORAGE_FAILURES = (OSError, KeyError, ValueError, InvalidOperation, InvalidFileException, zipfile.BadZipFile)

WORKBOOK_LOCK_TIMEOUT = 30.0


class WorkbookLock:
    """Re-entrant lock serializing writers of one workbook file.

    Threads of this process queue on an ``RLock``; other processes are kept
    out by a ``filelock`` lock file next to the workbook (``<name>.lock``).
    Both are held until the outermost ``with`` block exits, so a
    reload, check, and save sequence runs as one transaction.
    """

    def __init__(self, data_file: Path, *, timeout: float = WORKBOOK_LOCK_TIMEOUT) -> None:
        self.data_file = data_file
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(f"{data_file}.lock", timeout=timeout, thread_local=False)

    def __enter__(self) -> "WorkbookLock":
        self._thread_lock.acquire()
        try:
            self._file_lock.acquire()
        except Timeout as exc:
            self._thread_lock.release()
            log.error("Timed out waiting for the write lock on '%s'", self.data_file)
            raise CollaboratorError(f"Workbook '{self.data_file}' is locked by another writer") from exc
        return self

    def __exit__(self, *exc_info: object) -> None:
        try:
            self._file_lock.release()
        finally:
            self._thread_lock.release()


_WORKBOOK_LOCKS: Dict[Path, WorkbookLock] = {}
_WORKBOOK_LOCKS_GUARD = threading.Lock()


def workbook_lock(data_file: Path) -> WorkbookLock:
    """Return the process-wide :class:`WorkbookLock` for ``data_file``.

    Every storage opened on the same resolved path shares one lock.
    """

    key = Path(data_file).expanduser().resolve()
    with _WORKBOOK_LOCKS_GUARD:
        lock = _WORKBOOK_LOCKS.get(key)
        if lock is None:
            lock = _WORKBOOK_LOCKS[key] = WorkbookLock(key)
        return lock


class WorkbookStorage:
    """:class:`InvoiceStore` implementation backed by an ``openpyxl`` workbook.

    Every ``save_*`` call rewrites the affected sheet(s) and saves the file, so
    a later :meth:`reload` (from this or another process) observes the write.
    ``write_lock`` is the shared :func:`workbook_lock` of the file, so separate
    storages and processes on one workbook exclude each other. I/O and decoding failures surface as :class:`CollaboratorError`.
    """

    def __init__(
        self,
        data_file: Path,
        *,
        workbook: Optional[Workbook] = None,
        default_currency: str = DEFAULTS["Currency"],
    ) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self.default_currency = default_currency
        self.write_lock = workbook_lock(self.data_file)
        self._workbook = workbook if workbook is not None else open_workbook(self.data_file)

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    def _guard(self, action: str, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except _STORAGE_FAILURES as exc:
            log.error("Workbook storage failed to %s '%s': %s", action, self.data_file, exc)
            raise CollaboratorError(f"Storage failed to {action}: {exc}") from exc

    def _persist(self) -> None:
        with self.write_lock:
            save_workbook(self._workbook, self.data_file)

    def reload(self) -> None:
        """Discard the in-memory workbook and reopen it from disk."""

        def _reload() -> None:
            self._workbook = refresh_workbook(self.data_file)

        self._guard("reload workbook", _reload)
        log.debug("Reloaded workbook '%s'", self.data_file)

    def get_clients(self) -> List[ClientRow]:
        return self._guard("read clients", lambda: list(iter_clients(self._workbook)))

    def save_clients(self, clients: Sequence[ClientRow]) -> None:
        def _save() -> None:
            replace_clients(self._workbook, clients)
            self._persist()

        self._guard("save clients", _save)

    def get_products(self) -> List[ProductRow]:
        return self._guard("read products", lambda: list(iter_products(self._workbook)))

    def save_products(self, products: Sequence[ProductRow]) -> None:
        def _save() -> None:
            replace_products(self._workbook, products)
            self._persist()

        self._guard("save products", _save)

    def get_invoices(self) -> List[InvoiceRow]:
        return self._guard("read invoices", lambda: list(iter_invoices(self._workbook)))

    def save_invoices(self, invoices: Sequence[InvoiceRow]) -> None:
        def _save() -> None:
            replace_invoices(self._workbook, invoices)
            self._persist()

        self._guard("save invoices", _save)

    def get_company_profile(self) -> CompanyProfile:
        return self._guard(
            "read company profile",
            lambda: read_company_profile(self._workbook, default_currency=self.default_currency),
        )

    def save_company_profile(self, profile: CompanyProfile) -> None:
        def _save() -> None:
            write_company_profile(self._workbook, profile)
            self._persist()

        self._guard("save company profile", _save)
