"""Business logic layer for the invoicing toolkit.

This module contains the rule engine that turns line items into financially
consistent invoice records, assigns them unique sequential numbers, and
governs their status transitions. It consumes an injected
:class:`data_manager.InvoiceStore` for all I/O while ensuring every mutation
passes through the domain rules below. Pure helpers (arithmetic, numbering,
transitions, building, reporting) never touch storage so they can be tested
in isolation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from . import data_manager, log
from .constants import API_PROVIDERS, COUNTRIES, CURRENCY_SYMBOLS, EXPECTED_SCHEMA_VERSION, UNIT_TYPES, InvoiceStatus, TaxType
from .exceptions import (
    CollaboratorError,
    InvoicingError,
    LifecycleError,
    MissingReferenceError,
    NumberingConflictError,
    ValidationError,
)


ZERO = Decimal("0")
MONEY_QUANTUM = data_manager.MONEY_QUANTUM
MAX_NUMBERING_ATTEMPTS = 3

# Allowed status changes during normal operation. Paid invoices are settled
# financial fact: nothing leaves PAID without an administrative override.
STATUS_TRANSITIONS: Mapping[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING, InvoiceStatus.PAID}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.DRAFT}),
    InvoiceStatus.PAID: frozenset(),
}

# Extra edges unlocked only by ``override=True``.
OVERRIDE_TRANSITIONS: Mapping[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset(),
    InvoiceStatus.PENDING: frozenset(),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.PENDING, InvoiceStatus.DRAFT}),
}

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the storage used by the BLL."""

    settings: data_manager.ConfigSettings
    storage: data_manager.InvoiceStore


@dataclass(frozen=True)
class TaxSetting:
    """A named rate applied to an invoice subtotal."""

    name: str
    rate: Decimal
    tax_type: TaxType = TaxType.TAX


@dataclass(frozen=True)
class InvoiceTotals:
    """Result of the money arithmetic for one set of items and rates."""

    subtotal: Decimal
    tax_amount: Decimal
    retention_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceLine:
    """Requested line: a product reference and a quantity."""

    product_id: str
    quantity: Decimal


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for creating an invoice."""

    client_id: str
    lines: tuple[InvoiceLine, ...] = ()
    tax: Optional[TaxSetting] = None
    retention: Optional[TaxSetting] = None
    invoice_date: Optional[date] = None
    issue: bool = False


@dataclass(frozen=True)
class ClientCommand:
    """User intent for registering a client."""

    name: str
    tax_id: str
    email: str
    address: str
    zip_code: str
    city: str = ""
    phone: str = ""
    country: Optional[str] = None


@dataclass(frozen=True)
class ProductCommand:
    """User intent for registering a product or service."""

    name: str
    code: str
    price: Decimal
    unit: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class SalesPoint:
    """Sales amount booked on a single date."""

    date: date
    amount: Decimal


@dataclass(frozen=True)
class SalesReport:
    """Dashboard metrics derived from an invoice collection."""

    total_sales: Decimal
    invoice_count: int
    average_ticket: Decimal
    series: tuple[SalesPoint, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StatusTotal:
    """Count and amount of invoices sharing one status."""

    count: int
    amount: Decimal


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable, process-unique identifier.

    Args:
        prefix (str): Designator for the record kind (``"C"`` clients,
            ``"P"`` products, ``"F"`` invoices, ``"L"`` invoice lines).
        when (datetime | None): Timestamp embedded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{random}``.

    The timestamp keeps identifiers roughly chronological; the random suffix
    keeps identifiers generated within the same microsecond distinct.
    """
    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook storage.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Settings bundled with a :class:`WorkbookStorage`.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    storage = data_manager.WorkbookStorage(settings.data_file, default_currency=settings.defaults.currency)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, storage=storage)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Money / rate arithmetic
# ---------------------------------------------------------------------------


def round_money(value: Decimal) -> Decimal:
    """Round ``value`` to cents using half-up rounding."""

    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def require_positive_quantity(quantity: Decimal, *, field: str = "quantity") -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("Quantity validation failed for %s: %s", field, quantity)
        raise ValidationError(field, "must be greater than zero")


def require_positive_price(price: Decimal, *, field: str = "price") -> None:
    """Validate that a unit price is strictly positive.

    Raises:
        ValidationError: If ``price`` is zero or negative.
    """
    if price <= ZERO:
        log.error("Price validation failed for %s: %s", field, price)
        raise ValidationError(field, "must be a positive amount greater than zero")


def require_nonnegative_rate(rate: Optional[Decimal], *, field: str) -> Decimal:
    """Normalize an optional rate, rejecting negative values.

    Args:
        rate (Decimal | None): Fractional rate such as ``Decimal("0.16")``.
            ``None`` means the rate is unset and counts as zero.
        field (str): Name reported in the :class:`ValidationError`.

    Returns:
        Decimal: ``rate`` or ``0`` when unset.

    Raises:
        ValidationError: If ``rate`` is negative.
    """
    if rate is None:
        return ZERO
    if rate < ZERO:
        log.error("Rate validation failed for %s: %s", field, rate)
        raise ValidationError(field, "must not be negative")
    return Decimal(rate)


def calculate_item_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    """Return ``quantity * unit_price`` rounded to cents."""

    return round_money(quantity * unit_price)


def calculate_totals(
    items: Iterable[data_manager.InvoiceItemRow],
    *,
    tax_rate: Optional[Decimal] = None,
    retention_rate: Optional[Decimal] = None,
) -> InvoiceTotals:
    """Compute subtotal, tax, retention, and grand total for ``items``.

    The subtotal is the exact sum of the per-item totals, which were already
    rounded when the items were created. Tax and retention are each rounded
    half-up once, on the subtotal. The grand total is not clamped: a retention
    larger than subtotal plus tax yields a negative value and it is up to the
    caller to accept or reject it.

    Args:
        items (Iterable[InvoiceItemRow]): Invoice lines in order.
        tax_rate (Decimal | None): Fractional surcharge rate; ``None`` is 0.
        retention_rate (Decimal | None): Fractional withholding rate; ``None``
            is 0.

    Returns:
        InvoiceTotals: The four monetary amounts.

    Raises:
        ValidationError: If either rate is negative.
    """
    tax_rate = require_nonnegative_rate(tax_rate, field="tax_rate")
    retention_rate = require_nonnegative_rate(retention_rate, field="retention_rate")

    subtotal = sum((item.total for item in items), ZERO).quantize(MONEY_QUANTUM)
    tax_amount = round_money(subtotal * tax_rate)
    retention_amount = round_money(subtotal * retention_rate)
    total = subtotal + tax_amount - retention_amount
    log.debug(
        "Calculated totals: subtotal=%s tax=%s retention=%s total=%s",
        subtotal,
        tax_amount,
        retention_amount,
        total,
    )
    return InvoiceTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        retention_amount=retention_amount,
        total=total,
    )


def format_currency(amount: Decimal, currency_code: str) -> str:
    """Render ``amount`` for display, e.g. ``$1,234.50`` for MXN.

    Unknown currency codes fall back to ``$1234.50 XYZ``; negative amounts
    carry the sign before the symbol in both forms. This is a
    presentation helper only; stored amounts are never formatted.
    """

    code = (currency_code or "").upper()
    value = round_money(amount)
    symbol = CURRENCY_SYMBOLS.get(code)
    sign = "-" if value < ZERO else ""
    if symbol is None:
        return f"{sign}${abs(value):.2f} {code}".rstrip()
    return f"{sign}{symbol}{abs(value):,.2f}"


# ---------------------------------------------------------------------------
# Numbering authority
# ---------------------------------------------------------------------------


def parse_number_suffix(number: str, *, prefix: str) -> Optional[int]:
    """Extract the integer suffix of ``number`` when it carries ``prefix``.

    ``parse_number_suffix("INV-0042", prefix="INV-")`` returns ``42``;
    numbers with another prefix or a non-numeric tail return ``None``.
    """

    match = re.fullmatch(rf"{re.escape(prefix)}(\d+)", number or "")
    return int(match.group(1)) if match else None


def next_invoice_number(
    invoices: Sequence[data_manager.InvoiceRow],
    *,
    prefix: str = data_manager.NumberingSettings.prefix,
    width: int = data_manager.NumberingSettings.width,
) -> str:
    """Return the next unique invoice number for ``invoices``.

    The sequence value is the larger of ``len(invoices) + 1`` and the highest
    numeric suffix plus one. Using the maximum keeps numbers increasing after
    deletions or out-of-order imports, where a count alone would reissue a
    number that is still in use. The candidate is bumped further if it
    collides with a number stored verbatim (for example with a different
    padding).

    Args:
        invoices (Sequence[InvoiceRow]): Current invoice collection.
        prefix (str): Fixed prefix, ``"INV-"`` by default.
        width (int): Minimum zero-padded width of the numeric part.

    Returns:
        str: A number such as ``"INV-0001"``.
    """
    existing = {invoice.number for invoice in invoices}
    suffixes = [
        suffix
        for suffix in (parse_number_suffix(number, prefix=prefix) for number in existing)
        if suffix is not None
    ]
    candidate = max(len(invoices), max(suffixes, default=0)) + 1
    number = f"{prefix}{candidate:0{width}d}"
    while number in existing:
        candidate += 1
        number = f"{prefix}{candidate:0{width}d}"
    log.debug("Allocated invoice number %s from %d existing invoices", number, len(invoices))
    return number


# ---------------------------------------------------------------------------
# Invoice lifecycle
# ---------------------------------------------------------------------------


def coerce_status(value: Union[InvoiceStatus, str]) -> InvoiceStatus:
    """Convert ``value`` into an :class:`InvoiceStatus` member.

    Raises:
        ValueError: If ``value`` is not a known status.
    """
    if isinstance(value, InvoiceStatus):
        return value
    return InvoiceStatus(str(value).strip().lower())


def allowed_transitions(current: InvoiceStatus, *, override: bool = False) -> frozenset[InvoiceStatus]:
    """Return the statuses reachable from ``current``."""

    allowed = STATUS_TRANSITIONS.get(current, frozenset())
    if override:
        allowed = allowed | OVERRIDE_TRANSITIONS.get(current, frozenset())
    return allowed


def validate_transition(
    current: Union[InvoiceStatus, str],
    target: Union[InvoiceStatus, str],
    *,
    override: bool = False,
) -> InvoiceStatus:
    """Check a transition against the table and return the target status.

    Args:
        current (InvoiceStatus | str): Status the invoice holds now.
        target (InvoiceStatus | str): Requested status.
        override (bool): Administrative override that unlocks the edges in
            :data:`OVERRIDE_TRANSITIONS` (leaving ``paid``).

    Returns:
        InvoiceStatus: ``target`` as an enum member.

    Raises:
        LifecycleError: If either status is unknown, the request repeats the
            current status, or the edge is not in the table.
    """
    try:
        current_status = coerce_status(current)
        target_status = coerce_status(target)
    except ValueError as exc:
        log.error("Unknown status in transition %s -> %s", current, target)
        raise LifecycleError(str(current), str(target), "unknown status") from exc

    if target_status not in allowed_transitions(current_status, override=override):
        log.error(
            "Rejected status transition %s -> %s (override=%s)",
            current_status.value,
            target_status.value,
            override,
        )
        reason = None
        if current_status is InvoiceStatus.PAID and not override:
            reason = "paid invoices require an administrative override"
        raise LifecycleError(current_status.value, target_status.value, reason)
    return target_status


def transition_invoice(
    invoice: data_manager.InvoiceRow,
    target: Union[InvoiceStatus, str],
    *,
    override: bool = False,
) -> data_manager.InvoiceRow:
    """Return a copy of ``invoice`` moved to ``target``; the input is untouched."""

    target_status = validate_transition(invoice.status, target, override=override)
    if override and target_status not in STATUS_TRANSITIONS[invoice.status]:
        log.warning(
            "Administrative override: invoice '%s' moved %s -> %s",
            invoice.number,
            invoice.status.value,
            target_status.value,
        )
    return replace(invoice, status=target_status)


def change_invoice_status(
    context: RuntimeContext,
    invoice_ref: str,
    target: Union[InvoiceStatus, str],
    *,
    override: bool = False,
) -> data_manager.InvoiceRow:
    """Apply a validated status transition and persist the collection.

    Args:
        context (RuntimeContext): Runtime context providing storage.
        invoice_ref (str): Invoice identifier or human-facing number.
        target (InvoiceStatus | str): Requested status.
        override (bool): Administrative override for leaving ``paid``.

    Returns:
        data_manager.InvoiceRow: The updated invoice.

    Raises:
        MissingReferenceError: If no invoice matches ``invoice_ref``.
        LifecycleError: If the transition is not permitted; nothing is
            written in that case.
    """
    storage = context.storage
    with storage.write_lock:
        storage.reload()
        invoices = storage.get_invoices()
        index = _locate_invoice(invoices, invoice_ref)
        current = invoices[index]
        updated = transition_invoice(current, target, override=override)
        invoices[index] = updated
        storage.save_invoices(invoices)
    log.info(
        "Invoice '%s' status changed %s -> %s",
        updated.number,
        current.status.value,
        updated.status.value,
    )
    return updated


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def list_clients(context: RuntimeContext) -> List[data_manager.ClientRow]:
    """Return every client in storage order."""

    return list(context.storage.get_clients())


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in storage order."""

    return list(context.storage.get_products())


def list_invoices(
    context: RuntimeContext,
    *,
    status: Optional[InvoiceStatus] = None,
) -> List[data_manager.InvoiceRow]:
    """Return invoices in storage order, optionally filtered by ``status``."""

    invoices = context.storage.get_invoices()
    if status is not None:
        invoices = [invoice for invoice in invoices if invoice.status is status]
    return list(invoices)


def get_client(context: RuntimeContext, client_id: str) -> data_manager.ClientRow:
    """Resolve a client record by its identifier.

    Raises:
        MissingReferenceError: If ``client_id`` is absent from storage.
    """
    return _find_client(context.storage.get_clients(), client_id)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from storage.
    """
    for product in context.storage.get_products():
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError("product_id", product_id)


def get_invoice(context: RuntimeContext, invoice_ref: str) -> data_manager.InvoiceRow:
    """Resolve an invoice by identifier or number.

    Raises:
        MissingReferenceError: If nothing matches ``invoice_ref``.
    """
    invoices = context.storage.get_invoices()
    return invoices[_locate_invoice(invoices, invoice_ref)]


def _find_client(clients: Iterable[data_manager.ClientRow], client_id: str) -> data_manager.ClientRow:
    for client in clients:
        if client.client_id == client_id:
            return client
    log.warning("Client lookup failed for id '%s'", client_id)
    raise MissingReferenceError("client_id", client_id)


def _locate_invoice(invoices: Sequence[data_manager.InvoiceRow], invoice_ref: str) -> int:
    for index, invoice in enumerate(invoices):
        if invoice.invoice_id == invoice_ref or invoice.number == invoice_ref:
            return index
    log.warning("Invoice lookup failed for '%s'", invoice_ref)
    raise MissingReferenceError("invoice", invoice_ref)


# ---------------------------------------------------------------------------
# Client, product, and company registration
# ---------------------------------------------------------------------------


def normalize_tax_id(value: Optional[str]) -> str:
    """Strip whitespace and upper-case a fiscal identifier."""

    return (value or "").strip().upper()


def _require_text(value: Optional[str], field: str, message: str = "is required") -> str:
    text = (value or "").strip()
    if not text:
        log.error("Validation failed: %s %s", field, message)
        raise ValidationError(field, message)
    return text


def build_client(command: ClientCommand, *, default_country: str, client_id: Optional[str] = None) -> data_manager.ClientRow:
    """Validate ``command`` and materialize a :class:`ClientRow`.

    Name, tax id, email, address, and postal code are mandatory for fiscal
    invoicing; the tax id is upper-cased and the country falls back to
    ``default_country``. An explicit country must be one of
    :data:`constants.COUNTRIES`.

    Raises:
        ValidationError: Naming the first missing field or an unknown country.
    """
    name = _require_text(command.name, "name")
    tax_id = normalize_tax_id(_require_text(command.tax_id, "tax_id"))
    email = _require_text(command.email, "email")
    address = _require_text(command.address, "address")
    zip_code = _require_text(command.zip_code, "zip_code")
    country = (command.country or "").strip()
    if country and country not in COUNTRIES:
        log.error("Validation failed: unknown country '%s'", country)
        raise ValidationError("country", f"unknown country '{country}'")
    return data_manager.ClientRow(
        client_id=client_id or generate_record_id(prefix="C"),
        name=name,
        tax_id=tax_id,
        email=email,
        address=address,
        city=(command.city or "").strip(),
        zip_code=zip_code,
        phone=(command.phone or "").strip(),
        country=country or default_country,
    )


def build_product(command: ProductCommand, *, default_unit: str, product_id: Optional[str] = None) -> data_manager.ProductRow:
    """Validate ``command`` and materialize a :class:`ProductRow`.

    Raises:
        ValidationError: If the name or code is blank, the price is not
            positive, or the unit is not in :data:`constants.UNIT_TYPES`.
    """
    name = _require_text(command.name, "name")
    code = _require_text(command.code, "code", "SKU or fiscal code is required")
    require_positive_price(command.price)
    unit = (command.unit or "").strip().upper() or default_unit
    if unit not in UNIT_TYPES:
        log.error("Validation failed: unknown unit '%s'", unit)
        raise ValidationError("unit", f"unknown unit of measure '{unit}'")
    return data_manager.ProductRow(
        product_id=product_id or generate_record_id(prefix="P"),
        code=code,
        name=name,
        price=round_money(command.price),
        unit=unit,
        description=(command.description or "").strip(),
    )


def register_client(context: RuntimeContext, command: ClientCommand) -> data_manager.ClientRow:
    """Validate and append a client to storage.

    Raises:
        ValidationError: When a required field is missing; nothing is written.
    """
    client = build_client(command, default_country=context.settings.defaults.country)
    storage = context.storage
    with storage.write_lock:
        storage.reload()
        clients = storage.get_clients()
        storage.save_clients([*clients, client])
    log.info("Registered client '%s' (%s)", client.client_id, client.tax_id)
    return client


def register_product(context: RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Validate and append a product to storage.

    Raises:
        ValidationError: When the product violates an invariant; nothing is
            written.
    """
    product = build_product(command, default_unit=context.settings.defaults.unit)
    storage = context.storage
    with storage.write_lock:
        storage.reload()
        products = storage.get_products()
        storage.save_products([*products, product])
    log.info("Registered product '%s' (code=%s, price=%s)", product.product_id, product.code, product.price)
    return product


def get_company_profile(context: RuntimeContext) -> data_manager.CompanyProfile:
    """Return the issuer profile stored with the invoices."""

    return context.storage.get_company_profile()


def update_company_profile(
    context: RuntimeContext,
    *,
    name: Optional[str] = None,
    tax_id: Optional[str] = None,
    address: Optional[str] = None,
    currency: Optional[str] = None,
    logo_url: Optional[str] = None,
    api_config: Optional[data_manager.ApiConfig] = None,
) -> data_manager.CompanyProfile:
    """Replace selected profile fields and persist the result.

    Only arguments that are not ``None`` change. The currency is upper-cased
    and must be a three-letter code; an ``api_config`` must name a known
    provider. Existing invoices keep the currency they were created with.

    Raises:
        ValidationError: If the currency or API provider is invalid.
    """
    changes: Dict[str, object] = {}
    if name is not None:
        changes["name"] = name.strip()
    if tax_id is not None:
        changes["tax_id"] = normalize_tax_id(tax_id)
    if address is not None:
        changes["address"] = address.strip()
    if logo_url is not None:
        changes["logo_url"] = logo_url.strip()
    if currency is not None:
        code = currency.strip().upper()
        if not _CURRENCY_CODE.match(code):
            log.error("Validation failed: invalid currency code '%s'", currency)
            raise ValidationError("currency", "must be a three-letter ISO code")
        changes["currency"] = code
    if api_config is not None:
        if api_config.provider not in API_PROVIDERS:
            log.error("Validation failed: unknown API provider '%s'", api_config.provider)
            raise ValidationError("api_config.provider", f"unknown provider '{api_config.provider}'")
        changes["api_config"] = api_config

    storage = context.storage
    with storage.write_lock:
        storage.reload()
        profile = replace(storage.get_company_profile(), **changes)
        storage.save_company_profile(profile)
    log.info("Updated company profile fields: %s", ", ".join(sorted(changes)) or "none")
    return profile


# ---------------------------------------------------------------------------
# Invoice builder
# ---------------------------------------------------------------------------


def validate_client_for_invoice(client: Optional[data_manager.ClientRow]) -> data_manager.ClientRow:
    """Ensure ``client`` carries every field an invoice snapshots.

    Raises:
        ValidationError: If the client is missing or a snapshot field is blank.
    """
    if client is None:
        log.error("Invoice validation failed: no client supplied")
        raise ValidationError("client", "is required")
    _require_text(client.name, "client.name")
    _require_text(client.tax_id, "client.tax_id")
    _require_text(client.address, "client.address")
    return client


def validate_tax_setting(
    setting: Optional[TaxSetting],
    *,
    expected: TaxType,
    field: str,
) -> Optional[TaxSetting]:
    """Check that ``setting`` has the expected kind and a non-negative rate.

    Raises:
        ValidationError: On a kind mismatch or a negative rate.
    """
    if setting is None:
        return None
    if setting.tax_type is not expected:
        log.error("Invoice validation failed: %s has type %s", field, setting.tax_type)
        raise ValidationError(field, f"expected a {expected.value} setting, got {setting.tax_type.value}")
    require_nonnegative_rate(setting.rate, field=f"{field}_rate")
    return setting


def build_invoice_items(
    lines: Sequence[InvoiceLine],
    products: Mapping[str, data_manager.ProductRow],
    *,
    when: Optional[datetime] = None,
) -> tuple[data_manager.InvoiceItemRow, ...]:
    """Snapshot products into invoice items.

    Each item copies the product name and price as they are now and stores
    its own rounded total, so later product edits never alter the invoice.

    Raises:
        MissingReferenceError: If a line names an unknown product.
        ValidationError: If a line quantity is not positive.
    """
    items = []
    for position, line in enumerate(lines, start=1):
        product = products.get(line.product_id)
        if product is None:
            log.warning("Invoice line %d references unknown product '%s'", position, line.product_id)
            raise MissingReferenceError("product_id", line.product_id)
        require_positive_quantity(line.quantity, field=f"lines[{position}].quantity")
        items.append(
            data_manager.InvoiceItemRow(
                item_id=generate_record_id(prefix="L", when=when),
                product_id=product.product_id,
                product_name=product.name,
                quantity=line.quantity,
                unit_price=product.price,
                total=calculate_item_total(line.quantity, product.price),
            )
        )
    return tuple(items)


def build_invoice(
    client: Optional[data_manager.ClientRow],
    lines: Sequence[InvoiceLine],
    *,
    products: Iterable[data_manager.ProductRow],
    profile: data_manager.CompanyProfile,
    existing_invoices: Sequence[data_manager.InvoiceRow],
    tax: Optional[TaxSetting] = None,
    retention: Optional[TaxSetting] = None,
    invoice_date: Optional[date] = None,
    issue: bool = False,
    numbering: data_manager.NumberingSettings = data_manager.NumberingSettings(),
) -> data_manager.InvoiceRow:
    """Compose a fully populated invoice without touching storage.

    The builder validates the client, every line, and both rate settings
    before computing anything, then snapshots client and product data,
    computes totals, assigns an identifier and the next number, and sets the
    initial status (``pending`` when ``issue`` is true, ``draft`` otherwise).

    Args:
        client (ClientRow | None): Client being invoiced.
        lines (Sequence[InvoiceLine]): Requested lines; may be empty.
        products (Iterable[ProductRow]): Product catalogue to resolve lines.
        profile (CompanyProfile): Issuer profile; provides the currency.
        existing_invoices (Sequence[InvoiceRow]): Collection used for
            numbering.
        tax (TaxSetting | None): Surcharge setting of type ``tax``.
        retention (TaxSetting | None): Withholding of type ``retention``.
        invoice_date (date | None): Issue date, today (UTC) when omitted.
        issue (bool): Create directly as ``pending``.
        numbering (NumberingSettings): Prefix and width of the number.

    Returns:
        data_manager.InvoiceRow: Invoice ready for persistence.

    Raises:
        ValidationError: For a missing client field, an unknown product, a
            non-positive quantity, a wrong or negative rate, or a grand total
            below zero.
    """
    client = validate_client_for_invoice(client)
    tax = validate_tax_setting(tax, expected=TaxType.TAX, field="tax")
    retention = validate_tax_setting(retention, expected=TaxType.RETENTION, field="retention")

    now = datetime.now(UTC)
    catalogue = {product.product_id: product for product in products}
    items = build_invoice_items(lines, catalogue, when=now)
    if not items:
        log.warning("Building invoice for client '%s' with no items", client.client_id)

    tax_rate = tax.rate if tax is not None else ZERO
    retention_rate = retention.rate if retention is not None else ZERO
    totals = calculate_totals(items, tax_rate=tax_rate, retention_rate=retention_rate)
    if totals.total < ZERO:
        log.error(
            "Invoice validation failed: retention %s exceeds subtotal plus tax (total=%s)",
            totals.retention_amount,
            totals.total,
        )
        raise ValidationError("retention_rate", "retention exceeds subtotal plus tax; total would be negative")

    status = InvoiceStatus.PENDING if issue else InvoiceStatus.DRAFT
    return data_manager.InvoiceRow(
        invoice_id=generate_record_id(prefix="F", when=now),
        number=next_invoice_number(existing_invoices, prefix=numbering.prefix, width=numbering.width),
        client_id=client.client_id,
        client_name=client.name,
        client_address=client.address,
        client_tax_id=client.tax_id,
        invoice_date=_resolve_date(invoice_date),
        items=items,
        subtotal=totals.subtotal,
        tax_rate=tax_rate,
        tax_name=tax.name if tax is not None else "",
        tax_amount=totals.tax_amount,
        retention_rate=retention_rate,
        retention_name=retention.name if retention is not None else "",
        retention_amount=totals.retention_amount,
        total=totals.total,
        status=status,
        currency=profile.currency,
    )


def _commit_invoice(storage: data_manager.InvoiceStore, invoice: data_manager.InvoiceRow) -> None:
    """Re-read the store and append ``invoice`` unless its number was taken.

    Raises:
        NumberingConflictError: If another writer stored the same number
            since the invoice was built.
    """
    storage.reload()
    latest = storage.get_invoices()
    if any(existing.number == invoice.number for existing in latest):
        raise NumberingConflictError(invoice.number)
    storage.save_invoices([*latest, invoice])


def create_invoice(
    context: RuntimeContext,
    command: InvoiceCommand,
    *,
    max_attempts: int = MAX_NUMBERING_ATTEMPTS,
) -> data_manager.InvoiceRow:
    """Build, number, and persist an invoice as one serialized operation.

    The storage write lock is held from reading the collection to saving it,
    so two creations in this process never share a number. Before saving,
    the store is reloaded and the number re-checked to catch writers in
    other processes; on a collision a fresh number is computed and the
    attempt repeated up to ``max_attempts`` times.

    Args:
        context (RuntimeContext): Runtime context providing storage and
            numbering settings.
        command (InvoiceCommand): Structured invoice request.
        max_attempts (int): Upper bound on numbering retries.

    Returns:
        data_manager.InvoiceRow: The persisted invoice.

    Raises:
        ValidationError: If the request is invalid; nothing is written.
        NumberingConflictError: If every attempt collided.
        CollaboratorError: If storage fails.
        ValueError: If ``max_attempts`` is below one.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    storage = context.storage
    with storage.write_lock:
        storage.reload()
        client = _find_client(storage.get_clients(), command.client_id)
        products = storage.get_products()
        profile = storage.get_company_profile()

        last_number = ""
        for attempt in range(1, max_attempts + 1):
            invoice = build_invoice(
                client,
                command.lines,
                products=products,
                profile=profile,
                existing_invoices=storage.get_invoices(),
                tax=command.tax,
                retention=command.retention,
                invoice_date=command.invoice_date,
                issue=command.issue,
                numbering=context.settings.numbering,
            )
            try:
                _commit_invoice(storage, invoice)
            except NumberingConflictError:
                last_number = invoice.number
                log.warning(
                    "Invoice number %s taken by a concurrent writer (attempt %d/%d)",
                    invoice.number,
                    attempt,
                    max_attempts,
                )
                continue
            log.info(
                "Created invoice %s for client '%s' (subtotal=%s, total=%s, status=%s)",
                invoice.number,
                client.client_id,
                invoice.subtotal,
                invoice.total,
                invoice.status.value,
            )
            return invoice

    raise NumberingConflictError(last_number, attempts=max_attempts)


# ---------------------------------------------------------------------------
# Report aggregator
# ---------------------------------------------------------------------------


def calculate_sales_report(
    invoices: Iterable[data_manager.InvoiceRow],
    *,
    statuses: Optional[Iterable[InvoiceStatus]] = None,
) -> SalesReport:
    """Fold an invoice collection into dashboard metrics.

    Args:
        invoices (Iterable[InvoiceRow]): Invoice collection.
        statuses (Iterable[InvoiceStatus] | None): Restrict the report to
            these statuses; all invoices count when ``None``.

    Returns:
        SalesReport: Total sales, count, average ticket (zero for an empty
            collection), and one series point per distinct date in ascending
            date order.
    """
    wanted = frozenset(statuses) if statuses is not None else None
    selected = [invoice for invoice in invoices if wanted is None or invoice.status in wanted]

    total_sales = sum((invoice.total for invoice in selected), ZERO)
    count = len(selected)
    average = round_money(total_sales / count) if count else ZERO.quantize(MONEY_QUANTUM)

    by_date: Dict[date, Decimal] = {}
    for invoice in selected:
        by_date[invoice.invoice_date] = by_date.get(invoice.invoice_date, ZERO) + invoice.total
    series = tuple(SalesPoint(date=day, amount=amount) for day, amount in sorted(by_date.items()))

    log.debug("Calculated sales report: total=%s count=%d average=%s", total_sales, count, average)
    return SalesReport(
        total_sales=total_sales.quantize(MONEY_QUANTUM),
        invoice_count=count,
        average_ticket=average,
        series=series,
    )


def calculate_status_breakdown(
    invoices: Iterable[data_manager.InvoiceRow],
) -> Dict[InvoiceStatus, StatusTotal]:
    """Count invoices and sum totals per status; every status is present."""

    counts = {status: 0 for status in InvoiceStatus}
    amounts = {status: ZERO for status in InvoiceStatus}
    for invoice in invoices:
        counts[invoice.status] += 1
        amounts[invoice.status] += invoice.total
    return {
        status: StatusTotal(count=counts[status], amount=amounts[status].quantize(MONEY_QUANTUM))
        for status in InvoiceStatus
    }


def build_sales_report(
    context: RuntimeContext,
    *,
    statuses: Optional[Iterable[InvoiceStatus]] = None,
) -> SalesReport:
    """Compute :func:`calculate_sales_report` over the stored invoices."""

    return calculate_sales_report(context.storage.get_invoices(), statuses=statuses)


__all__ = [
    "InvoicingError",
    "ValidationError",
    "MissingReferenceError",
    "LifecycleError",
    "NumberingConflictError",
    "CollaboratorError",
    "RuntimeContext",
    "TaxSetting",
    "InvoiceTotals",
    "InvoiceLine",
    "InvoiceCommand",
    "ClientCommand",
    "ProductCommand",
    "SalesPoint",
    "SalesReport",
    "StatusTotal",
]
