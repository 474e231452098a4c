"""Bulk CSV import of clients and products.

Files are positional, comma separated, and start with a header row that is
skipped:

* clients: ``name,tax_id,email,address``
* products: ``name,price,code``

Missing cells are filled from :class:`data_manager.RecordDefaults`. Rows
without a name are ignored silently; product rows whose price is not a
positive number are reported in :class:`ImportResult` and never stored.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Generic, Iterable, Iterator, List, Sequence, TypeVar

from . import core_logic, data_manager, log

R = TypeVar("R")


@dataclass(frozen=True)
class SkippedRow:
    """A CSV line that was rejected, with the reason."""

    line: int
    reason: str


@dataclass(frozen=True)
class ImportResult(Generic[R]):
    """Records accepted from a CSV file plus the rows that were rejected."""

    imported: tuple[R, ...] = ()
    skipped: tuple[SkippedRow, ...] = field(default_factory=tuple)


def _read_rows(path: Path) -> Iterator[tuple[int, List[str]]]:
    """Yield ``(line_number, cells)`` for every data row after the header."""

    with Path(path).expanduser().open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.reader(handle)
        next(reader, None)
        for row in reader:
            yield reader.line_num, [cell.strip() for cell in row]


def _cell(row: Sequence[str], index: int) -> str:
    return row[index] if index < len(row) else ""


def parse_client_rows(
    rows: Iterable[tuple[int, Sequence[str]]],
    defaults: data_manager.RecordDefaults,
) -> ImportResult[data_manager.ClientRow]:
    """Convert client CSV rows into records.

    A blank tax id becomes the generic placeholder and the country is always
    the configured default.
    """
    clients = []
    for _, row in rows:
        name = _cell(row, 0)
        if not name:
            continue
        clients.append(
            data_manager.ClientRow(
                client_id=core_logic.generate_record_id(prefix="C"),
                name=name,
                tax_id=core_logic.normalize_tax_id(_cell(row, 1)) or defaults.placeholder_tax_id,
                email=_cell(row, 2),
                address=_cell(row, 3),
                country=defaults.country,
            )
        )
    return ImportResult(imported=tuple(clients))


def parse_product_rows(
    rows: Iterable[tuple[int, Sequence[str]]],
    defaults: data_manager.RecordDefaults,
) -> ImportResult[data_manager.ProductRow]:
    """Convert product CSV rows into records, rejecting non-positive prices."""

    products = []
    skipped = []
    for line, row in rows:
        name = _cell(row, 0)
        if not name:
            continue
        raw_price = _cell(row, 1)
        try:
            price = Decimal(raw_price)
        except InvalidOperation:
            log.warning("Skipping product '%s' on line %d: unparsable price '%s'", name, line, raw_price)
            skipped.append(SkippedRow(line=line, reason=f"unparsable price '{raw_price}'"))
            continue
        if not price.is_finite() or price <= 0:
            log.warning("Skipping product '%s' on line %d: price %s is not positive", name, line, raw_price)
            skipped.append(SkippedRow(line=line, reason=f"price must be greater than zero, got '{raw_price}'"))
            continue
        products.append(
            data_manager.ProductRow(
                product_id=core_logic.generate_record_id(prefix="P"),
                code=_cell(row, 2) or defaults.import_product_code,
                name=name,
                price=core_logic.round_money(price),
                unit=defaults.unit,
            )
        )
    return ImportResult(imported=tuple(products), skipped=tuple(skipped))


def import_clients(context: core_logic.RuntimeContext, path: Path) -> ImportResult[data_manager.ClientRow]:
    """Append every client found in ``path`` to storage.

    Args:
        context (RuntimeContext): Runtime context providing storage and
            defaults.
        path (Path): CSV file with a header row.

    Returns:
        ImportResult: The stored clients.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    result = parse_client_rows(_read_rows(path), context.settings.defaults)
    if result.imported:
        storage = context.storage
        with storage.write_lock:
            storage.reload()
            storage.save_clients([*storage.get_clients(), *result.imported])
    log.info("Imported %d clients from '%s'", len(result.imported), path)
    return result


def import_products(context: core_logic.RuntimeContext, path: Path) -> ImportResult[data_manager.ProductRow]:
    """Append every valid product found in ``path`` to storage.

    Rows with a missing, unparsable, or non-positive price are returned in
    ``ImportResult.skipped`` and not stored.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    result = parse_product_rows(_read_rows(path), context.settings.defaults)
    if result.imported:
        storage = context.storage
        with storage.write_lock:
            storage.reload()
            storage.save_products([*storage.get_products(), *result.imported])
    log.info(
        "Imported %d products from '%s' (%d skipped)",
        len(result.imported),
        path,
        len(result.skipped),
    )
    return result
