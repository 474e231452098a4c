"""Enumerations and default tables shared across the invoicing modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), importers, and the CLI rely on a single source of truth for
status codes, sheet names, catalogue codes, and fallback values.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class InvoiceStatus(str, Enum):
    """Enumerate the lifecycle states an invoice can occupy."""

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"


class TaxType(str, Enum):
    """Distinguish surcharges that add to a total from withholdings."""

    TAX = "tax"
    RETENTION = "retention"


class ApiEnvironment(str, Enum):
    """Target environment of the (unused) e-invoicing provider settings."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CLIENTS = "Clients"
    PRODUCTS = "Products"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    COMPANY_PROFILE = "CompanyProfile"


# Standardized units of measure (SAT catalogue style codes).
UNIT_TYPES: Mapping[str, str] = MappingProxyType(
    {
        "H87": "Pieza",
        "E48": "Unidad de servicio",
        "KGM": "Kilogramo",
        "LTR": "Litro",
        "MTR": "Metro",
        "MTK": "Metro cuadrado",
        "XBX": "Caja",
        "HUR": "Hora",
        "ZZ": "Otro",
    }
)

API_PROVIDERS: tuple[str, ...] = ("SAT_GT_FEL", "SAT_MX", "DIAN_CO", "GENERIC")

COUNTRIES: tuple[str, ...] = (
    "México",
    "Argentina",
    "Bolivia",
    "Chile",
    "Colombia",
    "Costa Rica",
    "Cuba",
    "Ecuador",
    "El Salvador",
    "España",
    "Estados Unidos",
    "Guatemala",
    "Honduras",
    "Nicaragua",
    "Panamá",
    "Paraguay",
    "Perú",
    "República Dominicana",
    "Uruguay",
    "Venezuela",
)

CURRENCY_SYMBOLS: Mapping[str, str] = MappingProxyType(
    {
        "MXN": "$",
        "USD": "US$",
        "EUR": "€",
        "GTQ": "Q",
        "COP": "COL$",
        "PEN": "S/",
        "ARS": "ARS",
        "CLP": "CLP",
        "GBP": "£",
    }
)

# Fallback values applied whenever configuration, forms, or CSV rows omit a
# field. Keys mirror the ``[Defaults]``/``[Numbering]``/``[Summary]`` options.
DEFAULTS: Mapping[str, str] = MappingProxyType(
    {
        "Currency": "MXN",
        "Country": "México",
        "Unit": "H87",
        "PlaceholderTaxId": "XAXX010101000",
        "ImportProductCode": "CSV-IMP",
        "Prefix": "INV-",
        "Width": "4",
        "Model": "gpt-4o-mini",
        "Timeout": "30",
    }
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "InvoiceStatus",
    "TaxType",
    "ApiEnvironment",
    "SheetName",
    "UNIT_TYPES",
    "API_PROVIDERS",
    "COUNTRIES",
    "CURRENCY_SYMBOLS",
    "DEFAULTS",
]
