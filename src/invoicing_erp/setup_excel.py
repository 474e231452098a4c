"""Bootstrap an empty invoice workbook.

Runnable as ``invoice-setup`` (or ``python -m invoicing_erp.setup_excel``) and
reused by the CLI ``init`` command and the test fixtures.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import DEFAULTS


def _write_headers(workbook: openpyxl.Workbook, sheet_columns: Mapping[str, Sequence[str]]) -> None:
    header_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        sheet = workbook.create_sheet(title=sheet_name)
        for column_index, header in enumerate(columns, start=1):
            sheet.cell(row=1, column=column_index, value=header).font = header_font


def create_master_workbook(
    destination: Path,
    *,
    company_name: str = "",
    currency: str = DEFAULTS["Currency"],
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty invoice workbook at ``destination``.

    Every managed sheet gets a bold header row and the company profile is
    seeded with the issuer name and an upper-cased currency code.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """
    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing invoice workbook: {destination}")

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    _write_headers(workbook, sheet_columns)

    if data_manager.COMPANY_PROFILE_SHEET in workbook.sheetnames:
        profile = data_manager.CompanyProfile(
            name=company_name,
            tax_id="",
            address="",
            currency=currency.upper(),
        )
        data_manager.write_company_profile(workbook, profile)

    data_manager.save_workbook(workbook, destination)
    log.info("Created invoice workbook '%s' with sheets %s", destination, list(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini`` from its company settings."""

    config_path = Path(config_path).expanduser().resolve()
    settings = data_manager.parse_settings(data_manager.read_config(config_path), base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        company_name=settings.company_name,
        currency=settings.defaults.currency,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="invoice-setup", description="Initialize the invoice workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``invoice-setup``; returns a process exit code."""

    args = parse_args(argv)
    try:
        output_path = run_from_config(Path(args.config), overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nRun with --force to replace it.", file=sys.stderr)
        return 1
    except (KeyError, OSError) as exc:
        log.error("Workbook setup failed: %s", exc)
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    print(f"Created invoice workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
