"""Bootstrap an empty master workbook for the tyre ERP.

Usable as the ``tyre-setup`` script or as a library from tests. The workbook
gets one sheet per collection with a bold header row taken from
:data:`tyre_erp.constants.COLLECTION_COLUMNS`.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import COLLECTION_COLUMNS, DEFAULT_TOP_SKU_COUNT, EXPECTED_SCHEMA_VERSION, CollectionName


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[CollectionName, Sequence[str]] = COLLECTION_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for collection, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=CollectionName(collection).value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def write_default_config(
    config_path: Path,
    *,
    data_file: str = "master_workbook.xlsx",
    shop_name: str = "Tyre Shop",
    overwrite: bool = False,
) -> Path:
    """Write a ``config.ini`` pointing at ``data_file`` with the current schema."""

    config_path = Path(config_path).expanduser().resolve()
    if config_path.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {config_path}")

    parser = configparser.ConfigParser()
    parser["System"] = {
        "DataFile": data_file,
        "ShopName": shop_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Reports"] = {"TopSkuCount": str(DEFAULT_TOP_SKU_COUNT)}
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return config_path


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` of ``config_path``."""

    located = Path(data_manager.find_config_file(config_path)).expanduser().resolve()
    parser = data_manager.read_config(located)
    settings = data_manager.parse_settings(parser, base_path=located.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="tyre-setup", description="Initialize the tyre shop workbook")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (searched upward from the working directory by default)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a default config.ini at --config (or ./config.ini) first.",
    )
    parser.add_argument("--shop-name", default="Tyre Shop")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``tyre-setup`` script."""

    args = parse_args(argv)

    try:
        if args.init_config:
            target = args.config or Path.cwd() / data_manager.CONFIG_FILE_NAME
            args.config = write_default_config(target, shop_name=args.shop_name, overwrite=args.force)
            print(f"Wrote configuration '{args.config}'")
        output_path = run_from_config(args.config, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    except FileExistsError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        print("Run with --force to overwrite the existing file if appropriate.", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}", file=sys.stderr)
        return 1

    print(f"[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
