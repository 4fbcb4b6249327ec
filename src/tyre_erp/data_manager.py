"""Data access layer for the tyre ERP.

This module is the record store of the application. Every collection
(``users``, ``purchasedTyres``, ``soldTyres`` ...) is a worksheet of a single
``master_workbook.xlsx`` file and every record is one row whose first column
holds an opaque identifier assigned here. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: reading typed records and creating, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    COLLECTION_COLUMNS,
    DEFAULT_TOP_SKU_COUNT,
    EPOCH_DATE,
    EPOCH_TIMESTAMP,
    CollectionName,
)


CONFIG_FILE_NAME = "config.ini"
ID_COLUMN = "RecordID"


class StaleRecordError(Exception):
    """Raised when a compare-and-swap update finds an unexpected stored value."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    top_sku_count: int = DEFAULT_TOP_SKU_COUNT


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``users`` sheet."""

    record_id: str
    name: str
    mobile: str
    address: str
    user_type: str


@dataclass(frozen=True)
class PurchaseRow:
    """A purchase batch; ``store`` and ``shop`` are running balances."""

    record_id: str
    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    store: int
    shop: int
    total_price: Decimal
    date: date
    invoice_number: str
    created_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """One line of a (possibly multi-item) sale."""

    record_id: str
    transaction_id: str
    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    discount: Decimal
    due: Decimal
    customer_name: str
    bank: str
    comment: str
    date: date
    payable_amount: Decimal
    created_at: datetime


@dataclass(frozen=True)
class ReturnRow:
    """One returned line; ``quantity`` is the originally sold quantity."""

    record_id: str
    transaction_id: str
    customer: str
    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    return_quantity: int
    return_price: Decimal
    return_total_price: Decimal
    date: date
    comment: str


@dataclass(frozen=True)
class TransferRow:
    """A store to shop quantity move."""

    record_id: str
    company: str
    brand: str
    model: str
    size: str
    quantity: int
    date: date
    created_at: datetime


@dataclass(frozen=True)
class DetailsRow:
    """Cached paid/due rollup for one company or customer."""

    record_id: str
    counterparty_name: str
    total_paid: Decimal
    due: Decimal
    date: date


@dataclass(frozen=True)
class LedgerEntryRow:
    """A debit or credit posted against one company or customer."""

    record_id: str
    counterparty_name: str
    date: date
    narration: str
    description: str
    debit: Decimal
    credit: Decimal
    invoice_number: str
    payment_method: str
    bank_name: str
    created_at: datetime


@dataclass(frozen=True)
class BrandDetailRow:
    """Per company/brand/size paid and returned amounts."""

    record_id: str
    company_name: str
    brand: str
    size: str
    total_paid: Decimal
    total_return: Decimal


Record = Union[
    UserRow,
    PurchaseRow,
    SaleRow,
    ReturnRow,
    TransferRow,
    DetailsRow,
    LedgerEntryRow,
    BrandDetailRow,
]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
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

    Validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``ShopName`` and ``SchemaVersion``.
    ``[Reports] TopSkuCount`` is optional. Relative ``DataFile`` entries are
    anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``TopSkuCount`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    top_sku_count = parser.getint("Reports", "TopSkuCount", fallback=DEFAULT_TOP_SKU_COUNT)
    if top_sku_count <= 0:
        raise ValueError("TopSkuCount must be a positive integer")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        top_sku_count=top_sku_count,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def generate_record_id() -> str:
    """Return a new opaque record identifier."""

    return uuid.uuid4().hex


def _sheet(workbook: Workbook, collection: CollectionName):
    return workbook[CollectionName(collection).value]


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _pad(raw_row: Sequence[object], width: int) -> tuple[object, ...]:
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def iter_records(workbook: Workbook, collection: CollectionName) -> Iterable[Record]:
    """Stream typed records from the worksheet backing ``collection``.

    The header row and rows whose cells are all ``None`` are skipped. Each
    remaining row is converted by the collection's ``deserialize_*`` helper,
    which coerces malformed cells to neutral values instead of failing.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (CollectionName): Collection to read.

    Yields:
        Record: One typed row per populated worksheet row, in sheet order.
    """

    collection = CollectionName(collection)
    reader = _DESERIALIZERS[collection]
    width = len(COLLECTION_COLUMNS[collection])
    sheet = _sheet(workbook, collection)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield reader(_pad(raw, width))


def query_records(
    workbook: Workbook,
    collection: CollectionName,
    predicate: Optional[Callable[[Record], bool]] = None,
) -> list[Record]:
    """Return every record of ``collection`` matching ``predicate``.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (CollectionName): Collection to query.
        predicate (Callable | None): Optional filter; ``None`` keeps all rows.

    Returns:
        list[Record]: Matching records in sheet order.
    """

    records = iter_records(workbook, collection)
    if predicate is None:
        return list(records)
    return [record for record in records if predicate(record)]


def find_record(workbook: Workbook, collection: CollectionName, record_id: str) -> Optional[Record]:
    """Return the record whose id equals ``record_id`` or ``None``."""

    for record in iter_records(workbook, collection):
        if record.record_id == record_id:
            return record
    return None


def create_record(workbook: Workbook, collection: CollectionName, record: Record) -> str:
    """Append ``record`` to ``collection`` and return its identifier.

    Records without an id receive one from :func:`generate_record_id`.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        collection (CollectionName): Target collection.
        record (Record): Row dataclass matching the collection.

    Returns:
        str: The identifier under which the row was stored.

    Raises:
        TypeError: If the row type does not belong to ``collection``.
    """

    collection = CollectionName(collection)
    expected_type = _ROW_TYPES[collection]
    if not isinstance(record, expected_type):
        raise TypeError(
            f"{type(record).__name__} cannot be stored in '{collection.value}'"
        )
    if not record.record_id:
        record = replace(record, record_id=generate_record_id())

    _sheet(workbook, collection).append(serialize_record(record))
    log.debug("Created record '%s' in '%s'", record.record_id, collection.value)
    return record.record_id


def update_record(
    workbook: Workbook,
    collection: CollectionName,
    record_id: str,
    *,
    field_values: Mapping[str, Any],
    expected: Optional[Mapping[str, Any]] = None,
) -> None:
    """Update selected columns of an existing record.

    Only the columns named in ``field_values`` are written. When ``expected``
    is supplied every listed column must still hold the given value (compared
    after the same coercion applied on read); otherwise nothing is written and
    :class:`StaleRecordError` is raised. Workflows use this to guard the
    read-modify-write cycles on running balances.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (CollectionName): Collection holding the record.
        record_id (str): Identifier of the row to update.
        field_values (Mapping[str, Any]): Column name to replacement value.
        expected (Mapping[str, Any] | None): Column name to value the caller
            last observed.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
        StaleRecordError: If an ``expected`` value no longer matches.
    """

    collection = CollectionName(collection)
    row_index = locate_row(workbook, collection.value, ID_COLUMN, record_id)
    if row_index is None:
        raise KeyError(f"Record not found in '{collection.value}': {record_id}")

    sheet = _sheet(workbook, collection)
    header_map = _header_map(sheet)

    for column in (*field_values, *(expected or {})):
        if column not in header_map:
            raise KeyError(f"Unknown {collection.value} field: {column}")

    for column, observed in (expected or {}).items():
        stored = sheet.cell(row=row_index, column=header_map[column]).value
        if not _same_value(stored, observed):
            log.warning(
                "Stale update on '%s' record '%s': %s is %r, expected %r",
                collection.value,
                record_id,
                column,
                stored,
                observed,
            )
            raise StaleRecordError(
                f"{collection.value}/{record_id}: {column} changed (expected {observed!r})"
            )

    for column, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[column], value=_to_cell(value))


def delete_record(workbook: Workbook, collection: CollectionName, record_id: str) -> None:
    """Remove the row holding ``record_id``.

    Raises:
        KeyError: If the record does not exist.
    """

    collection = CollectionName(collection)
    row_index = locate_row(workbook, collection.value, ID_COLUMN, record_id)
    if row_index is None:
        raise KeyError(f"Record not found in '{collection.value}': {record_id}")
    _sheet(workbook, collection).delete_rows(row_index, 1)
    log.debug("Deleted record '%s' from '%s'", record_id, collection.value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(row) >= key_col_index and row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_record(record: Record) -> list[object]:
    """Convert a row dataclass into its worksheet column ordering.

    Dataclass fields are declared in column order, so serialization is a
    straight walk over the fields. Dates and timestamps become ISO strings and
    :class:`~decimal.Decimal` values are kept to preserve precision.
    """

    return [_to_cell(getattr(record, item.name)) for item in fields(record)]


def _to_cell(value: Any) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _same_value(stored: object, observed: Any) -> bool:
    if isinstance(observed, bool):
        return bool(stored) is observed
    if isinstance(observed, int):
        return to_int(stored) == observed
    if isinstance(observed, Decimal):
        return to_decimal(stored) == observed
    return to_text(stored) == to_text(_to_cell(observed))


def to_text(raw: object) -> str:
    """Coerce a cell to stripped text; ``None`` becomes ``""``."""

    return "" if raw is None else str(raw).strip()


def to_decimal(raw: object) -> Decimal:
    """Coerce a cell to :class:`Decimal`; blank or malformed input becomes 0."""

    if raw is None or isinstance(raw, bool):
        return Decimal("0")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


def to_int(raw: object) -> int:
    """Coerce a cell to ``int`` truncating fractions; malformed input becomes 0."""

    return int(to_decimal(raw))


def to_date(raw: object) -> date:
    """Coerce a cell to a calendar date; blank or malformed input is the epoch."""

    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = to_text(raw)
    if not text:
        return EPOCH_DATE
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return EPOCH_DATE


def to_timestamp(raw: object) -> datetime:
    """Coerce a cell to an aware timestamp; naive values are taken as UTC."""

    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, date):
        moment = datetime(raw.year, raw.month, raw.day)
    else:
        text = to_text(raw)
        if not text:
            return EPOCH_TIMESTAMP
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return EPOCH_TIMESTAMP
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw ``users`` row into a :class:`UserRow`."""

    record_id, name, mobile, address, user_type = raw_row
    return UserRow(
        record_id=to_text(record_id),
        name=to_text(name),
        mobile=to_text(mobile),
        address=to_text(address),
        user_type=to_text(user_type),
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    """Convert a raw ``purchasedTyres`` row into a :class:`PurchaseRow`.

    Numeric columns go through :func:`to_decimal` / :func:`to_int`, so a blank
    or garbled cell reads as zero rather than aborting the whole scan.
    """

    (
        record_id,
        company,
        brand,
        model,
        size,
        price,
        quantity,
        store,
        shop,
        total_price,
        when,
        invoice_number,
        created_at,
    ) = raw_row
    return PurchaseRow(
        record_id=to_text(record_id),
        company=to_text(company),
        brand=to_text(brand),
        model=to_text(model),
        size=to_text(size),
        price=to_decimal(price),
        quantity=to_int(quantity),
        store=to_int(store),
        shop=to_int(shop),
        total_price=to_decimal(total_price),
        date=to_date(when),
        invoice_number=to_text(invoice_number),
        created_at=to_timestamp(created_at),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``soldTyres`` row into a :class:`SaleRow`."""

    (
        record_id,
        transaction_id,
        company,
        brand,
        model,
        size,
        price,
        quantity,
        discount,
        due,
        customer_name,
        bank,
        comment,
        when,
        payable_amount,
        created_at,
    ) = raw_row
    return SaleRow(
        record_id=to_text(record_id),
        transaction_id=to_text(transaction_id),
        company=to_text(company),
        brand=to_text(brand),
        model=to_text(model),
        size=to_text(size),
        price=to_decimal(price),
        quantity=to_int(quantity),
        discount=to_decimal(discount),
        due=to_decimal(due),
        customer_name=to_text(customer_name),
        bank=to_text(bank),
        comment=to_text(comment),
        date=to_date(when),
        payable_amount=to_decimal(payable_amount),
        created_at=to_timestamp(created_at),
    )


def deserialize_return(raw_row: Sequence[object]) -> ReturnRow:
    """Convert a raw ``returnedTyres`` row into a :class:`ReturnRow`."""

    (
        record_id,
        transaction_id,
        customer,
        company,
        brand,
        model,
        size,
        price,
        quantity,
        return_quantity,
        return_price,
        return_total_price,
        when,
        comment,
    ) = raw_row
    return ReturnRow(
        record_id=to_text(record_id),
        transaction_id=to_text(transaction_id),
        customer=to_text(customer),
        company=to_text(company),
        brand=to_text(brand),
        model=to_text(model),
        size=to_text(size),
        price=to_decimal(price),
        quantity=to_int(quantity),
        return_quantity=to_int(return_quantity),
        return_price=to_decimal(return_price),
        return_total_price=to_decimal(return_total_price),
        date=to_date(when),
        comment=to_text(comment),
    )


def deserialize_transfer(raw_row: Sequence[object]) -> TransferRow:
    """Convert a raw ``transferredTyres`` row into a :class:`TransferRow`."""

    record_id, company, brand, model, size, quantity, when, created_at = raw_row
    return TransferRow(
        record_id=to_text(record_id),
        company=to_text(company),
        brand=to_text(brand),
        model=to_text(model),
        size=to_text(size),
        quantity=to_int(quantity),
        date=to_date(when),
        created_at=to_timestamp(created_at),
    )


def deserialize_details(raw_row: Sequence[object]) -> DetailsRow:
    """Convert a raw company/customer details row into a :class:`DetailsRow`."""

    record_id, counterparty_name, total_paid, due, when = raw_row
    return DetailsRow(
        record_id=to_text(record_id),
        counterparty_name=to_text(counterparty_name),
        total_paid=to_decimal(total_paid),
        due=to_decimal(due),
        date=to_date(when),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a raw ledger row into a :class:`LedgerEntryRow`."""

    (
        record_id,
        counterparty_name,
        when,
        narration,
        description,
        debit,
        credit,
        invoice_number,
        payment_method,
        bank_name,
        created_at,
    ) = raw_row
    return LedgerEntryRow(
        record_id=to_text(record_id),
        counterparty_name=to_text(counterparty_name),
        date=to_date(when),
        narration=to_text(narration),
        description=to_text(description),
        debit=to_decimal(debit),
        credit=to_decimal(credit),
        invoice_number=to_text(invoice_number),
        payment_method=to_text(payment_method),
        bank_name=to_text(bank_name),
        created_at=to_timestamp(created_at),
    )


def deserialize_brand_detail(raw_row: Sequence[object]) -> BrandDetailRow:
    """Convert a raw ``brandDetails`` row into a :class:`BrandDetailRow`."""

    record_id, company_name, brand, size, total_paid, total_return = raw_row
    return BrandDetailRow(
        record_id=to_text(record_id),
        company_name=to_text(company_name),
        brand=to_text(brand),
        size=to_text(size),
        total_paid=to_decimal(total_paid),
        total_return=to_decimal(total_return),
    )


_DESERIALIZERS: Mapping[CollectionName, Callable[[Sequence[object]], Record]] = {
    CollectionName.USERS: deserialize_user,
    CollectionName.PURCHASES: deserialize_purchase,
    CollectionName.SALES: deserialize_sale,
    CollectionName.RETURNS: deserialize_return,
    CollectionName.TRANSFERS: deserialize_transfer,
    CollectionName.COMPANY_DETAILS: deserialize_details,
    CollectionName.CUSTOMER_DETAILS: deserialize_details,
    CollectionName.COMPANY_LEDGER: deserialize_ledger_entry,
    CollectionName.CUSTOMER_LEDGER: deserialize_ledger_entry,
    CollectionName.BRAND_DETAILS: deserialize_brand_detail,
}

_ROW_TYPES: Mapping[CollectionName, type] = {
    CollectionName.USERS: UserRow,
    CollectionName.PURCHASES: PurchaseRow,
    CollectionName.SALES: SaleRow,
    CollectionName.RETURNS: ReturnRow,
    CollectionName.TRANSFERS: TransferRow,
    CollectionName.COMPANY_DETAILS: DetailsRow,
    CollectionName.CUSTOMER_DETAILS: DetailsRow,
    CollectionName.COMPANY_LEDGER: LedgerEntryRow,
    CollectionName.CUSTOMER_LEDGER: LedgerEntryRow,
    CollectionName.BRAND_DETAILS: BrandDetailRow,
}
