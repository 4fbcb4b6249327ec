"""Business logic layer for the tyre ERP.

Workflows (Buy, Sell, Return, Transfer, payments and user maintenance)
validate a command, then apply an ordered series of writes through the data
access layer. Reports read cached collection snapshots and hand them to the
pure functions in :mod:`tyre_erp.reporting`.
"""

from __future__ import annotations

import random
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, reporting
from .constants import (
    CASH_PAYMENT,
    COMPANY_RECEIPT_PREFIX,
    DETAILS_COLLECTION,
    EXPECTED_SCHEMA_VERSION,
    LEDGER_COLLECTION,
    PAYMENT_NARRATION_PREFIX,
    PURCHASE_INVOICE_PREFIX,
    SALE_NARRATION_PREFIX,
    CollectionName,
    PaymentMethod,
    UserType,
)


ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised before any write when a command is incomplete or not allowed."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced user, purchase, or counterparty is unknown."""


class WriteFailure(Exception):
    """Raised when a record store call fails part-way through a workflow.

    Steps applied before the failure stay applied; ``applied`` lists them so
    the caller can decide whether to discard the in-memory workbook.
    """

    def __init__(self, workflow: str, applied: Sequence[str], reason: str) -> None:
        self.workflow = workflow
        self.applied = tuple(applied)
        self.reason = reason
        super().__init__(
            f"{workflow} failed after {len(self.applied)} step(s): {reason}"
        )


Subscriber = Callable[[List[Any]], None]


@dataclass(eq=False)
class _Subscription:
    collection: CollectionName
    callback: Subscriber
    predicate: Optional[Callable[[Any], bool]] = None


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _subscribers: Dict[str, List[_Subscription]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class UserCommand:
    """User intent for registering or editing a customer or company."""

    name: str
    mobile: str
    address: str
    user_type: UserType


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for buying a batch of tyres from a company."""

    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    store: int
    shop: int
    date: Optional[date] = None


@dataclass(frozen=True)
class SaleLine:
    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    discount: Decimal = ZERO
    due: Decimal = ZERO
    comment: str = ""


@dataclass(frozen=True)
class SaleCommand:
    """User intent for a (possibly multi-item) sale to one customer."""

    customer_name: str
    lines: Tuple[SaleLine, ...]
    bank: str = ""
    date: Optional[date] = None


@dataclass(frozen=True)
class SaleResult:
    transaction_id: str
    sales: Tuple[data_manager.SaleRow, ...]
    total_debit: Decimal
    total_credit: Decimal
    total_due: Decimal


@dataclass(frozen=True)
class ReturnLine:
    company: str
    brand: str
    model: str
    size: str
    price: Decimal
    quantity: int
    return_quantity: int
    return_price: Decimal
    comment: str = ""


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for taking back tyres previously sold to a customer."""

    customer: str
    lines: Tuple[ReturnLine, ...]
    date: Optional[date] = None


@dataclass(frozen=True)
class ReturnResult:
    transaction_id: str
    returns: Tuple[data_manager.ReturnRow, ...]
    unmatched: Tuple[ReturnLine, ...] = ()


@dataclass(frozen=True)
class TransferCommand:
    """User intent for moving tyres from the store to the shop floor."""

    company: str
    brand: str
    model: str
    size: str
    quantity: int
    date: Optional[date] = None


@dataclass(frozen=True)
class CustomerPaymentCommand:
    customer_name: str
    amount: Decimal
    payment_method: PaymentMethod
    bank_name: str = ""
    date: Optional[date] = None


@dataclass(frozen=True)
class CompanyPaymentCommand:
    company: str
    amount: Decimal
    bank_name: str
    date: Optional[date] = None


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_date(candidate: Optional[date], timestamp: datetime) -> date:
    return candidate if candidate is not None else timestamp.date()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by collection name. They hold the
    typed rows of one worksheet so repeated reads inside a workflow or a
    report do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_collection_cache(context: RuntimeContext, collection: CollectionName) -> Dict[str, Any]:
    """Populate the bucket for ``collection`` on demand.

    The bucket carries ``all`` rows in sheet order and a ``by_id`` lookup.
    """

    collection = CollectionName(collection)
    bucket = _get_cache_bucket(context, collection.value)
    if "all" not in bucket:
        rows = list(data_manager.iter_records(context.workbook, collection))
        bucket["all"] = rows
        bucket["by_id"] = {row.record_id: row for row in rows}
        log.debug("Populated '%s' cache with %d entries", collection.value, len(rows))
    return bucket


def snapshot(context: RuntimeContext, collection: CollectionName) -> List[Any]:
    """Return a copy of the cached rows of ``collection`` in sheet order."""

    return list(_ensure_collection_cache(context, collection)["all"])


def subscribe(
    context: RuntimeContext,
    collection: CollectionName,
    callback: Subscriber,
    predicate: Optional[Callable[[Any], bool]] = None,
) -> Callable[[], None]:
    """Register ``callback`` for snapshots of ``collection``.

    The callback runs immediately with the current snapshot and again after
    every write to the collection. ``predicate`` filters the rows handed over.

    Args:
        context (RuntimeContext): Runtime context owning the subscription.
        collection (CollectionName): Collection to watch.
        callback (Callable): Receives a list of typed rows.
        predicate (Callable | None): Optional row filter.

    Returns:
        Callable[[], None]: Function that removes the subscription; calling it
            twice is harmless.
    """

    subscription = _Subscription(CollectionName(collection), callback, predicate)
    context._subscribers.setdefault(subscription.collection.value, []).append(subscription)
    _deliver(context, subscription)

    def unsubscribe() -> None:
        listeners = context._subscribers.get(subscription.collection.value, [])
        if subscription in listeners:
            listeners.remove(subscription)

    return unsubscribe


def _deliver(context: RuntimeContext, subscription: _Subscription) -> None:
    rows = snapshot(context, subscription.collection)
    try:
        if subscription.predicate is not None:
            rows = [row for row in rows if subscription.predicate(row)]
        subscription.callback(rows)
    except Exception:  # subscriber faults must not abort the workflow
        log.exception("Subscriber for '%s' failed", subscription.collection.value)


def _notify_write(context: RuntimeContext, collection: CollectionName) -> None:
    collection = CollectionName(collection)
    _invalidate_cache(context, collection.value)
    for subscription in list(context._subscribers.get(collection.value, [])):
        _deliver(context, subscription)


class _WriteSteps:
    """Ordered writes of one workflow invocation.

    Each successful call is appended to ``applied``. A failing call is
    re-raised as :class:`WriteFailure` carrying those steps; nothing is
    rolled back.
    """

    def __init__(self, context: RuntimeContext, workflow: str) -> None:
        self.context = context
        self.workflow = workflow
        self.applied: List[str] = []

    def _fail(self, action: str, exc: Exception) -> WriteFailure:
        log.error(
            "%s failed at '%s' after %d step(s): %s",
            self.workflow,
            action,
            len(self.applied),
            exc,
        )
        return WriteFailure(self.workflow, self.applied, f"{action}: {exc}")

    def create(self, collection: CollectionName, record: Any) -> str:
        action = f"create {CollectionName(collection).value}"
        try:
            record_id = data_manager.create_record(self.context.workbook, collection, record)
        except (KeyError, TypeError, ValueError) as exc:
            raise self._fail(action, exc) from exc
        self.applied.append(f"{action} {record_id}")
        _notify_write(self.context, collection)
        return record_id

    def update(
        self,
        collection: CollectionName,
        record_id: str,
        field_values: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        action = f"update {CollectionName(collection).value} {record_id}"
        try:
            data_manager.update_record(
                self.context.workbook,
                collection,
                record_id,
                field_values=field_values,
                expected=expected,
            )
        except (KeyError, ValueError, data_manager.StaleRecordError) as exc:
            raise self._fail(action, exc) from exc
        self.applied.append(action)
        _notify_write(self.context, collection)

    def delete(self, collection: CollectionName, record_id: str) -> None:
        action = f"delete {CollectionName(collection).value} {record_id}"
        try:
            data_manager.delete_record(self.context.workbook, collection, record_id)
        except KeyError as exc:
            raise self._fail(action, exc) from exc
        self.applied.append(action)
        _notify_write(self.context, collection)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context with settings, an open workbook and empty
            caches.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with a different schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a version other than
            ``EXPECTED_SCHEMA_VERSION``.
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


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, empty
            caches and no subscribers.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Validation and normalisation
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int, *, label: str = "Quantity") -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("%s validation failed: %s", label, quantity)
        raise ValidationError(f"{label} must be greater than zero")


def require_positive_money(amount: Decimal, *, label: str = "Amount") -> None:
    if amount <= ZERO:
        log.error("%s validation failed: %s", label, amount)
        raise ValidationError(f"{label} must be greater than zero")


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("%s validation failed: %s", label, amount)
        raise ValidationError(f"{label} must be zero or positive")


def require_fields(**values: Any) -> None:
    """Reject blank text or missing values, naming every offending field."""

    missing = [
        name
        for name, value in values.items()
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        log.error("Missing required fields: %s", ", ".join(missing))
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def normalize_company_name(name: str) -> str:
    """Company names are stored lowercase with all whitespace removed."""

    return re.sub(r"\s+", "", name).lower()


def normalize_customer_name(name: str) -> str:
    return name.strip().lower()


def generate_invoice_number(prefix: str = PURCHASE_INVOICE_PREFIX, *, when: Optional[datetime] = None) -> str:
    """Return ``{prefix}{epoch milliseconds}-{0..999}``."""

    when = _resolve_timestamp(when)
    return f"{prefix}{int(when.timestamp() * 1000)}-{random.randint(0, 999)}"


def generate_transaction_id() -> str:
    return str(uuid.uuid4())


def _same_tyre(purchase: data_manager.PurchaseRow, company: str, brand: str, model: str, size: str) -> bool:
    return (
        normalize_company_name(purchase.company) == normalize_company_name(company)
        and reporting.normalize_name(purchase.brand) == reporting.normalize_name(brand)
        and reporting.normalize_name(purchase.model) == reporting.normalize_name(model)
        and reporting.normalize_name(purchase.size) == reporting.normalize_name(size)
    )


def matching_purchases(context: RuntimeContext, company: str, brand: str, model: str, size: str) -> List[data_manager.PurchaseRow]:
    """Purchase batches of one tyre in sheet order."""

    return [
        purchase
        for purchase in snapshot(context, CollectionName.PURCHASES)
        if _same_tyre(purchase, company, brand, model, size)
    ]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _normalized_user(command: UserCommand) -> Tuple[str, str, str, UserType]:
    require_fields(
        name=command.name,
        mobile=command.mobile,
        address=command.address,
        user_type=command.user_type,
    )
    try:
        user_type = UserType(command.user_type)
    except ValueError as exc:
        log.error("Unsupported user type provided: %s", command.user_type)
        raise ValidationError(f"Unsupported user type: {command.user_type}") from exc
    if user_type is UserType.COMPANY:
        name = normalize_company_name(command.name)
    else:
        name = normalize_customer_name(command.name)
    return name, command.mobile.strip().lower(), command.address.strip().lower(), user_type


def list_users(context: RuntimeContext, user_type: Optional[UserType] = None) -> List[data_manager.UserRow]:
    users = snapshot(context, CollectionName.USERS)
    if user_type is None:
        return users
    wanted = UserType(user_type).value
    return [user for user in users if user.user_type == wanted]


def get_user(context: RuntimeContext, record_id: str) -> data_manager.UserRow:
    """Resolve a user by record id.

    Raises:
        MissingReferenceError: If no such user exists.
    """
    try:
        return _ensure_collection_cache(context, CollectionName.USERS)["by_id"][record_id]
    except KeyError as exc:
        log.warning("User lookup failed for id '%s'", record_id)
        raise MissingReferenceError(f"Unknown user id: {record_id}") from exc


def find_phone(context: RuntimeContext, name: str, user_type: Optional[UserType] = None) -> str:
    return reporting.find_phone(snapshot(context, CollectionName.USERS), name, user_type)


def add_user(context: RuntimeContext, command: UserCommand, *, timestamp: Optional[datetime] = None) -> data_manager.UserRow:
    """Register a customer or company and open its zeroed details snapshot.

    Company names are stored lowercase without whitespace, customer names
    lowercase; mobile and address are lowercased too.

    Raises:
        ValidationError: If a field is blank or the user type is unknown.
        WriteFailure: If one of the two writes fails.
    """
    name, mobile, address, user_type = _normalized_user(command)
    when = _resolve_timestamp(timestamp)
    steps = _WriteSteps(context, "add_user")

    user = data_manager.UserRow(
        record_id="",
        name=name,
        mobile=mobile,
        address=address,
        user_type=user_type.value,
    )
    record_id = steps.create(CollectionName.USERS, user)
    steps.create(
        DETAILS_COLLECTION[user_type],
        data_manager.DetailsRow(
            record_id="",
            counterparty_name=name,
            total_paid=ZERO,
            due=ZERO,
            date=when.date(),
        ),
    )
    log.info("Added %s '%s'", user_type.value, name)
    return get_user(context, record_id)


def update_user(context: RuntimeContext, record_id: str, command: UserCommand) -> data_manager.UserRow:
    get_user(context, record_id)
    name, mobile, address, user_type = _normalized_user(command)
    _WriteSteps(context, "update_user").update(
        CollectionName.USERS,
        record_id,
        {"Name": name, "Mobile": mobile, "Address": address, "UserType": user_type.value},
    )
    log.info("Updated user '%s' (%s)", record_id, name)
    return get_user(context, record_id)


def delete_user(context: RuntimeContext, record_id: str) -> None:
    """Delete a user; its ledger history and snapshot are left untouched."""

    user = get_user(context, record_id)
    _WriteSteps(context, "delete_user").delete(CollectionName.USERS, record_id)
    log.info("Deleted user '%s' (%s)", record_id, user.name)


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def _validate_purchase(command: PurchaseCommand) -> None:
    require_fields(
        company=command.company,
        brand=command.brand,
        model=command.model,
        size=command.size,
        date=command.date,
    )
    require_positive_money(command.price, label="Price")
    require_positive_quantity(command.quantity)
    if command.store < 0 or command.shop < 0:
        log.error("Negative store/shop split: store=%s shop=%s", command.store, command.shop)
        raise ValidationError("Store and Shop quantities cannot be negative")
    if command.store + command.shop != command.quantity:
        log.error(
            "Store/shop split %s+%s does not match quantity %s",
            command.store,
            command.shop,
            command.quantity,
        )
        raise ValidationError("Store and Shop quantities must sum to the total Quantity")


def purchase_narration(size: str, brand: str, quantity: int, price: Decimal) -> str:
    return f"{size or 'N/A'}_{brand or 'N/A'}_Qty_{quantity}_Rate_{reporting.format_number(price)}"


def get_purchase(context: RuntimeContext, record_id: str) -> data_manager.PurchaseRow:
    try:
        return _ensure_collection_cache(context, CollectionName.PURCHASES)["by_id"][record_id]
    except KeyError as exc:
        log.warning("Purchase lookup failed for id '%s'", record_id)
        raise MissingReferenceError(f"Unknown purchase id: {record_id}") from exc


def record_purchase(context: RuntimeContext, command: PurchaseCommand, *, timestamp: Optional[datetime] = None) -> data_manager.PurchaseRow:
    """Validate a purchase, store it, then debit the supplier's ledger.

    The purchase and its ledger entry share an ``INV`` invoice number so a
    later edit or delete can find the entry again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (PurchaseCommand): Structured purchase intent. ``date`` is
            required.
        timestamp (datetime | None): Creation time; defaults to now.

    Returns:
        data_manager.PurchaseRow: The stored purchase.

    Raises:
        ValidationError: If a field is missing, price or quantity is not
            positive, or ``store + shop`` differs from ``quantity``.
        WriteFailure: If a write fails; the purchase may already be stored.
    """
    _validate_purchase(command)
    when = _resolve_timestamp(timestamp)
    company = normalize_company_name(command.company)
    total_price = command.price * command.quantity
    invoice_number = generate_invoice_number(PURCHASE_INVOICE_PREFIX, when=when)
    steps = _WriteSteps(context, "record_purchase")

    record_id = steps.create(
        CollectionName.PURCHASES,
        data_manager.PurchaseRow(
            record_id="",
            company=company,
            brand=command.brand.strip(),
            model=command.model.strip(),
            size=command.size.strip(),
            price=command.price,
            quantity=command.quantity,
            store=command.store,
            shop=command.shop,
            total_price=total_price,
            date=command.date,
            invoice_number=invoice_number,
            created_at=when,
        ),
    )
    steps.create(
        CollectionName.COMPANY_LEDGER,
        data_manager.LedgerEntryRow(
            record_id="",
            counterparty_name=company,
            date=command.date,
            narration=purchase_narration(command.size, command.brand, command.quantity, command.price),
            description="",
            debit=total_price,
            credit=ZERO,
            invoice_number=invoice_number,
            payment_method="",
            bank_name="",
            created_at=when,
        ),
    )
    log.info(
        "Recorded purchase '%s' from '%s' (%s %s %s, quantity=%s, total=%s)",
        invoice_number,
        company,
        command.brand,
        command.model,
        command.size,
        command.quantity,
        total_price,
    )
    return get_purchase(context, record_id)


def _ledger_entries_for_invoice(context: RuntimeContext, invoice_number: str) -> List[data_manager.LedgerEntryRow]:
    if not invoice_number:
        return []
    return [
        entry
        for entry in snapshot(context, CollectionName.COMPANY_LEDGER)
        if entry.invoice_number == invoice_number
    ]


def update_purchase(context: RuntimeContext, record_id: str, command: PurchaseCommand) -> data_manager.PurchaseRow:
    """Rewrite a purchase and the ledger debit carrying its invoice number.

    Only the first ledger entry with the invoice is updated; its creation
    time is kept so the statement order does not change.

    Raises:
        MissingReferenceError: If ``record_id`` is unknown.
        ValidationError: Same rules as :func:`record_purchase`.
    """
    existing = get_purchase(context, record_id)
    _validate_purchase(command)
    company = normalize_company_name(command.company)
    total_price = command.price * command.quantity
    steps = _WriteSteps(context, "update_purchase")

    steps.update(
        CollectionName.PURCHASES,
        record_id,
        {
            "Company": company,
            "Brand": command.brand.strip(),
            "Model": command.model.strip(),
            "Size": command.size.strip(),
            "Price": command.price,
            "Quantity": command.quantity,
            "Store": command.store,
            "Shop": command.shop,
            "TotalPrice": total_price,
            "Date": command.date,
        },
    )
    entries = _ledger_entries_for_invoice(context, existing.invoice_number)
    if entries:
        steps.update(
            CollectionName.COMPANY_LEDGER,
            entries[0].record_id,
            {
                "CounterpartyName": company,
                "Date": command.date,
                "Narration": purchase_narration(command.size, command.brand, command.quantity, command.price),
                "Debit": total_price,
                "Credit": ZERO,
            },
        )
    else:
        log.warning("No ledger entry carries invoice '%s'", existing.invoice_number)
    log.info("Updated purchase '%s' (%s)", record_id, existing.invoice_number)
    return get_purchase(context, record_id)


def delete_purchase(context: RuntimeContext, record_id: str) -> int:
    """Delete a purchase and every company ledger entry with its invoice.

    Returns:
        int: Number of ledger entries removed alongside the purchase.
    """
    purchase = get_purchase(context, record_id)
    steps = _WriteSteps(context, "delete_purchase")
    steps.delete(CollectionName.PURCHASES, record_id)
    entries = _ledger_entries_for_invoice(context, purchase.invoice_number)
    for entry in entries:
        steps.delete(CollectionName.COMPANY_LEDGER, entry.record_id)
    log.info(
        "Deleted purchase '%s' and %d ledger entries (%s)",
        record_id,
        len(entries),
        purchase.invoice_number,
    )
    return len(entries)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def _validate_sale(context: RuntimeContext, command: SaleCommand) -> None:
    require_fields(customer_name=command.customer_name, date=command.date)
    if not command.lines:
        log.error("Sale for '%s' has no items", command.customer_name)
        raise ValidationError("A sale needs at least one item")

    demand: Dict[Tuple[str, str, str, str], int] = {}
    lines_by_key: Dict[Tuple[str, str, str, str], SaleLine] = {}
    for line in command.lines:
        require_fields(company=line.company, brand=line.brand, model=line.model, size=line.size)
        require_positive_money(line.price, label="Price")
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.discount, label="Discount")
        require_nonnegative_money(line.due, label="Due")
        if line.discount > line.price:
            log.error("Discount %s exceeds price %s for %s %s", line.discount, line.price, line.brand, line.size)
            raise ValidationError("Discount cannot exceed the price")
        line_total = (line.price - line.discount) * line.quantity
        if line.due > line_total:
            log.error("Due %s exceeds line total %s for %s %s", line.due, line_total, line.brand, line.size)
            raise ValidationError("Due cannot exceed the discounted line total")
        key = reporting.stock_key(normalize_company_name(line.company), line.brand, line.size, line.model)
        demand[key] = demand.get(key, 0) + line.quantity
        lines_by_key.setdefault(key, line)

    for key, wanted in demand.items():
        line = lines_by_key[key]
        available = sum(
            purchase.shop
            for purchase in matching_purchases(context, line.company, line.brand, line.model, line.size)
        )
        if wanted > available:
            log.error(
                "Insufficient shop stock for %s %s %s (%s): wanted %s, available %s",
                line.company,
                line.brand,
                line.model,
                line.size,
                wanted,
                available,
            )
            raise ValidationError(
                f"Only {available} tyres available in shop for {line.brand} {line.model} {line.size}"
            )


def _customer_total_cost(context: RuntimeContext, customer: str) -> Decimal:
    return sum(
        (
            reporting.sale_line_total(sale)
            for sale in snapshot(context, CollectionName.SALES)
            if normalize_customer_name(sale.customer_name) == customer
        ),
        ZERO,
    )


def _details_for(context: RuntimeContext, collection: CollectionName, name: str) -> Optional[data_manager.DetailsRow]:
    for row in snapshot(context, collection):
        if reporting.normalize_name(row.counterparty_name) == name:
            return row
    return None


def _upsert_details(
    steps: _WriteSteps,
    collection: CollectionName,
    name: str,
    total_paid: Decimal,
    due: Decimal,
    when: date,
) -> None:
    existing = _details_for(steps.context, collection, name)
    if existing is not None:
        steps.update(
            collection,
            existing.record_id,
            {"TotalPaid": total_paid, "Due": due, "Date": when},
        )
    else:
        steps.create(
            collection,
            data_manager.DetailsRow(
                record_id="",
                counterparty_name=name,
                total_paid=total_paid,
                due=due,
                date=when,
            ),
        )


def record_sale(context: RuntimeContext, command: SaleCommand, *, timestamp: Optional[datetime] = None) -> SaleResult:
    """Validate and book a multi-item sale.

    Every line is checked against the live ``shop`` balance before anything
    is written; demand for the same tyre across several lines is added up.
    The writes then happen in this order:

    1. ``shop`` is decremented across matching purchases, first found first
       drained, each update guarded by the value just read.
    2. One sale row per line, all sharing a new transaction id.
    3. A ``Sale_<id>`` debit for the discounted total and, when part of it was
       paid, a ``Payment_<id>`` credit.
    4. The customer's details snapshot: paid grows by the credit and the due
       becomes ``max(0, lifetime cost - paid)``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured sale intent.
        timestamp (datetime | None): Creation time; defaults to now.

    Returns:
        SaleResult: Transaction id, stored rows and the ledger totals.

    Raises:
        ValidationError: If a field is invalid or shop stock is insufficient.
        WriteFailure: If a write fails; earlier steps stay applied.
    """
    _validate_sale(context, command)
    when = _resolve_timestamp(timestamp)
    customer = normalize_customer_name(command.customer_name)
    bank = command.bank.strip()
    payment_method = PaymentMethod.BANK if bank else PaymentMethod.CASH
    transaction_id = generate_transaction_id()
    steps = _WriteSteps(context, "record_sale")

    sale_ids = []
    for line in command.lines:
        remaining = line.quantity
        for purchase in matching_purchases(context, line.company, line.brand, line.model, line.size):
            if remaining <= 0:
                break
            if purchase.shop <= 0:
                continue
            deduct = min(purchase.shop, remaining)
            steps.update(
                CollectionName.PURCHASES,
                purchase.record_id,
                {"Shop": purchase.shop - deduct},
                expected={"Shop": purchase.shop},
            )
            remaining -= deduct

        sale_ids.append(
            steps.create(
                CollectionName.SALES,
                data_manager.SaleRow(
                    record_id="",
                    transaction_id=transaction_id,
                    company=normalize_company_name(line.company),
                    brand=line.brand.strip(),
                    model=line.model.strip(),
                    size=line.size.strip(),
                    price=line.price,
                    quantity=line.quantity,
                    discount=line.discount,
                    due=line.due,
                    customer_name=customer,
                    bank=bank,
                    comment=line.comment,
                    date=command.date,
                    payable_amount=(line.price - line.discount) * line.quantity - line.due,
                    created_at=when,
                ),
            )
        )

    total_debit = sum(((line.price - line.discount) * line.quantity for line in command.lines), ZERO)
    total_due = sum((line.due for line in command.lines), ZERO)
    total_credit = total_debit - total_due

    if total_debit > 0:
        items = ", ".join(f"{line.quantity} {line.brand} {line.size}" for line in command.lines)
        steps.create(
            CollectionName.CUSTOMER_LEDGER,
            data_manager.LedgerEntryRow(
                record_id="",
                counterparty_name=customer,
                date=command.date,
                narration=f"{SALE_NARRATION_PREFIX}{transaction_id}",
                description=f"Tyres sold: {items}",
                debit=total_debit,
                credit=ZERO,
                invoice_number=transaction_id,
                payment_method=payment_method.value,
                bank_name=bank,
                created_at=when,
            ),
        )
    if total_credit > 0:
        steps.create(
            CollectionName.CUSTOMER_LEDGER,
            data_manager.LedgerEntryRow(
                record_id="",
                counterparty_name=customer,
                date=command.date,
                narration=f"{PAYMENT_NARRATION_PREFIX}{transaction_id}",
                description=f"Payment via {bank}" if bank else CASH_PAYMENT,
                debit=ZERO,
                credit=total_credit,
                invoice_number=transaction_id,
                payment_method=payment_method.value,
                bank_name=bank,
                created_at=when,
            ),
        )

    existing = _details_for(context, CollectionName.CUSTOMER_DETAILS, customer)
    total_paid = (existing.total_paid if existing else ZERO) + max(total_credit, ZERO)
    due = max(ZERO, _customer_total_cost(context, customer) - total_paid)
    _upsert_details(steps, CollectionName.CUSTOMER_DETAILS, customer, total_paid, due, command.date)

    by_id = _ensure_collection_cache(context, CollectionName.SALES)["by_id"]
    log.info(
        "Recorded sale '%s' to '%s' (%d items, debit=%s, credit=%s)",
        transaction_id,
        customer,
        len(command.lines),
        total_debit,
        total_credit,
    )
    return SaleResult(
        transaction_id=transaction_id,
        sales=tuple(by_id[sale_id] for sale_id in sale_ids),
        total_debit=total_debit,
        total_credit=total_credit,
        total_due=total_due,
    )


# ---------------------------------------------------------------------------
# Returns and transfers
# ---------------------------------------------------------------------------


def _validate_return(command: ReturnCommand) -> None:
    require_fields(customer=command.customer, date=command.date)
    if not command.lines:
        log.error("Return for '%s' has no items", command.customer)
        raise ValidationError("A return needs at least one item")
    for line in command.lines:
        require_fields(company=line.company, brand=line.brand, model=line.model, size=line.size)
        require_positive_quantity(line.return_quantity, label="Return quantity")
        require_nonnegative_money(line.return_price, label="Return price")
        if line.return_quantity > line.quantity:
            log.error(
                "Return quantity %s exceeds sold quantity %s",
                line.return_quantity,
                line.quantity,
            )
            raise ValidationError("Return quantity cannot exceed original sold quantity")


def record_return(context: RuntimeContext, command: ReturnCommand) -> ReturnResult:
    """Book returned tyres and put them back on the shop floor.

    Each line is stored first, then the first matching purchase gets its
    ``shop`` balance increased by the returned quantity. A line with no
    matching purchase keeps its return row, is logged and is listed in
    :attr:`ReturnResult.unmatched`.

    Raises:
        ValidationError: If a field is missing or a return quantity is not
            within ``1..quantity``.
        WriteFailure: If a write fails; earlier steps stay applied.
    """
    _validate_return(command)
    customer = normalize_customer_name(command.customer)
    transaction_id = generate_transaction_id()
    steps = _WriteSteps(context, "record_return")

    return_ids = []
    unmatched = []
    for line in command.lines:
        return_ids.append(
            steps.create(
                CollectionName.RETURNS,
                data_manager.ReturnRow(
                    record_id="",
                    transaction_id=transaction_id,
                    customer=customer,
                    company=normalize_company_name(line.company),
                    brand=line.brand.strip(),
                    model=line.model.strip(),
                    size=line.size.strip(),
                    price=line.price,
                    quantity=line.quantity,
                    return_quantity=line.return_quantity,
                    return_price=line.return_price,
                    return_total_price=line.return_price * line.return_quantity,
                    date=command.date,
                    comment=line.comment,
                ),
            )
        )
        candidates = matching_purchases(context, line.company, line.brand, line.model, line.size)
        if not candidates:
            log.warning(
                "No purchase found to restock %s %s %s (%s); return kept without restock",
                line.company,
                line.brand,
                line.model,
                line.size,
            )
            unmatched.append(line)
            continue
        target = candidates[0]
        steps.update(
            CollectionName.PURCHASES,
            target.record_id,
            {"Shop": target.shop + line.return_quantity},
            expected={"Shop": target.shop},
        )

    by_id = _ensure_collection_cache(context, CollectionName.RETURNS)["by_id"]
    log.info(
        "Recorded return '%s' from '%s' (%d items, %d unmatched)",
        transaction_id,
        customer,
        len(command.lines),
        len(unmatched),
    )
    return ReturnResult(
        transaction_id=transaction_id,
        returns=tuple(by_id[return_id] for return_id in return_ids),
        unmatched=tuple(unmatched),
    )


def record_transfer(context: RuntimeContext, command: TransferCommand, *, timestamp: Optional[datetime] = None) -> data_manager.TransferRow:
    """Move tyres from store to shop, draining matching purchases greedily.

    Raises:
        ValidationError: If no purchase matches, the quantity is not positive
            or it exceeds the combined ``store`` balance.
        WriteFailure: If a write fails; earlier steps stay applied.
    """
    require_fields(
        company=command.company,
        brand=command.brand,
        model=command.model,
        size=command.size,
        date=command.date,
    )
    require_positive_quantity(command.quantity)
    candidates = matching_purchases(context, command.company, command.brand, command.model, command.size)
    if not candidates:
        log.error(
            "Transfer rejected: no purchase for %s %s %s (%s)",
            command.company,
            command.brand,
            command.model,
            command.size,
        )
        raise ValidationError("No matching tyre found in purchases")
    in_store = sum(purchase.store for purchase in candidates)
    if command.quantity > in_store:
        log.error("Transfer rejected: requested %s, store holds %s", command.quantity, in_store)
        raise ValidationError(f"Only {in_store} tyres available in store")

    when = _resolve_timestamp(timestamp)
    steps = _WriteSteps(context, "record_transfer")
    remaining = command.quantity
    for purchase in candidates:
        if remaining <= 0:
            break
        moved = min(purchase.store, remaining)
        if moved <= 0:
            continue
        steps.update(
            CollectionName.PURCHASES,
            purchase.record_id,
            {"Store": purchase.store - moved, "Shop": purchase.shop + moved},
            expected={"Store": purchase.store, "Shop": purchase.shop},
        )
        remaining -= moved

    record_id = steps.create(
        CollectionName.TRANSFERS,
        data_manager.TransferRow(
            record_id="",
            company=normalize_company_name(command.company),
            brand=command.brand.strip(),
            model=command.model.strip(),
            size=command.size.strip(),
            quantity=command.quantity,
            date=command.date,
            created_at=when,
        ),
    )
    log.info(
        "Transferred %s x %s %s %s from store to shop",
        command.quantity,
        command.brand,
        command.model,
        command.size,
    )
    return _ensure_collection_cache(context, CollectionName.TRANSFERS)["by_id"][record_id]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def record_customer_payment(
    context: RuntimeContext,
    command: CustomerPaymentCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.LedgerEntryRow:
    """Credit a customer's ledger and refresh their details snapshot.

    Raises:
        ValidationError: If the amount is not positive, the method is unknown
            or a bank payment has no bank name.
        MissingReferenceError: If the customer has never bought anything.
    """
    require_fields(customer_name=command.customer_name)
    require_positive_money(command.amount)
    try:
        method = PaymentMethod(command.payment_method)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise ValidationError(f"Unsupported payment method: {command.payment_method}") from exc
    bank = command.bank_name.strip()
    if method is PaymentMethod.BANK and not bank:
        log.error("Bank payment for '%s' has no bank name", command.customer_name)
        raise ValidationError("Please provide bank name for bank payment")

    customer = normalize_customer_name(command.customer_name)
    if not any(
        normalize_customer_name(sale.customer_name) == customer
        for sale in snapshot(context, CollectionName.SALES)
    ):
        log.warning("Payment rejected: customer '%s' has no sales", customer)
        raise MissingReferenceError(f"Customer not found in sales data: {customer}")

    when = _resolve_timestamp(timestamp)
    on_date = _resolve_date(command.date, when)
    existing = _details_for(context, CollectionName.CUSTOMER_DETAILS, customer)
    total_paid = (existing.total_paid if existing else ZERO) + command.amount
    due = max(ZERO, _customer_total_cost(context, customer) - total_paid)

    steps = _WriteSteps(context, "record_customer_payment")
    _upsert_details(steps, CollectionName.CUSTOMER_DETAILS, customer, total_paid, due, on_date)
    record_id = steps.create(
        CollectionName.CUSTOMER_LEDGER,
        data_manager.LedgerEntryRow(
            record_id="",
            counterparty_name=customer,
            date=on_date,
            narration="",
            description=f"Payment via {bank}" if method is PaymentMethod.BANK else CASH_PAYMENT,
            debit=ZERO,
            credit=command.amount,
            invoice_number="",
            payment_method=method.value,
            bank_name=bank if method is PaymentMethod.BANK else "",
            created_at=when,
        ),
    )
    log.info("Recorded %s payment of %s from '%s'", method.value, command.amount, customer)
    return _ensure_collection_cache(context, CollectionName.CUSTOMER_LEDGER)["by_id"][record_id]


def record_company_payment(
    context: RuntimeContext,
    command: CompanyPaymentCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.LedgerEntryRow:
    """Credit a supplier's ledger with a bank payment.

    The supplier's snapshot is recomputed from scratch: paid is the sum of
    every ledger credit including this one, due is the purchase cost minus
    that, floored at zero.

    Raises:
        ValidationError: If the amount is not positive or no bank is named.
        MissingReferenceError: If nothing was ever bought from the company.
    """
    require_fields(company=command.company, bank_name=command.bank_name)
    require_positive_money(command.amount)
    company = normalize_company_name(command.company)
    purchases = [
        purchase
        for purchase in snapshot(context, CollectionName.PURCHASES)
        if normalize_company_name(purchase.company) == company
    ]
    if not purchases:
        log.warning("Payment rejected: company '%s' has no purchases", company)
        raise MissingReferenceError(f"Company not found in purchase data: {company}")

    when = _resolve_timestamp(timestamp)
    on_date = _resolve_date(command.date, when)
    bank = command.bank_name.strip()
    steps = _WriteSteps(context, "record_company_payment")
    record_id = steps.create(
        CollectionName.COMPANY_LEDGER,
        data_manager.LedgerEntryRow(
            record_id="",
            counterparty_name=company,
            date=on_date,
            narration=f"Payment via {bank}",
            description="",
            debit=ZERO,
            credit=command.amount,
            invoice_number=generate_invoice_number(COMPANY_RECEIPT_PREFIX, when=when),
            payment_method=PaymentMethod.BANK.value,
            bank_name=bank,
            created_at=when,
        ),
    )

    total_paid = sum(
        (
            entry.credit
            for entry in snapshot(context, CollectionName.COMPANY_LEDGER)
            if reporting.normalize_name(entry.counterparty_name) == company
        ),
        ZERO,
    )
    total_cost = sum((reporting.purchase_cost(purchase) for purchase in purchases), ZERO)
    _upsert_details(
        steps,
        CollectionName.COMPANY_DETAILS,
        company,
        total_paid,
        max(ZERO, total_cost - total_paid),
        on_date,
    )
    log.info("Recorded payment of %s to '%s' via %s", command.amount, company, bank)
    return _ensure_collection_cache(context, CollectionName.COMPANY_LEDGER)["by_id"][record_id]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def stock_summary(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    on_date: Optional[date] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
) -> List[reporting.StockSummaryRow]:
    return reporting.summarize_stock(
        snapshot(context, CollectionName.PURCHASES),
        snapshot(context, CollectionName.SALES),
        snapshot(context, CollectionName.RETURNS),
        start=start,
        end=end,
        on_date=on_date,
        brand=brand,
        search=search,
    )


def ledger_statement(
    context: RuntimeContext,
    user_type: UserType,
    name: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> reporting.LedgerStatement:
    """Running-balance statement for one customer or company."""

    user_type = UserType(user_type)
    if user_type is UserType.COMPANY:
        wanted = normalize_company_name(name)
    else:
        wanted = normalize_customer_name(name)
    entries = [
        entry
        for entry in snapshot(context, LEDGER_COLLECTION[user_type])
        if reporting.normalize_name(entry.counterparty_name) == wanted
    ]
    if not entries:
        log.warning("No ledger entries for %s '%s'", user_type.value, wanted)
    return reporting.build_ledger_statement(
        entries,
        snapshot(context, CollectionName.SALES),
        snapshot(context, CollectionName.PURCHASES),
        start=start,
        end=end,
    )


def counterparty_summaries(context: RuntimeContext, user_type: UserType) -> List[reporting.CounterpartySummary]:
    if UserType(user_type) is UserType.COMPANY:
        return reporting.summarize_companies(
            snapshot(context, CollectionName.PURCHASES),
            snapshot(context, CollectionName.COMPANY_LEDGER),
        )
    return reporting.summarize_customers(
        snapshot(context, CollectionName.SALES),
        snapshot(context, CollectionName.CUSTOMER_DETAILS),
    )


def company_brand_summary(
    context: RuntimeContext,
    company: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[reporting.BrandSummaryRow]:
    return reporting.summarize_company_brands(
        normalize_company_name(company),
        snapshot(context, CollectionName.PURCHASES),
        snapshot(context, CollectionName.BRAND_DETAILS),
        start=start,
        end=end,
    )


def customer_sale_summary(
    context: RuntimeContext,
    customer: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[reporting.CustomerSaleRow]:
    return reporting.summarize_customer_sales(
        normalize_customer_name(customer),
        snapshot(context, CollectionName.SALES),
        start=start,
        end=end,
    )


def list_transfers(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[data_manager.TransferRow]:
    """Store-to-shop moves inside the window, newest first."""

    rows = reporting.filter_by_date(snapshot(context, CollectionName.TRANSFERS), start, end)
    return sorted(rows, key=lambda row: (row.date, row.created_at), reverse=True)


def pending_dues(
    context: RuntimeContext,
    user_type: UserType,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[reporting.PendingDueRow]:
    return reporting.pending_dues(
        counterparty_summaries(context, user_type),
        snapshot(context, CollectionName.USERS),
        user_type,
        start=start,
        end=end,
        search=search,
    )


def profit_and_loss(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> reporting.ProfitLossReport:
    return reporting.profit_and_loss(
        snapshot(context, CollectionName.PURCHASES),
        snapshot(context, CollectionName.SALES),
        snapshot(context, CollectionName.RETURNS),
        start=start,
        end=end,
        top_n=context.settings.top_sku_count,
    )


def stock_drift(context: RuntimeContext) -> List[reporting.StockDrift]:
    return reporting.find_stock_drift(
        snapshot(context, CollectionName.PURCHASES),
        snapshot(context, CollectionName.SALES),
        snapshot(context, CollectionName.RETURNS),
    )
