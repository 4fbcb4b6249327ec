"""Derived views over the record collections.

Everything here is a pure function of the rows handed in: stock summaries,
ledger statements, counterparty rollups, pending dues and profit/loss. The
business layer feeds cached snapshots in and re-runs the functions after
every write, so none of them keep state between calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from . import log
from .constants import (
    CASH_PAYMENT,
    DEFAULT_TOP_SKU_COUNT,
    EPOCH_DATE,
    MANUAL_DEBIT,
    NOT_AVAILABLE,
    PURCHASE_INVOICE_PREFIX,
    PURCHASE_NOT_FOUND,
    SALE_NARRATION_PREFIX,
    SALE_NOT_FOUND,
    UNKNOWN_DESCRIPTION,
    PaymentMethod,
    UserType,
)
from .data_manager import (
    BrandDetailRow,
    DetailsRow,
    LedgerEntryRow,
    PurchaseRow,
    ReturnRow,
    SaleRow,
    UserRow,
)


ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")

Row = TypeVar("Row")
StockKey = Tuple[str, str, str, str]


@dataclass(frozen=True)
class StockSummaryRow:
    """Stock position of one (company, brand, size, model) key."""

    company: str
    brand: str
    size: str
    model: str
    bought: int
    sold: int
    returned: int
    store: int
    shop: int
    latest_date: date

    @property
    def stock(self) -> int:
        return max(self.bought - self.sold, 0)


@dataclass(frozen=True)
class LedgerLine:
    index: int
    date: date
    description: str
    invoice: str
    debit: Decimal
    credit: Decimal
    balance: Decimal


@dataclass(frozen=True)
class LedgerStatement:
    """Chronological ledger lines plus their totals."""

    lines: Tuple[LedgerLine, ...]
    total_debit: Decimal
    total_credit: Decimal

    @property
    def closing_balance(self) -> Decimal:
        return self.lines[-1].balance if self.lines else ZERO


@dataclass(frozen=True)
class CounterpartySummary:
    """Cost versus paid rollup for one customer or company."""

    name: str
    total_items: int
    total_cost: Decimal
    total_paid: Decimal
    earliest_date: date
    brands: Tuple[str, ...] = ()

    @property
    def due(self) -> Decimal:
        return self.total_cost - self.total_paid


@dataclass(frozen=True)
class BrandSummaryRow:
    brand: str
    size: str
    total_items: int
    total_cost: Decimal
    total_paid: Decimal
    total_return: Decimal
    due: Decimal
    dates: Tuple[date, ...]


@dataclass(frozen=True)
class CustomerSaleRow:
    """Sales of one brand and size to a single customer."""

    brand: str
    size: str
    total_items: int
    total_cost: Decimal
    total_paid: Decimal
    due: Decimal
    dates: Tuple[date, ...]

    @property
    def earliest_date(self) -> date:
        return self.dates[0] if self.dates else EPOCH_DATE


@dataclass(frozen=True)
class PendingDueRow:
    name: str
    phone: str
    total_cost: Decimal
    total_paid: Decimal
    due: Decimal
    earliest_date: date


@dataclass(frozen=True)
class BrandProfitRow:
    brand: str
    sold_qty: int
    revenue: Decimal
    cost: Decimal
    returns: Decimal
    profit: Decimal
    margin: Decimal


@dataclass(frozen=True)
class SkuProfitRow:
    brand: str
    model: str
    size: str
    units_sold: int
    profit: Decimal


@dataclass(frozen=True)
class ProfitLossReport:
    """Headline figures, per-brand breakdown and best selling lines."""

    total_purchase_cost: Decimal
    total_sales_revenue: Decimal
    total_return_amount: Decimal
    net_sales: Decimal
    gross_profit: Decimal
    profit_margin: Decimal
    brands: Tuple[BrandProfitRow, ...]
    top_skus: Tuple[SkuProfitRow, ...]
    total_returned_quantity: int
    most_returned_brand: str
    total_bought: int
    total_sold: int

    @property
    def in_stock(self) -> int:
        return self.total_bought - self.total_sold + self.total_returned_quantity

    @property
    def stock_turnover_rate(self) -> Decimal:
        """Share of the bought tyres that were sold, in percent."""
        return rate_percent(self.total_sold, self.total_bought)

    @property
    def return_rate(self) -> Decimal:
        return rate_percent(self.total_returned_quantity, self.total_sold)

    @property
    def avg_profit_per_tyre(self) -> Decimal:
        if not self.total_sold:
            return ZERO
        return (self.gross_profit / self.total_sold).quantize(CENTS)

    @property
    def best_brand(self) -> str:
        """Brand with the highest margin; ``"N/A"`` unless some margin is at least zero.

        On equal margins the brand listed last wins.
        """
        best, best_margin = NOT_AVAILABLE, ZERO
        for row in self.brands:
            if row.margin >= best_margin:
                best, best_margin = row.brand, row.margin
        return best


@dataclass(frozen=True)
class StockDrift:
    """A key whose stored store/shop balance disagrees with the event history."""

    company: str
    brand: str
    size: str
    model: str
    materialised: int
    derived: int

    @property
    def difference(self) -> int:
        return self.materialised - self.derived


def normalize_name(value: str) -> str:
    return value.strip().lower()


def format_number(value: Decimal) -> str:
    """Render an amount without a trailing ``.0`` for whole numbers."""

    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def margin_percent(profit: Decimal, cost: Decimal) -> Decimal:
    """``profit / cost * 100`` rounded to cents; zero when there is no cost."""

    return rate_percent(profit, cost)


def rate_percent(part, whole) -> Decimal:
    if not whole:
        return ZERO
    return (Decimal(part) / Decimal(whole) * HUNDRED).quantize(CENTS)


def filter_by_date(
    rows: Iterable[Row],
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    on_date: Optional[date] = None,
) -> List[Row]:
    """Keep rows whose ``date`` lies inside the inclusive window.

    Either bound may be omitted. ``on_date`` restricts the result to a single
    calendar day and is applied after the window.
    """

    selected = []
    for row in rows:
        when = row.date
        if start is not None and when < start:
            continue
        if end is not None and when > end:
            continue
        if on_date is not None and when != on_date:
            continue
        selected.append(row)
    return selected


def search_rows(rows: Iterable[Row], query: Optional[str], fields: Sequence[str]) -> List[Row]:
    """Case-insensitive substring filter across the named attributes."""

    rows = list(rows)
    needle = (query or "").strip().lower()
    if not needle:
        return rows
    return [
        row
        for row in rows
        if any(needle in _display(getattr(row, name, "")).lower() for name in fields)
    ]


def _display(value: object) -> str:
    if isinstance(value, Decimal):
        return format_number(value)
    if value is None:
        return ""
    return str(value)


def stock_key(company: str, brand: str, size: str, model: str) -> StockKey:
    return tuple(normalize_name(part) or NOT_AVAILABLE for part in (company, brand, size, model))


def _line_description(size: str, brand: str, quantity: int, price: Decimal) -> str:
    return f"{size or NOT_AVAILABLE}_{brand or UNKNOWN_DESCRIPTION}_Qty_{quantity}_Rate_{format_number(price)}"


def summarize_stock(
    purchases: Iterable[PurchaseRow],
    sales: Iterable[SaleRow],
    returns: Iterable[ReturnRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    on_date: Optional[date] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
) -> List[StockSummaryRow]:
    """Fold purchases, sales and returns into per-key stock rows.

    Purchases are folded first and seed ``bought``/``store``/``shop``; sales
    add to ``sold``; returns add to ``returned`` and take the same quantity
    back off ``sold`` (never below zero). Rows come back newest first by the
    latest contributing date. ``brand`` and ``search`` are applied last.

    Args:
        purchases: Purchase batches.
        sales: Sale lines.
        returns: Return lines.
        start: Inclusive lower date bound.
        end: Inclusive upper date bound.
        on_date: Restrict every input to a single day.
        brand: Case-insensitive exact brand filter.
        search: Free text matched against company, brand, size and model.

    Returns:
        list[StockSummaryRow]: One row per key.
    """

    purchases = filter_by_date(purchases, start, end, on_date=on_date)
    sales = filter_by_date(sales, start, end, on_date=on_date)
    returns = filter_by_date(returns, start, end, on_date=on_date)

    accumulators: Dict[StockKey, dict] = {}

    def entry_for(row) -> dict:
        key = stock_key(row.company, row.brand, row.size, row.model)
        entry = accumulators.get(key)
        if entry is None:
            entry = {
                "company": row.company or NOT_AVAILABLE,
                "brand": row.brand or NOT_AVAILABLE,
                "size": row.size or NOT_AVAILABLE,
                "model": row.model or NOT_AVAILABLE,
                "bought": 0,
                "sold": 0,
                "returned": 0,
                "store": 0,
                "shop": 0,
                "latest_date": row.date,
            }
            accumulators[key] = entry
        entry["latest_date"] = max(entry["latest_date"], row.date)
        return entry

    for purchase in purchases:
        entry = entry_for(purchase)
        entry["bought"] += purchase.quantity
        entry["store"] += purchase.store
        entry["shop"] += purchase.shop

    for sale in sales:
        entry_for(sale)["sold"] += sale.quantity

    for returned in returns:
        entry = entry_for(returned)
        entry["returned"] += returned.return_quantity
        entry["sold"] = max(entry["sold"] - returned.return_quantity, 0)

    summary = sorted(
        (StockSummaryRow(**entry) for entry in accumulators.values()),
        key=lambda row: row.latest_date,
        reverse=True,
    )
    if brand:
        wanted = normalize_name(brand)
        summary = [row for row in summary if normalize_name(row.brand) == wanted]
    summary = search_rows(summary, search, ("company", "brand", "size", "model"))
    log.debug("Stock summary produced %d rows", len(summary))
    return summary


def _debit_description(
    entry: LedgerEntryRow,
    sales_by_transaction: Dict[str, List[SaleRow]],
    purchases_by_invoice: Dict[str, PurchaseRow],
) -> str:
    if entry.narration.startswith(SALE_NARRATION_PREFIX):
        transaction_id = entry.narration[len(SALE_NARRATION_PREFIX):]
        lines = sales_by_transaction.get(transaction_id)
        if not lines:
            log.warning("Ledger entry '%s' references unknown sale '%s'", entry.record_id, transaction_id)
            return SALE_NOT_FOUND
        return ", ".join(
            _line_description(sale.size, sale.brand, sale.quantity, sale.price) for sale in lines
        )

    if entry.invoice_number.startswith(PURCHASE_INVOICE_PREFIX):
        purchase = purchases_by_invoice.get(entry.invoice_number)
        if purchase is None:
            log.warning(
                "Ledger entry '%s' references unknown purchase invoice '%s'",
                entry.record_id,
                entry.invoice_number,
            )
            return PURCHASE_NOT_FOUND
        return _line_description(purchase.size, purchase.brand, purchase.quantity, purchase.price)

    return entry.description or entry.narration or MANUAL_DEBIT


def _credit_description(entry: LedgerEntryRow) -> str:
    if entry.payment_method == PaymentMethod.BANK.value:
        return f"Payment via {entry.bank_name or NOT_AVAILABLE}"
    if entry.payment_method == PaymentMethod.CASH.value:
        return CASH_PAYMENT
    return entry.narration or entry.description or CASH_PAYMENT


def build_ledger_statement(
    entries: Iterable[LedgerEntryRow],
    sales: Iterable[SaleRow] = (),
    purchases: Iterable[PurchaseRow] = (),
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> LedgerStatement:
    """Produce a running-balance statement for one counterparty's entries.

    Entries are ordered by ``created_at``; ties keep their input order because
    the sort is stable. Each line carries the balance after that entry, so the
    final balance always equals total debit minus total credit.

    Debit descriptions are rebuilt from the sale lines (``Sale_<id>``
    narrations) or the purchase (``INV`` invoices) they point at. A dangling
    reference degrades to a "(Details Not Found)" text and is logged.
    """

    sales_by_transaction: Dict[str, List[SaleRow]] = {}
    for sale in sales:
        sales_by_transaction.setdefault(sale.transaction_id, []).append(sale)
    purchases_by_invoice: Dict[str, PurchaseRow] = {}
    for purchase in purchases:
        purchases_by_invoice.setdefault(purchase.invoice_number, purchase)

    ordered = sorted(filter_by_date(entries, start, end), key=lambda entry: entry.created_at)

    balance = ZERO
    total_debit = ZERO
    total_credit = ZERO
    lines = []
    for index, entry in enumerate(ordered, start=1):
        balance += entry.debit - entry.credit
        total_debit += entry.debit
        total_credit += entry.credit
        if entry.debit > 0:
            description = _debit_description(entry, sales_by_transaction, purchases_by_invoice)
        elif entry.credit > 0:
            description = _credit_description(entry)
        else:
            description = entry.description or entry.narration or UNKNOWN_DESCRIPTION
        lines.append(
            LedgerLine(
                index=index,
                date=entry.date,
                description=description,
                invoice=entry.invoice_number,
                debit=entry.debit,
                credit=entry.credit,
                balance=balance,
            )
        )

    return LedgerStatement(lines=tuple(lines), total_debit=total_debit, total_credit=total_credit)


def sale_line_total(sale: SaleRow) -> Decimal:
    return (sale.price - sale.discount) * sale.quantity


def purchase_cost(purchase: PurchaseRow) -> Decimal:
    return purchase.total_price or purchase.price * purchase.quantity


def summarize_customers(
    sales: Iterable[SaleRow],
    details: Iterable[DetailsRow],
) -> List[CounterpartySummary]:
    """Roll sales up per customer; paid amounts come from the details snapshots.

    Customers that only appear in the snapshots (a payment with no sales) are
    kept with zero cost.
    """

    rollup: Dict[str, dict] = {}

    def bucket(name: str, when: date) -> dict:
        entry = rollup.get(name)
        if entry is None:
            entry = {"items": 0, "cost": ZERO, "paid": ZERO, "earliest": when, "brands": []}
            rollup[name] = entry
        entry["earliest"] = min(entry["earliest"], when)
        return entry

    for sale in sales:
        name = normalize_name(sale.customer_name)
        if not name:
            continue
        entry = bucket(name, sale.date)
        entry["items"] += sale.quantity
        entry["cost"] += sale_line_total(sale)
        brand = sale.brand or UNKNOWN_DESCRIPTION
        if brand not in entry["brands"]:
            entry["brands"].append(brand)

    for snapshot in details:
        name = normalize_name(snapshot.counterparty_name)
        if not name:
            continue
        entry = rollup.get(name) or bucket(name, snapshot.date)
        entry["paid"] += snapshot.total_paid

    return [
        CounterpartySummary(
            name=name,
            total_items=entry["items"],
            total_cost=entry["cost"],
            total_paid=entry["paid"],
            earliest_date=entry["earliest"],
            brands=tuple(entry["brands"]),
        )
        for name, entry in rollup.items()
    ]


def summarize_companies(
    purchases: Iterable[PurchaseRow],
    ledger_entries: Iterable[LedgerEntryRow],
) -> List[CounterpartySummary]:
    """Roll purchases up per supplier; paid is the sum of its ledger credits."""

    rollup: Dict[str, dict] = {}
    for purchase in purchases:
        name = normalize_name(purchase.company)
        if not name:
            continue
        entry = rollup.setdefault(
            name, {"items": 0, "cost": ZERO, "earliest": purchase.date, "brands": []}
        )
        entry["items"] += purchase.quantity
        entry["cost"] += purchase_cost(purchase)
        entry["earliest"] = min(entry["earliest"], purchase.date)
        if purchase.brand and purchase.brand not in entry["brands"]:
            entry["brands"].append(purchase.brand)

    paid: Dict[str, Decimal] = {}
    for ledger_entry in ledger_entries:
        name = normalize_name(ledger_entry.counterparty_name)
        paid[name] = paid.get(name, ZERO) + ledger_entry.credit

    return [
        CounterpartySummary(
            name=name,
            total_items=entry["items"],
            total_cost=entry["cost"],
            total_paid=paid.get(name, ZERO),
            earliest_date=entry["earliest"],
            brands=tuple(entry["brands"]),
        )
        for name, entry in rollup.items()
    ]


def summarize_company_brands(
    company: str,
    purchases: Iterable[PurchaseRow],
    brand_details: Iterable[BrandDetailRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[BrandSummaryRow]:
    """Per brand and size totals for one supplier, newest first.

    Paid and returned amounts are read from ``brandDetails``; the due is
    floored at zero.
    """

    wanted = normalize_name(company)
    grouped: Dict[Tuple[str, str], dict] = {}
    for purchase in filter_by_date(purchases, start, end):
        if normalize_name(purchase.company) != wanted:
            continue
        size = purchase.size or NOT_AVAILABLE
        entry = grouped.setdefault(
            (purchase.brand, size), {"items": 0, "cost": ZERO, "dates": set()}
        )
        entry["items"] += purchase.quantity
        entry["cost"] += purchase_cost(purchase)
        entry["dates"].add(purchase.date)

    details = {
        (normalize_name(row.brand), normalize_name(row.size)): row
        for row in brand_details
        if normalize_name(row.company_name) == wanted
    }

    rows = []
    for (brand, size), entry in grouped.items():
        detail = details.get((normalize_name(brand), normalize_name(size)))
        total_paid = detail.total_paid if detail else ZERO
        total_return = detail.total_return if detail else ZERO
        rows.append(
            BrandSummaryRow(
                brand=brand,
                size=size,
                total_items=entry["items"],
                total_cost=entry["cost"],
                total_paid=total_paid,
                total_return=total_return,
                due=max(entry["cost"] - total_paid, ZERO),
                dates=tuple(sorted(entry["dates"], reverse=True)),
            )
        )
    rows.sort(key=lambda row: row.dates[0] if row.dates else EPOCH_DATE, reverse=True)
    return rows


def summarize_customer_sales(
    customer: str,
    sales: Iterable[SaleRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[CustomerSaleRow]:
    """Per brand and size totals of the sales made to ``customer``.

    Cost is the discounted line total, due is what the sale left unpaid and
    paid is the difference. Groups keep the order in which they were first
    sold.
    """

    wanted = normalize_name(customer)
    grouped: Dict[Tuple[str, str], dict] = {}
    for sale in filter_by_date(sales, start, end):
        if normalize_name(sale.customer_name) != wanted:
            continue
        brand = sale.brand or UNKNOWN_DESCRIPTION
        size = sale.size or NOT_AVAILABLE
        entry = grouped.setdefault((brand, size), {"items": 0, "cost": ZERO, "due": ZERO, "dates": set()})
        entry["items"] += sale.quantity
        entry["cost"] += sale_line_total(sale)
        entry["due"] += sale.due
        entry["dates"].add(sale.date)

    return [
        CustomerSaleRow(
            brand=brand,
            size=size,
            total_items=entry["items"],
            total_cost=entry["cost"],
            total_paid=entry["cost"] - entry["due"],
            due=entry["due"],
            dates=tuple(sorted(entry["dates"])),
        )
        for (brand, size), entry in grouped.items()
    ]


def find_phone(users: Iterable[UserRow], name: str, user_type: Optional[UserType] = None) -> str:
    """Mobile number of the named user, or ``"N/A"`` when it is unknown."""

    wanted = normalize_name(name)
    for user in users:
        if user_type is not None and user.user_type != UserType(user_type).value:
            continue
        if normalize_name(user.name) == wanted and user.mobile:
            return user.mobile
    return NOT_AVAILABLE


def pending_dues(
    summaries: Iterable[CounterpartySummary],
    users: Iterable[UserRow],
    user_type: UserType,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[PendingDueRow]:
    """Counterparties that still owe (or are owed) a strictly positive amount.

    Rows whose paid total covers the cost are dropped. The phone column is
    looked up in ``users``; an unregistered counterparty reads ``"N/A"`` but is
    still listed.
    """

    users = list(users)
    rows = []
    for summary in summaries:
        due = summary.due
        if due <= 0:
            continue
        if start is not None and summary.earliest_date < start:
            continue
        if end is not None and summary.earliest_date > end:
            continue
        phone = find_phone(users, summary.name, user_type)
        if phone == NOT_AVAILABLE:
            log.warning("No %s record for '%s'; phone unavailable", UserType(user_type).value, summary.name)
        rows.append(
            PendingDueRow(
                name=summary.name,
                phone=phone,
                total_cost=summary.total_cost,
                total_paid=summary.total_paid,
                due=due,
                earliest_date=summary.earliest_date,
            )
        )
    return search_rows(rows, search, ("name", "phone", "total_cost", "total_paid", "due"))


def _sku_matches(row, brand: str, model: str, size: str) -> bool:
    return (
        normalize_name(row.brand) == brand
        and normalize_name(row.model) == model
        and normalize_name(row.size) == size
    )


def profit_and_loss(
    purchases: Iterable[PurchaseRow],
    sales: Iterable[SaleRow],
    returns: Iterable[ReturnRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    top_n: int = DEFAULT_TOP_SKU_COUNT,
) -> ProfitLossReport:
    """Compute revenue, cost, returns and margin globally and per brand.

    ``profit_margin`` is ``gross_profit / total_purchase_cost * 100`` and is
    zero when nothing was bought in the window. SKU profit pairs every sale
    line with the first purchase of the same brand, model and size (no FIFO
    costing) and subtracts all matching returns.
    """

    purchases = filter_by_date(purchases, start, end)
    sales = filter_by_date(sales, start, end)
    returns = filter_by_date(returns, start, end)

    total_purchase_cost = sum((row.price * row.quantity for row in purchases), ZERO)
    total_sales_revenue = sum((row.price * row.quantity for row in sales), ZERO)
    total_return_amount = sum((row.return_price * row.return_quantity for row in returns), ZERO)
    net_sales = total_sales_revenue - total_return_amount
    gross_profit = net_sales - total_purchase_cost

    breakdown: Dict[str, dict] = {}

    def brand_bucket(brand: str) -> dict:
        return breakdown.setdefault(
            brand, {"sold_qty": 0, "revenue": ZERO, "cost": ZERO, "returns": ZERO}
        )

    for row in purchases:
        brand_bucket(row.brand)["cost"] += row.price * row.quantity
    for row in sales:
        bucket = brand_bucket(row.brand)
        bucket["sold_qty"] += row.quantity
        bucket["revenue"] += row.price * row.quantity
    for row in returns:
        brand_bucket(row.brand)["returns"] += row.return_price * row.return_quantity

    brands = []
    for brand, data in breakdown.items():
        profit = data["revenue"] - data["returns"] - data["cost"]
        brands.append(
            BrandProfitRow(brand=brand, profit=profit, margin=margin_percent(profit, data["cost"]), **data)
        )

    sku_rows = []
    for sale in sales:
        key = (normalize_name(sale.brand), normalize_name(sale.model), normalize_name(sale.size))
        bought = next((row for row in purchases if _sku_matches(row, *key)), None)
        cost = bought.price * sale.quantity if bought is not None else ZERO
        returned = sum(
            (row.return_price * row.return_quantity for row in returns if _sku_matches(row, *key)),
            ZERO,
        )
        sku_rows.append(
            SkuProfitRow(
                brand=sale.brand,
                model=sale.model,
                size=sale.size,
                units_sold=sale.quantity,
                profit=sale.price * sale.quantity - returned - cost,
            )
        )
    sku_rows.sort(key=lambda row: row.profit, reverse=True)

    returned_by_brand: Dict[str, int] = {}
    for row in returns:
        returned_by_brand[row.brand] = returned_by_brand.get(row.brand, 0) + row.return_quantity
    most_returned_brand = NOT_AVAILABLE
    if returned_by_brand:
        most_returned_brand = max(returned_by_brand, key=returned_by_brand.__getitem__)

    report = ProfitLossReport(
        total_purchase_cost=total_purchase_cost,
        total_sales_revenue=total_sales_revenue,
        total_return_amount=total_return_amount,
        net_sales=net_sales,
        gross_profit=gross_profit,
        profit_margin=margin_percent(gross_profit, total_purchase_cost),
        brands=tuple(brands),
        top_skus=tuple(sku_rows[:top_n]),
        total_returned_quantity=sum(returned_by_brand.values()),
        most_returned_brand=most_returned_brand,
        total_bought=sum(row.quantity for row in purchases),
        total_sold=sum(row.quantity for row in sales),
    )
    log.debug(
        "Profit/loss: revenue=%s cost=%s returns=%s profit=%s",
        total_sales_revenue,
        total_purchase_cost,
        total_return_amount,
        gross_profit,
    )
    return report


def find_stock_drift(
    purchases: Iterable[PurchaseRow],
    sales: Iterable[SaleRow],
    returns: Iterable[ReturnRow],
) -> List[StockDrift]:
    """Compare stored ``store + shop`` with ``bought - sold + returned`` per key.

    Sell, return and transfer workflows maintain the stored balances directly
    while the event rows are only appended, so the two views can disagree
    after manual edits or a partially applied workflow.
    """

    totals: Dict[StockKey, dict] = {}

    def entry_for(row) -> dict:
        key = stock_key(row.company, row.brand, row.size, row.model)
        return totals.setdefault(
            key,
            {
                "label": (row.company, row.brand, row.size, row.model),
                "materialised": 0,
                "derived": 0,
            },
        )

    for purchase in purchases:
        entry = entry_for(purchase)
        entry["materialised"] += purchase.store + purchase.shop
        entry["derived"] += purchase.quantity
    for sale in sales:
        entry_for(sale)["derived"] -= sale.quantity
    for returned in returns:
        entry_for(returned)["derived"] += returned.return_quantity

    drift = []
    for entry in totals.values():
        if entry["materialised"] == entry["derived"]:
            continue
        company, brand, size, model = (part or NOT_AVAILABLE for part in entry["label"])
        drift.append(
            StockDrift(
                company=company,
                brand=brand,
                size=size,
                model=model,
                materialised=entry["materialised"],
                derived=entry["derived"],
            )
        )
    if drift:
        log.warning("Stock projection drift detected on %d keys", len(drift))
    return drift
