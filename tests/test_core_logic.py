"""Unit tests verifying the business logic layer.

Context and cache tests run against a mocked workbook; workflow tests run
against a real master workbook created in a temp folder.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from tyre_erp import constants, core_logic, data_manager
from tyre_erp.constants import CollectionName, PaymentMethod, UserType

TRADE_DATE = date(2024, 3, 1)
MOMENT = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _purchase_command(**overrides) -> core_logic.PurchaseCommand:
    values = dict(
        company="Ace Tyres",
        brand="Michelin",
        model="Primacy",
        size="205/55R16",
        price=Decimal("100"),
        quantity=10,
        store=5,
        shop=5,
        date=TRADE_DATE,
    )
    values.update(overrides)
    return core_logic.PurchaseCommand(**values)


def _sale_line(**overrides) -> core_logic.SaleLine:
    values = dict(
        company="ace tyres",
        brand="michelin",
        model="primacy",
        size="205/55r16",
        price=Decimal("150"),
        quantity=1,
    )
    values.update(overrides)
    return core_logic.SaleLine(**values)


def _sell(context, *lines, customer="Ali", bank="", timestamp=MOMENT) -> core_logic.SaleResult:
    return core_logic.record_sale(
        context,
        core_logic.SaleCommand(customer_name=customer, lines=tuple(lines), bank=bank, date=TRADE_DATE),
        timestamp=timestamp,
    )


def _shop_and_store(context) -> list[tuple[int, int]]:
    return [(row.store, row.shop) for row in core_logic.snapshot(context, CollectionName.PURCHASES)]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        shop_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=config_path))
    monkeypatch.setattr(data_manager, "read_config", Mock(return_value=parser))
    parse_settings = Mock(return_value=parsed_settings)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    open_workbook = Mock(return_value=workbook)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    mismatched = replace(context, settings=replace(context.settings, schema_version="0.9.0"))

    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(mismatched)
    core_logic.ensure_schema_version(context)


def test_persist_context_writes_to_disk(monkeypatch, context):
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    core_logic.persist_context(context)

    save_workbook.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_refresh_context_reloads_from_disk(monkeypatch, settings):
    stale = core_logic.RuntimeContext(settings=settings, workbook=Mock(name="old"))
    fresh_workbook = Mock(name="new")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh_workbook))

    refreshed = core_logic.refresh_context(stale)

    assert refreshed.workbook is fresh_workbook
    assert refreshed.settings is settings
    assert refreshed._cache == {}


def test_snapshot_reuses_cache_between_calls(monkeypatch, context):
    """A collection is read from the workbook once until a write happens."""

    rows = [data_manager.UserRow("U1", "ali", "0300", "street", "Customer")]
    iter_records = Mock(return_value=iter(rows))
    monkeypatch.setattr(data_manager, "iter_records", iter_records)

    assert core_logic.snapshot(context, CollectionName.USERS) == rows
    assert core_logic.snapshot(context, CollectionName.USERS) == rows
    assert iter_records.call_count == 1


def test_write_invalidates_cache(monkeypatch, context, set_fixed_datetime):
    set_fixed_datetime(MOMENT)
    reads = []

    def fake_iter_records(workbook, collection):
        reads.append(collection)
        return iter(())

    monkeypatch.setattr(data_manager, "iter_records", fake_iter_records)
    monkeypatch.setattr(data_manager, "create_record", Mock(return_value="U1"))

    core_logic.snapshot(context, CollectionName.USERS)
    with pytest.raises(core_logic.MissingReferenceError):
        # The mocked store never yields the created row back.
        core_logic.add_user(context, core_logic.UserCommand("Ali", "0300", "Street", UserType.CUSTOMER))

    assert reads.count(CollectionName.USERS) == 2


def test_get_user_missing_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_records", Mock(return_value=iter(())))
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_user(context, "nope")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def test_require_positive_quantity_rejects_nonpositive():
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_positive_quantity(0)
    core_logic.require_positive_quantity(1)


def test_require_nonnegative_money_accepts_zero():
    core_logic.require_nonnegative_money(Decimal("0"))
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_nonnegative_money(Decimal("-0.01"))


def test_require_fields_names_every_blank_field():
    with pytest.raises(core_logic.ValidationError) as excinfo:
        core_logic.require_fields(name=" ", mobile="0300", date=None)
    assert "name" in str(excinfo.value)
    assert "date" in str(excinfo.value)
    assert "mobile" not in str(excinfo.value)


def test_validation_error_is_a_business_rule_violation():
    assert issubclass(core_logic.ValidationError, core_logic.BusinessRuleViolation)
    assert issubclass(core_logic.ValidationError, ValueError)


def test_normalize_company_name_strips_all_whitespace():
    assert core_logic.normalize_company_name(" Ace  Tyres\t Ltd ") == "acetyresltd"


def test_generate_invoice_number_format(monkeypatch):
    monkeypatch.setattr(core_logic.random, "randint", lambda low, high: 42)

    invoice = core_logic.generate_invoice_number("INV", when=datetime(2024, 3, 1, tzinfo=UTC))

    assert invoice == "INV1709251200000-42"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_add_user_normalizes_and_opens_snapshot(runtime_context, set_fixed_datetime):
    set_fixed_datetime(MOMENT)

    user = core_logic.add_user(
        runtime_context,
        core_logic.UserCommand(" Ace Tyres ", "0300-1", "Main Road", UserType.COMPANY),
    )

    assert (user.name, user.mobile, user.address, user.user_type) == ("acetyres", "0300-1", "main road", "Company")
    (details,) = core_logic.snapshot(runtime_context, CollectionName.COMPANY_DETAILS)
    assert details.counterparty_name == "acetyres"
    assert (details.total_paid, details.due, details.date) == (Decimal("0"), Decimal("0"), MOMENT.date())
    assert core_logic.snapshot(runtime_context, CollectionName.CUSTOMER_DETAILS) == []


def test_add_user_rejects_blank_fields(runtime_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_user(runtime_context, core_logic.UserCommand("Ali", "", "Street", UserType.CUSTOMER))
    assert core_logic.snapshot(runtime_context, CollectionName.USERS) == []


def test_update_and_delete_user(runtime_context):
    user = core_logic.add_user(runtime_context, core_logic.UserCommand("Ali", "0300", "Street", UserType.CUSTOMER))

    updated = core_logic.update_user(
        runtime_context,
        user.record_id,
        core_logic.UserCommand("Ali Khan", "0311", "Street 2", UserType.CUSTOMER),
    )
    assert (updated.name, updated.mobile) == ("ali khan", "0311")
    assert core_logic.find_phone(runtime_context, "ALI KHAN") == "0311"

    core_logic.delete_user(runtime_context, user.record_id)
    assert core_logic.list_users(runtime_context) == []
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_user(runtime_context, user.record_id)


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def test_record_purchase_writes_purchase_and_ledger_debit(runtime_context, set_fixed_datetime):
    set_fixed_datetime(MOMENT)

    purchase = core_logic.record_purchase(runtime_context, _purchase_command())

    assert purchase.company == "acetyres"
    assert purchase.total_price == Decimal("1000")
    assert purchase.invoice_number.startswith("INV")
    assert purchase.created_at == MOMENT
    (entry,) = core_logic.snapshot(runtime_context, CollectionName.COMPANY_LEDGER)
    assert entry.invoice_number == purchase.invoice_number
    assert entry.narration == "205/55R16_Michelin_Qty_10_Rate_100"
    assert (entry.debit, entry.credit) == (Decimal("1000"), Decimal("0"))


@pytest.mark.parametrize(
    "overrides",
    [
        {"store": 4, "shop": 5},
        {"store": -1, "shop": 11},
        {"price": Decimal("0")},
        {"quantity": 0, "store": 0, "shop": 0},
        {"brand": " "},
        {"date": None},
    ],
)
def test_record_purchase_rejects_invalid_commands(runtime_context, overrides):
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_purchase(runtime_context, _purchase_command(**overrides))
    assert core_logic.snapshot(runtime_context, CollectionName.PURCHASES) == []
    assert core_logic.snapshot(runtime_context, CollectionName.COMPANY_LEDGER) == []


def test_update_purchase_rewrites_ledger_entry(runtime_context):
    purchase = core_logic.record_purchase(runtime_context, _purchase_command(), timestamp=MOMENT)
    (original_entry,) = core_logic.snapshot(runtime_context, CollectionName.COMPANY_LEDGER)

    updated = core_logic.update_purchase(
        runtime_context,
        purchase.record_id,
        _purchase_command(price=Decimal("90"), quantity=12, store=6, shop=6),
    )

    assert updated.total_price == Decimal("1080")
    assert updated.invoice_number == purchase.invoice_number
    (entry,) = core_logic.snapshot(runtime_context, CollectionName.COMPANY_LEDGER)
    assert entry.debit == Decimal("1080")
    assert entry.narration == "205/55R16_Michelin_Qty_12_Rate_90"
    assert entry.created_at == original_entry.created_at


def test_delete_purchase_cascades_to_ledger(runtime_context):
    first = core_logic.record_purchase(runtime_context, _purchase_command(), timestamp=MOMENT)
    core_logic.record_purchase(
        runtime_context,
        _purchase_command(brand="Pirelli"),
        timestamp=datetime(2024, 3, 1, 13, 0, tzinfo=UTC),
    )

    removed = core_logic.delete_purchase(runtime_context, first.record_id)

    assert removed == 1
    assert [row.brand for row in core_logic.snapshot(runtime_context, CollectionName.PURCHASES)] == ["Pirelli"]
    assert len(core_logic.snapshot(runtime_context, CollectionName.COMPANY_LEDGER)) == 1
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_purchase(runtime_context, first.record_id)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_record_sale_rejects_more_than_shop_balance(stocked_context):
    """Validation happens before any write."""

    with pytest.raises(core_logic.ValidationError):
        _sell(stocked_context, _sale_line(quantity=6))

    assert _shop_and_store(stocked_context) == [(5, 5)]
    assert core_logic.snapshot(stocked_context, CollectionName.SALES) == []
    assert core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_LEDGER) == []


def test_record_sale_sums_demand_across_lines(stocked_context):
    with pytest.raises(core_logic.ValidationError):
        _sell(stocked_context, _sale_line(quantity=3), _sale_line(quantity=3))


def test_record_sale_drains_shop_and_books_ledger(stocked_context):
    result = _sell(stocked_context, _sale_line(quantity=5))

    assert _shop_and_store(stocked_context) == [(5, 0)]
    (sale,) = result.sales
    assert sale.transaction_id == result.transaction_id
    assert sale.customer_name == "ali"
    assert sale.company == "acetyres"
    entries = core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_LEDGER)
    assert [entry.narration for entry in entries] == [
        f"Sale_{result.transaction_id}",
        f"Payment_{result.transaction_id}",
    ]
    assert (entries[0].debit, entries[1].credit) == (Decimal("750"), Decimal("750"))
    assert entries[1].payment_method == PaymentMethod.CASH.value


def test_record_sale_drains_purchases_in_order(stocked_context):
    core_logic.record_purchase(stocked_context, _purchase_command(quantity=4, store=0, shop=4), timestamp=MOMENT)

    _sell(stocked_context, _sale_line(quantity=7))

    assert _shop_and_store(stocked_context) == [(5, 0), (0, 2)]


def test_record_sale_with_due_and_discount(stocked_context):
    result = _sell(
        stocked_context,
        _sale_line(quantity=2, discount=Decimal("10"), due=Decimal("40")),
        bank="HBL",
    )

    assert result.total_debit == Decimal("280")
    assert result.total_due == Decimal("40")
    assert result.total_credit == Decimal("240")
    assert result.sales[0].payable_amount == Decimal("240")
    (details,) = core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_DETAILS)
    assert (details.total_paid, details.due) == (Decimal("240"), Decimal("40"))
    credit = core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_LEDGER)[1]
    assert (credit.payment_method, credit.bank_name, credit.description) == ("Bank", "HBL", "Payment via HBL")


def test_record_sale_fully_on_credit_skips_payment_entry(stocked_context):
    result = _sell(stocked_context, _sale_line(quantity=1, due=Decimal("150")))

    assert result.total_credit == Decimal("0")
    entries = core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_LEDGER)
    assert [entry.debit for entry in entries] == [Decimal("150")]


def test_record_sale_rejects_discount_above_price(stocked_context):
    with pytest.raises(core_logic.ValidationError, match="Discount"):
        _sell(stocked_context, _sale_line(discount=Decimal("400")))

    assert _shop_and_store(stocked_context) == [(5, 5)]
    assert core_logic.snapshot(stocked_context, CollectionName.SALES) == []


def test_record_sale_rejects_due_above_line_total(stocked_context):
    _sell(stocked_context, _sale_line(quantity=1))

    with pytest.raises(core_logic.ValidationError, match="Due"):
        _sell(stocked_context, _sale_line(quantity=2, discount=Decimal("10"), due=Decimal("281")))

    assert _shop_and_store(stocked_context) == [(5, 4)]
    assert [row.total_cost for row in core_logic.counterparty_summaries(stocked_context, UserType.CUSTOMER)] == [
        Decimal("150")
    ]


def test_stale_shop_balance_surfaces_write_failure(stocked_context, monkeypatch):
    """A concurrent change between read and write aborts with the applied steps."""

    original_update = data_manager.update_record

    def racing_update(workbook, collection, record_id, *, field_values, expected=None):
        original_update(workbook, collection, record_id, field_values={"Shop": 1})
        return original_update(workbook, collection, record_id, field_values=field_values, expected=expected)

    monkeypatch.setattr(data_manager, "update_record", racing_update)

    with pytest.raises(core_logic.WriteFailure) as excinfo:
        _sell(stocked_context, _sale_line(quantity=2))

    assert excinfo.value.workflow == "record_sale"
    assert excinfo.value.applied == ()
    assert core_logic.snapshot(stocked_context, CollectionName.SALES) == []


def test_subscribers_receive_snapshots_after_writes(stocked_context):
    received = []
    unsubscribe = core_logic.subscribe(
        stocked_context,
        CollectionName.PURCHASES,
        lambda rows: received.append([row.shop for row in rows]),
    )

    _sell(stocked_context, _sale_line(quantity=2))
    unsubscribe()
    _sell(stocked_context, _sale_line(quantity=1))
    unsubscribe()

    assert received == [[5], [3]]


def test_failing_subscriber_does_not_abort_workflow(stocked_context):
    def explode(rows):
        raise RuntimeError("boom")

    core_logic.subscribe(stocked_context, CollectionName.SALES, explode)

    result = _sell(stocked_context, _sale_line(quantity=1))

    assert len(result.sales) == 1


def test_failing_subscriber_predicate_does_not_abort_workflow(stocked_context):
    calls = []

    def picky(row):
        if calls:
            raise ValueError("bad row")
        return True

    core_logic.subscribe(stocked_context, CollectionName.SALES, calls.append, predicate=picky)

    result = _sell(stocked_context, _sale_line(quantity=1))

    assert len(result.sales) == 1
    assert calls == [[]]
    assert len(core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_LEDGER)) == 2


# ---------------------------------------------------------------------------
# Returns and transfers
# ---------------------------------------------------------------------------


def _return_line(**overrides) -> core_logic.ReturnLine:
    values = dict(
        company="Ace Tyres",
        brand="Michelin",
        model="Primacy",
        size="205/55R16",
        price=Decimal("150"),
        quantity=3,
        return_quantity=2,
        return_price=Decimal("140"),
    )
    values.update(overrides)
    return core_logic.ReturnLine(**values)


def test_record_return_restocks_first_matching_purchase(stocked_context):
    _sell(stocked_context, _sale_line(quantity=3))

    result = core_logic.record_return(
        stocked_context,
        core_logic.ReturnCommand(customer="Ali", lines=(_return_line(),), date=TRADE_DATE),
    )

    assert _shop_and_store(stocked_context) == [(5, 4)]
    (returned,) = result.returns
    assert returned.return_total_price == Decimal("280")
    assert returned.customer == "ali"
    assert result.unmatched == ()
    assert core_logic.stock_drift(stocked_context) == []


def test_record_return_keeps_unmatched_line(stocked_context):
    line = _return_line(brand="Pirelli")

    result = core_logic.record_return(
        stocked_context,
        core_logic.ReturnCommand(customer="Ali", lines=(line,), date=TRADE_DATE),
    )

    assert result.unmatched == (line,)
    assert len(core_logic.snapshot(stocked_context, CollectionName.RETURNS)) == 1
    assert _shop_and_store(stocked_context) == [(5, 5)]


def test_record_return_rejects_quantity_above_sold(stocked_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_return(
            stocked_context,
            core_logic.ReturnCommand(customer="Ali", lines=(_return_line(return_quantity=4),), date=TRADE_DATE),
        )


def test_record_transfer_moves_store_to_shop(runtime_context):
    core_logic.record_purchase(runtime_context, _purchase_command(quantity=12, store=10, shop=2), timestamp=MOMENT)
    command = core_logic.TransferCommand("Ace Tyres", "Michelin", "Primacy", "205/55R16", 4, date=TRADE_DATE)

    transfer = core_logic.record_transfer(runtime_context, command, timestamp=MOMENT)

    assert _shop_and_store(runtime_context) == [(6, 6)]
    assert (transfer.quantity, transfer.company) == (4, "acetyres")
    assert len(core_logic.snapshot(runtime_context, CollectionName.TRANSFERS)) == 1


def test_record_transfer_rejects_excess_and_unknown_tyres(runtime_context):
    core_logic.record_purchase(runtime_context, _purchase_command(quantity=12, store=10, shop=2), timestamp=MOMENT)

    with pytest.raises(core_logic.ValidationError):
        core_logic.record_transfer(
            runtime_context,
            core_logic.TransferCommand("Ace Tyres", "Michelin", "Primacy", "205/55R16", 11, date=TRADE_DATE),
        )
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_transfer(
            runtime_context,
            core_logic.TransferCommand("Ace Tyres", "Pirelli", "P7", "205/55R16", 1, date=TRADE_DATE),
        )

    assert _shop_and_store(runtime_context) == [(10, 2)]
    assert core_logic.snapshot(runtime_context, CollectionName.TRANSFERS) == []


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def test_record_customer_payment_updates_snapshot(stocked_context, set_fixed_datetime):
    _sell(stocked_context, _sale_line(quantity=2, due=Decimal("100")))
    set_fixed_datetime(datetime(2024, 3, 5, tzinfo=UTC))

    entry = core_logic.record_customer_payment(
        stocked_context,
        core_logic.CustomerPaymentCommand("ALI", Decimal("60"), PaymentMethod.CASH),
    )

    assert (entry.credit, entry.description, entry.date) == (Decimal("60"), "Cash Payment", date(2024, 3, 5))
    (details,) = core_logic.snapshot(stocked_context, CollectionName.CUSTOMER_DETAILS)
    assert (details.total_paid, details.due) == (Decimal("260"), Decimal("40"))
    (due_row,) = core_logic.pending_dues(stocked_context, UserType.CUSTOMER)
    assert due_row.due == Decimal("40")


def test_record_customer_payment_rules(stocked_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.record_customer_payment(
            stocked_context,
            core_logic.CustomerPaymentCommand("Nobody", Decimal("10"), PaymentMethod.CASH),
        )
    _sell(stocked_context, _sale_line(quantity=1))
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_customer_payment(
            stocked_context,
            core_logic.CustomerPaymentCommand("Ali", Decimal("10"), PaymentMethod.BANK),
        )
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_customer_payment(
            stocked_context,
            core_logic.CustomerPaymentCommand("Ali", Decimal("0"), PaymentMethod.CASH),
        )


def test_record_company_payment_recomputes_snapshot(stocked_context):
    entry = core_logic.record_company_payment(
        stocked_context,
        core_logic.CompanyPaymentCommand("ACE tyres", Decimal("400"), "HBL", date=TRADE_DATE),
        timestamp=MOMENT,
    )

    assert entry.invoice_number.startswith("RV")
    assert (entry.narration, entry.payment_method, entry.bank_name) == ("Payment via HBL", "Bank", "HBL")
    (details,) = core_logic.snapshot(stocked_context, CollectionName.COMPANY_DETAILS)
    assert (details.total_paid, details.due) == (Decimal("400"), Decimal("600"))
    statement = core_logic.ledger_statement(stocked_context, UserType.COMPANY, "Ace Tyres")
    assert statement.closing_balance == Decimal("600")


def test_record_company_payment_requires_purchases(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.record_company_payment(
            runtime_context,
            core_logic.CompanyPaymentCommand("Ace Tyres", Decimal("10"), "HBL"),
        )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def test_profit_and_loss_uses_configured_top_sku_count(config_factory):
    bundle = config_factory(top_sku_count=1)
    context = core_logic.load_runtime_context(bundle.config_path)
    core_logic.record_purchase(context, _purchase_command(), timestamp=MOMENT)
    core_logic.record_purchase(context, _purchase_command(brand="Pirelli"), timestamp=MOMENT)
    _sell(context, _sale_line(quantity=1), _sale_line(brand="pirelli", quantity=2))

    report = core_logic.profit_and_loss(context)

    assert len(report.top_skus) == 1
    assert report.top_skus[0].brand == "pirelli"
    assert report.total_sales_revenue == Decimal("450")


def test_counterparty_summaries_for_both_types(stocked_context):
    _sell(stocked_context, _sale_line(quantity=1, due=Decimal("50")))

    (customer,) = core_logic.counterparty_summaries(stocked_context, UserType.CUSTOMER)
    (company,) = core_logic.counterparty_summaries(stocked_context, UserType.COMPANY)

    assert (customer.name, customer.total_cost, customer.total_paid) == ("ali", Decimal("150"), Decimal("100"))
    assert (company.name, company.total_cost, company.total_paid) == ("acetyres", Decimal("1000"), Decimal("0"))


def test_company_brand_summary_without_brand_details(stocked_context):
    (row,) = core_logic.company_brand_summary(stocked_context, "Ace Tyres")

    assert (row.brand, row.total_items, row.due) == ("Michelin", 10, Decimal("1000"))


def test_customer_sale_summary_groups_one_customer(stocked_context):
    _sell(stocked_context, _sale_line(quantity=2, due=Decimal("50")))
    _sell(stocked_context, _sale_line(quantity=1), customer="Sara", timestamp=datetime(2024, 3, 1, 13, 0, tzinfo=UTC))

    (row,) = core_logic.customer_sale_summary(stocked_context, " ALI ")

    assert (row.brand, row.size, row.total_items) == ("michelin", "205/55r16", 2)
    assert (row.total_cost, row.total_paid, row.due) == (Decimal("300"), Decimal("250"), Decimal("50"))
    assert core_logic.customer_sale_summary(stocked_context, "Ali", start=date(2024, 4, 1)) == []


def test_list_transfers_newest_first_within_window(stocked_context):
    tyre = ("Ace Tyres", "Michelin", "Primacy", "205/55R16")
    core_logic.record_transfer(stocked_context, core_logic.TransferCommand(*tyre, 1, date=date(2024, 3, 2)), timestamp=MOMENT)
    core_logic.record_transfer(stocked_context, core_logic.TransferCommand(*tyre, 2, date=date(2024, 3, 4)), timestamp=MOMENT)

    assert [row.quantity for row in core_logic.list_transfers(stocked_context)] == [2, 1]
    assert [row.quantity for row in core_logic.list_transfers(stocked_context, end=date(2024, 3, 3))] == [1]
