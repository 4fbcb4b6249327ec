"""Enumerations and schema shared across the tyre ERP modules.

The data access layer, the business layer and the reports all key off the
collection names and column layouts declared here, so the workbook schema has
a single definition.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum
from typing import Mapping, Sequence


# Bumped whenever COLLECTION_COLUMNS changes shape.
EXPECTED_SCHEMA_VERSION = "1.0.0"

NOT_AVAILABLE = "N/A"
EPOCH_DATE = date(1970, 1, 1)
EPOCH_TIMESTAMP = datetime(1970, 1, 1, tzinfo=UTC)

SALE_NARRATION_PREFIX = "Sale_"
PAYMENT_NARRATION_PREFIX = "Payment_"
PURCHASE_INVOICE_PREFIX = "INV"
COMPANY_RECEIPT_PREFIX = "RV"

SALE_NOT_FOUND = "Sale (Details Not Found)"
PURCHASE_NOT_FOUND = "Purchase (Details Not Found)"
MANUAL_DEBIT = "Manual Debit"
CASH_PAYMENT = "Cash Payment"
UNKNOWN_DESCRIPTION = "Unknown"

DEFAULT_TOP_SKU_COUNT = 3


class UserType(str, Enum):
    """Kinds of counterparty registered in the ``users`` collection."""

    CUSTOMER = "Customer"
    COMPANY = "Company"


class PaymentMethod(str, Enum):
    """How a payment reached the shop."""

    CASH = "Cash"
    BANK = "Bank"


class CollectionName(str, Enum):
    """Worksheet titles used as record collections."""

    USERS = "users"
    PURCHASES = "purchasedTyres"
    SALES = "soldTyres"
    RETURNS = "returnedTyres"
    TRANSFERS = "transferredTyres"
    COMPANY_DETAILS = "companyDetails"
    CUSTOMER_DETAILS = "customerDetails"
    COMPANY_LEDGER = "companyLedgerEntries"
    CUSTOMER_LEDGER = "customerLedgerEntries"
    BRAND_DETAILS = "brandDetails"


_LEDGER_COLUMNS: Sequence[str] = (
    "RecordID",
    "CounterpartyName",
    "Date",
    "Narration",
    "Description",
    "Debit",
    "Credit",
    "InvoiceNumber",
    "PaymentMethod",
    "BankName",
    "CreatedAt",
)

_DETAILS_COLUMNS: Sequence[str] = (
    "RecordID",
    "CounterpartyName",
    "TotalPaid",
    "Due",
    "Date",
)

COLLECTION_COLUMNS: Mapping[CollectionName, Sequence[str]] = {
    CollectionName.USERS: ("RecordID", "Name", "Mobile", "Address", "UserType"),
    CollectionName.PURCHASES: (
        "RecordID",
        "Company",
        "Brand",
        "Model",
        "Size",
        "Price",
        "Quantity",
        "Store",
        "Shop",
        "TotalPrice",
        "Date",
        "InvoiceNumber",
        "CreatedAt",
    ),
    CollectionName.SALES: (
        "RecordID",
        "TransactionID",
        "Company",
        "Brand",
        "Model",
        "Size",
        "Price",
        "Quantity",
        "Discount",
        "Due",
        "CustomerName",
        "Bank",
        "Comment",
        "Date",
        "PayableAmount",
        "CreatedAt",
    ),
    CollectionName.RETURNS: (
        "RecordID",
        "TransactionID",
        "Customer",
        "Company",
        "Brand",
        "Model",
        "Size",
        "Price",
        "Quantity",
        "ReturnQuantity",
        "ReturnPrice",
        "ReturnTotalPrice",
        "Date",
        "Comment",
    ),
    CollectionName.TRANSFERS: (
        "RecordID",
        "Company",
        "Brand",
        "Model",
        "Size",
        "Quantity",
        "Date",
        "CreatedAt",
    ),
    CollectionName.COMPANY_DETAILS: _DETAILS_COLUMNS,
    CollectionName.CUSTOMER_DETAILS: _DETAILS_COLUMNS,
    CollectionName.COMPANY_LEDGER: _LEDGER_COLUMNS,
    CollectionName.CUSTOMER_LEDGER: _LEDGER_COLUMNS,
    CollectionName.BRAND_DETAILS: (
        "RecordID",
        "CompanyName",
        "Brand",
        "Size",
        "TotalPaid",
        "TotalReturn",
    ),
}

# Which snapshot and ledger collections belong to each counterparty type.
DETAILS_COLLECTION: Mapping[UserType, CollectionName] = {
    UserType.CUSTOMER: CollectionName.CUSTOMER_DETAILS,
    UserType.COMPANY: CollectionName.COMPANY_DETAILS,
}
LEDGER_COLLECTION: Mapping[UserType, CollectionName] = {
    UserType.CUSTOMER: CollectionName.CUSTOMER_LEDGER,
    UserType.COMPANY: CollectionName.COMPANY_LEDGER,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "NOT_AVAILABLE",
    "EPOCH_DATE",
    "EPOCH_TIMESTAMP",
    "SALE_NARRATION_PREFIX",
    "PAYMENT_NARRATION_PREFIX",
    "PURCHASE_INVOICE_PREFIX",
    "COMPANY_RECEIPT_PREFIX",
    "SALE_NOT_FOUND",
    "PURCHASE_NOT_FOUND",
    "MANUAL_DEBIT",
    "CASH_PAYMENT",
    "UNKNOWN_DESCRIPTION",
    "DEFAULT_TOP_SKU_COUNT",
    "UserType",
    "PaymentMethod",
    "CollectionName",
    "COLLECTION_COLUMNS",
    "DETAILS_COLLECTION",
    "LEDGER_COLLECTION",
]
