"""Enumerations shared across Invoice ERP modules.

Centralises domain constants so that the document store, the stock ledger,
the invoice lifecycle and the CLI rely on a single source of truth for
collection names, invoice types and the way each type moves stock.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"


class Collection(str, Enum):
    """Enumerate the document collections (one worksheet each) in the store."""

    PRODUCTS = "Products"
    INVOICES = "Invoices"
    ACTIVITY_LOG = "ActivityLog"


class InvoiceType(str, Enum):
    """Enumerate every invoice type found in stored invoices."""

    SALE = "sale"
    RETURN = "return"
    GIFTED_DAMAGED = "gifted-damaged"
    CASH = "cash"
    ONLINE_SALE = "online-sale"
    # Legacy types only found in historical data.
    WRITEOFF = "writeoff"
    REFUND = "refund"


class EffectDirection(int, Enum):
    """Direction in which an invoice type moves product stock."""

    DECREMENT = -1
    INCREMENT = 1


class StockBucket(str, Enum):
    """Accumulator a line falls into when stock is reconciled from history."""

    SOLD = "sold"
    WRITTEN_OFF = "written_off"
    REFUNDED = "refunded"


class InvoiceStatus(str, Enum):
    """Enumerate the document statuses written by the lifecycle manager."""

    SAVED = "saved"


EFFECT_DIRECTIONS: Dict[InvoiceType, EffectDirection] = {
    InvoiceType.SALE: EffectDirection.DECREMENT,
    InvoiceType.CASH: EffectDirection.DECREMENT,
    InvoiceType.ONLINE_SALE: EffectDirection.DECREMENT,
    InvoiceType.GIFTED_DAMAGED: EffectDirection.DECREMENT,
    InvoiceType.WRITEOFF: EffectDirection.DECREMENT,
    InvoiceType.RETURN: EffectDirection.INCREMENT,
    InvoiceType.REFUND: EffectDirection.INCREMENT,
}

STOCK_BUCKETS: Dict[InvoiceType, StockBucket] = {
    InvoiceType.SALE: StockBucket.SOLD,
    InvoiceType.CASH: StockBucket.SOLD,
    InvoiceType.ONLINE_SALE: StockBucket.SOLD,
    InvoiceType.GIFTED_DAMAGED: StockBucket.WRITTEN_OFF,
    InvoiceType.WRITEOFF: StockBucket.WRITTEN_OFF,
    InvoiceType.RETURN: StockBucket.REFUNDED,
    InvoiceType.REFUND: StockBucket.REFUNDED,
}

# Types that new or edited invoices may carry; the rest are read-only history.
LIFECYCLE_INVOICE_TYPES = frozenset(
    {
        InvoiceType.SALE,
        InvoiceType.RETURN,
        InvoiceType.GIFTED_DAMAGED,
        InvoiceType.CASH,
        InvoiceType.ONLINE_SALE,
    }
)

# Types whose effect may never drive ``OnHand`` below zero.
FLOOR_GUARDED_INVOICE_TYPES = frozenset(
    {
        InvoiceType.SALE,
        InvoiceType.CASH,
        InvoiceType.GIFTED_DAMAGED,
        InvoiceType.ONLINE_SALE,
        InvoiceType.WRITEOFF,
    }
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "Collection",
    "InvoiceType",
    "EffectDirection",
    "StockBucket",
    "InvoiceStatus",
    "EFFECT_DIRECTIONS",
    "STOCK_BUCKETS",
    "LIFECYCLE_INVOICE_TYPES",
    "FLOOR_GUARDED_INVOICE_TYPES",
]
