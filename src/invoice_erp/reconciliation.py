"""Reconciliation engine.

Recomputes a product's ledger stock from scratch: the opening anchor minus
everything sold and written off, plus everything returned, across the
product's active invoices. The result lands in ``Quantity``; ``OnHand``
stays owned by the invoice lifecycle, and :func:`find_stock_drift` reports
where the two disagree.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Dict, Iterable, List, Optional

from . import data_manager, log, stock_ledger
from .constants import Collection, StockBucket
from .core_logic import RuntimeContext, commit_batch
from .data_manager import InvoiceRow, ProductRow, QueryFilter, WriteKind, WriteOp


@dataclass(frozen=True)
class StockDrift:
    """Product whose live ``OnHand`` differs from its reconciled stock."""

    product_id: str
    name: str
    on_hand: int
    reconciled: int

    @property
    def difference(self) -> int:
        return self.on_hand - self.reconciled


def stock_anchor(product: ProductRow) -> int:
    """Return the opening stock reconciliation starts from."""

    if product.initial_stock is not None:
        return product.initial_stock
    return product.quantity


def reconcile_quantity(product: ProductRow, invoices: Iterable[InvoiceRow]) -> int:
    """Compute the ledger stock of ``product`` from ``invoices``.

    Trashed invoices are skipped here rather than relied upon to be filtered
    by the caller. Every line referencing the product counts, so an invoice
    listing the product twice contributes both lines. Invoices with an
    unknown type are logged and ignored.

    Args:
        product (ProductRow): Product being reconciled.
        invoices (Iterable[InvoiceRow]): Candidate invoices; those not
            mentioning the product contribute nothing.

    Returns:
        int: ``max(0, anchor - sold - written_off + refunded)``.
    """

    totals: Dict[StockBucket, int] = {bucket: 0 for bucket in StockBucket}
    for invoice in invoices:
        if invoice.is_trashed:
            continue
        try:
            bucket = stock_ledger.stock_bucket(invoice.invoice_type)
        except ValueError:
            log.warning(
                "Ignoring invoice '%s' with unknown type '%s' during reconciliation",
                invoice.number,
                invoice.invoice_type,
            )
            continue
        for item in invoice.items:
            if item.product_id == product.product_id:
                totals[bucket] += abs(item.quantity)

    ledger = (
        stock_anchor(product)
        - totals[StockBucket.SOLD]
        - totals[StockBucket.WRITTEN_OFF]
        + totals[StockBucket.REFUNDED]
    )
    return max(0, ledger)


def _invoices_for(context: RuntimeContext, product_id: str) -> List[InvoiceRow]:
    documents = data_manager.query_documents(
        context.workbook,
        Collection.INVOICES,
        [QueryFilter("ItemsIds", "array-contains", product_id)],
    )
    return [data_manager.deserialize_invoice(document) for document in documents]


def _quantity_write(product_id: str, quantity: int, moment: datetime) -> WriteOp:
    return WriteOp(
        WriteKind.UPDATE,
        Collection.PRODUCTS,
        product_id,
        {"Quantity": quantity, "UpdatedAt": moment.isoformat()},
    )


def recalculate_product_stock(
    context: RuntimeContext,
    product_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> Optional[int]:
    """Recompute and store the ledger ``Quantity`` of one product.

    The computation is a full recompute and therefore idempotent. A missing
    product is a no-op.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        product_id (str): Product to reconcile.
        timestamp (datetime | None): Value written to ``UpdatedAt``.

    Returns:
        int | None: The reconciled quantity, or ``None`` when the product
            does not exist.
    """

    document = data_manager.get_document(context.workbook, Collection.PRODUCTS, product_id)
    if document is None:
        log.warning("Skipping reconciliation of unknown product '%s'", product_id)
        return None

    product = data_manager.deserialize_product(document)
    quantity = reconcile_quantity(product, _invoices_for(context, product_id))
    commit_batch(context, [_quantity_write(product_id, quantity, timestamp or datetime.now(UTC))])
    log.info("Reconciled product '%s': quantity %d -> %d", product_id, product.quantity, quantity)
    return quantity


def recalculate_products(
    context: RuntimeContext,
    product_ids: Iterable[str],
    *,
    timestamp: Optional[datetime] = None,
) -> Dict[str, int]:
    """Reconcile several products and return their new quantities.

    Unknown identifiers are skipped. All quantities are written in a single
    batch.
    """

    moment = timestamp or datetime.now(UTC)
    invoices = list(data_manager.iter_invoices(context.workbook))
    results: Dict[str, int] = {}
    for product_id in dict.fromkeys(product_ids):
        document = data_manager.get_document(context.workbook, Collection.PRODUCTS, product_id)
        if document is None:
            log.warning("Skipping reconciliation of unknown product '%s'", product_id)
            continue
        product = data_manager.deserialize_product(document)
        results[product_id] = reconcile_quantity(product, invoices)

    commit_batch(context, [_quantity_write(product_id, quantity, moment) for product_id, quantity in results.items()])
    log.info("Reconciled %d products", len(results))
    return results


def recalculate_all_products(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> Dict[str, int]:
    """Reconcile every product in the store."""

    product_ids = [product.product_id for product in data_manager.iter_products(context.workbook)]
    return recalculate_products(context, product_ids, timestamp=timestamp)


def find_stock_drift(context: RuntimeContext) -> List[StockDrift]:
    """List products whose ``OnHand`` disagrees with their reconciled stock.

    Nothing is written.
    """

    invoices = list(data_manager.iter_invoices(context.workbook))
    drifts: List[StockDrift] = []
    for product in data_manager.iter_products(context.workbook):
        reconciled = reconcile_quantity(product, invoices)
        if reconciled != product.on_hand:
            drifts.append(
                StockDrift(
                    product_id=product.product_id,
                    name=product.name,
                    on_hand=product.on_hand,
                    reconciled=reconciled,
                )
            )
    if drifts:
        log.warning("Detected stock drift on %d products", len(drifts))
    return drifts


__all__ = [
    "StockDrift",
    "find_stock_drift",
    "recalculate_all_products",
    "recalculate_products",
    "reconcile_quantity",
    "recalculate_product_stock",
    "stock_anchor",
]
