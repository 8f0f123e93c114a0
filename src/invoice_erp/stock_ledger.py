"""Stock ledger primitives.

Pure functions describing what an invoice line does to product stock. Each
invoice type carries an explicit effect direction, so the stored sign of a
quantity never decides whether stock goes up or down: return lines are
persisted with negative quantities for compatibility, yet a positive return
quantity still adds stock.
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, MutableMapping, Union

from . import log
from .constants import (
    EFFECT_DIRECTIONS,
    FLOOR_GUARDED_INVOICE_TYPES,
    STOCK_BUCKETS,
    EffectDirection,
    InvoiceType,
    StockBucket,
)
from .data_manager import InvoiceItem, ProductRow
from .errors import NegativeStockError, ProductNotFoundError


TypeLike = Union[InvoiceType, str]


def resolve_invoice_type(invoice_type: TypeLike) -> InvoiceType:
    """Coerce a stored type string into :class:`InvoiceType`.

    Raises:
        ValueError: If the value is not a known invoice type.
    """

    if isinstance(invoice_type, InvoiceType):
        return invoice_type
    return InvoiceType(invoice_type or InvoiceType.SALE.value)


def effect_direction(invoice_type: TypeLike) -> EffectDirection:
    return EFFECT_DIRECTIONS[resolve_invoice_type(invoice_type)]


def stock_bucket(invoice_type: TypeLike) -> StockBucket:
    return STOCK_BUCKETS[resolve_invoice_type(invoice_type)]


def line_effect(invoice_type: TypeLike, quantity: int) -> int:
    """Return the signed stock delta one invoice line contributes.

    Decrementing types (sales and write-offs) move stock down by
    ``quantity``; a negative quantity for them is a caller error.
    Incrementing types (returns) move stock up by the magnitude of
    ``quantity`` whatever sign it was stored with.

    Args:
        invoice_type (InvoiceType | str): Type of the invoice owning the line.
        quantity (int): Quantity stored on the line.

    Returns:
        int: Signed delta to add to ``OnHand`` when the invoice is applied.

    Raises:
        ValueError: If the type is unknown or a decrementing line carries a
            negative quantity.
    """

    direction = effect_direction(invoice_type)
    if direction is EffectDirection.DECREMENT:
        if quantity < 0:
            raise ValueError(
                f"Quantity for '{resolve_invoice_type(invoice_type).value}' lines must not be negative: {quantity}"
            )
        return -quantity
    return abs(quantity)


def normalize_quantity(invoice_type: TypeLike, quantity: int) -> int:
    """Return ``quantity`` in the sign convention used for persistence."""

    if effect_direction(invoice_type) is EffectDirection.INCREMENT:
        return -abs(quantity)
    return quantity


def is_floor_guarded(invoice_type: TypeLike) -> bool:
    return resolve_invoice_type(invoice_type) in FLOOR_GUARDED_INVOICE_TYPES


def _step(
    invoice_type: TypeLike,
    items: Iterable[InvoiceItem],
    balances: MutableMapping[str, int],
    products: Mapping[str, ProductRow],
    *,
    sign: int,
) -> MutableMapping[str, int]:
    guarded = is_floor_guarded(invoice_type)
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            log.error("Stock change references missing product '%s'", item.product_id)
            raise ProductNotFoundError(item.product_id, item.name or None)
        current = balances.get(item.product_id, product.on_hand)
        change = sign * line_effect(invoice_type, item.quantity)
        new_balance = current + change
        # Raising stock is always allowed, even from an already negative balance.
        if guarded and change < 0 and new_balance < 0:
            log.error(
                "Negative stock rejected for product '%s': current=%s change=%s",
                item.product_id,
                current,
                change,
            )
            raise NegativeStockError(item.product_id, product.name, current, change)
        balances[item.product_id] = new_balance
    return balances


def apply_invoice(
    invoice_type: TypeLike,
    items: Iterable[InvoiceItem],
    balances: MutableMapping[str, int],
    products: Mapping[str, ProductRow],
) -> MutableMapping[str, int]:
    """Apply every line of an invoice to the running ``balances``.

    ``balances`` maps product ids to the stock computed so far within the
    current batch; products not yet present start from their stored
    ``on_hand``. The mapping is updated in place and returned so several
    invoices (or a reversal followed by an application) can be chained.

    Raises:
        ProductNotFoundError: If a line's product is missing from ``products``.
        NegativeStockError: If a floor-guarded type would drive a product
            below zero.
    """

    return _step(invoice_type, items, balances, products, sign=1)


def reverse_invoice(
    invoice_type: TypeLike,
    items: Iterable[InvoiceItem],
    balances: MutableMapping[str, int],
    products: Mapping[str, ProductRow],
) -> MutableMapping[str, int]:
    """Undo every line of an invoice against the running ``balances``."""

    return _step(invoice_type, items, balances, products, sign=-1)


def changed_balances(balances: Mapping[str, int], products: Mapping[str, ProductRow]) -> Dict[str, int]:
    """Return the balances that differ from the stored ``on_hand`` values."""

    return {
        product_id: balance
        for product_id, balance in balances.items()
        if balance != products[product_id].on_hand
    }
