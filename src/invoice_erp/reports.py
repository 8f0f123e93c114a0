"""Read-only sales, cost and profit reports over the invoice history.

Reports are computed from the cached invoice and product lists held by the
runtime context and never write to the workbook. Money is accumulated at full
precision and rounded half-up to cents only in the returned values.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import core_logic, invoicing, log
from .data_manager import InvoiceItem, InvoiceRow, ProductRow
from .errors import InvoiceValidationError


@dataclass(frozen=True)
class SalesMetrics:
    """Aggregate figures for the active invoices of a period."""

    total_sales: Decimal
    total_costs: Decimal
    total_profit: Decimal
    number_of_invoices: int
    returned_quantity: int
    returned_value: Decimal


@dataclass(frozen=True)
class InvoiceProfit:
    """Cost and profit of a single invoice."""

    invoice: InvoiceRow
    cost: Decimal
    profit: Decimal


@dataclass(frozen=True)
class SellHistoryEntry:
    """One invoice line for a product, as shown in its sell history."""

    invoice_id: str
    invoice_number: str
    date: str
    invoice_type: str
    quantity: int
    price: Decimal


def _check_period(date_from: Optional[str], date_to: Optional[str]) -> None:
    for label, value in (("Start date", date_from), ("End date", date_to)):
        if value is None:
            continue
        try:
            date.fromisoformat(value)
        except (TypeError, ValueError) as exc:
            raise InvoiceValidationError(f"{label} must be an ISO date: {value!r}") from exc
    if date_from is not None and date_to is not None and date_from > date_to:
        raise InvoiceValidationError(f"Start date {date_from} is after end date {date_to}")


def _in_period(invoice: InvoiceRow, date_from: Optional[str], date_to: Optional[str]) -> bool:
    # ISO dates order correctly as strings.
    if date_from is not None and invoice.date < date_from:
        return False
    if date_to is not None and invoice.date > date_to:
        return False
    return True


def unit_cost(item: InvoiceItem, products: Mapping[str, ProductRow]) -> Decimal:
    """Return the purchase price used to cost ``item``.

    The product's current purchase price wins; the snapshot taken on the line
    covers deleted products and products without a purchase price.
    """
    product = products.get(item.product_id)
    if product is not None and product.purchase_price:
        return product.purchase_price
    return item.purchase_price or Decimal("0")


def invoice_cost(invoice: InvoiceRow, products: Mapping[str, ProductRow]) -> Decimal:
    """Unrounded cost of every line of ``invoice``; return lines count negative."""
    return sum((unit_cost(item, products) * item.quantity for item in invoice.items), Decimal("0"))


def _products_by_id(context: core_logic.RuntimeContext) -> Dict[str, ProductRow]:
    return {product.product_id: product for product in core_logic.list_products(context)}


def _invoices_in_period(
    invoices: Iterable[InvoiceRow], date_from: Optional[str], date_to: Optional[str]
) -> List[InvoiceRow]:
    return [invoice for invoice in invoices if _in_period(invoice, date_from, date_to)]


def calculate_sales_metrics(
    context: core_logic.RuntimeContext,
    *,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> SalesMetrics:
    """Summarise sales, costs and returns of the active invoices in a period.

    Both bounds are inclusive ISO dates; ``None`` leaves that side open.
    Trashed invoices are left out. Costs use :func:`unit_cost` times the
    signed line quantity, so returns reduce both sales and costs, and profit
    is ``total_sales - total_costs``.

    Args:
        context (RuntimeContext): Runtime context providing cached reads.
        date_from (str | None): First invoice date included.
        date_to (str | None): Last invoice date included.

    Returns:
        SalesMetrics: Rounded totals plus the count of active invoices and the
            quantity and value of returned (negative) lines.

    Raises:
        InvoiceValidationError: If a bound is not an ISO date or the period is
            reversed.
    """
    _check_period(date_from, date_to)
    products = _products_by_id(context)
    invoices = _invoices_in_period(core_logic.list_invoices(context), date_from, date_to)

    total_sales = Decimal("0")
    total_costs = Decimal("0")
    returned_quantity = 0
    returned_value = Decimal("0")
    for invoice in invoices:
        total_sales += invoice.total
        total_costs += invoice_cost(invoice, products)
        for item in invoice.items:
            if item.quantity < 0:
                returned_quantity += abs(item.quantity)
                returned_value += abs(item.price * item.quantity)

    metrics = SalesMetrics(
        total_sales=invoicing.round_money(total_sales),
        total_costs=invoicing.round_money(total_costs),
        total_profit=invoicing.round_money(total_sales - total_costs),
        number_of_invoices=len(invoices),
        returned_quantity=returned_quantity,
        returned_value=invoicing.round_money(returned_value),
    )
    log.debug(
        "Calculated sales metrics %s..%s: sales=%s costs=%s profit=%s invoices=%d",
        date_from,
        date_to,
        metrics.total_sales,
        metrics.total_costs,
        metrics.total_profit,
        metrics.number_of_invoices,
    )
    return metrics


def invoice_profit_table(
    context: core_logic.RuntimeContext,
    *,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    include_deleted: bool = True,
) -> List[InvoiceProfit]:
    """List invoices of a period, newest first, with their cost and profit.

    Trashed invoices are listed too unless ``include_deleted`` is ``False``;
    callers can tell them apart through ``InvoiceProfit.invoice.is_trashed``.

    Raises:
        InvoiceValidationError: If a bound is not an ISO date or the period is
            reversed.
    """
    _check_period(date_from, date_to)
    products = _products_by_id(context)
    invoices = core_logic.list_invoices(context, include_deleted=include_deleted)
    rows = []
    for invoice in _invoices_in_period(invoices, date_from, date_to):
        cost = invoice_cost(invoice, products)
        rows.append(
            InvoiceProfit(
                invoice=invoice,
                cost=invoicing.round_money(cost),
                profit=invoicing.round_money(invoice.total - cost),
            )
        )
    return rows


def product_sell_history(context: core_logic.RuntimeContext, product_id: str) -> List[SellHistoryEntry]:
    """Return every active invoice line for ``product_id``, newest first.

    Lines are read from the invoice snapshots, so history survives the product
    being renamed or deleted. Quantities keep their stored sign.
    """
    history = [
        SellHistoryEntry(
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.number,
            date=invoice.date,
            invoice_type=invoice.invoice_type,
            quantity=item.quantity,
            price=item.price,
        )
        for invoice in core_logic.list_invoices(context)
        for item in invoice.items
        if item.product_id == product_id
    ]
    log.debug("Found %d sell history lines for product '%s'", len(history), product_id)
    return history


__all__ = [
    "InvoiceProfit",
    "SalesMetrics",
    "SellHistoryEntry",
    "calculate_sales_metrics",
    "invoice_cost",
    "invoice_profit_table",
    "product_sell_history",
    "unit_cost",
]
