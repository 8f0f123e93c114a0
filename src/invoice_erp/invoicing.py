"""Invoice arithmetic and business-number helpers.

Totals are accumulated at full ``Decimal`` precision and rounded only when
the final figures are produced. Business numbers follow the ``NNN/YY``
pattern, with a ``CASH `` prefix for the separate cash series.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .constants import InvoiceType
from .data_manager import InvoiceItem


CENT = Decimal("0.01")
HUNDRED = Decimal("100")
CASH_PREFIX = "CASH "

REGULAR_NUMBER_PATTERN = re.compile(r"^([0-9]{3})/([0-9]{2})$")
CASH_NUMBER_PATTERN = re.compile(r"^CASH ([0-9]{3})/([0-9]{2})$")


@dataclass(frozen=True)
class InvoiceTotals:
    """Rounded monetary summary of an invoice."""

    subtotal: Decimal
    discount: Decimal
    total: Decimal


@dataclass(frozen=True)
class ParsedInvoiceNumber:
    """Components of a business number such as ``CASH 007/25``."""

    sequential: int
    year: str
    prefix: str


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def line_amount(item: InvoiceItem) -> Decimal:
    """Unrounded line value after the per-line discount percentage."""

    gross = item.price * item.quantity
    return gross - gross * (item.discount / HUNDRED)


def calculate_invoice_totals(items: Iterable[InvoiceItem], discount_percentage: Decimal) -> InvoiceTotals:
    """Compute subtotal, global discount amount and total for invoice lines.

    ``subtotal`` is the sum of every line after its own discount. The global
    ``discount_percentage`` is then taken off the subtotal. Rounding to cents
    happens once, on the three returned figures.

    Args:
        items (Iterable[InvoiceItem]): Invoice lines with signed quantities.
            Return lines carry negative quantities and therefore negative
            amounts.
        discount_percentage (Decimal): Global discount between 0 and 100.

    Returns:
        InvoiceTotals: Rounded ``subtotal``, absolute ``discount`` and
            ``total``.
    """

    subtotal = sum((line_amount(item) for item in items), Decimal("0"))
    discount = subtotal * (Decimal(discount_percentage) / HUNDRED)
    total = subtotal - discount
    return InvoiceTotals(
        subtotal=round_money(subtotal),
        discount=round_money(discount),
        total=round_money(total),
    )


def numbering_prefix(invoice_type: InvoiceType) -> str:
    """Return the number prefix of the series ``invoice_type`` is numbered in."""

    return CASH_PREFIX if invoice_type is InvoiceType.CASH else ""


def parse_invoice_number(number: str) -> Optional[ParsedInvoiceNumber]:
    """Split a business number into its parts, or ``None`` if malformed."""

    match = CASH_NUMBER_PATTERN.match(number)
    prefix = CASH_PREFIX
    if match is None:
        match = REGULAR_NUMBER_PATTERN.match(number)
        prefix = ""
    if match is None:
        return None
    return ParsedInvoiceNumber(sequential=int(match.group(1)), year=match.group(2), prefix=prefix)


def generate_next_invoice_number(latest_number: Optional[str], year_short: str, prefix: str = "") -> str:
    """Suggest the number following ``latest_number`` in its series.

    The sequence continues only when the latest number is well formed,
    belongs to the same series (prefix) and to ``year_short``; otherwise it
    restarts at ``001``.

    Args:
        latest_number (str | None): Highest number issued so far, if any.
        year_short (str): Two-digit year of the invoice being numbered.
        prefix (str): ``""`` for the regular series, ``"CASH "`` for cash.

    Returns:
        str: Suggested number such as ``"008/25"``.
    """

    next_sequential = 1
    if latest_number:
        parsed = parse_invoice_number(latest_number)
        if parsed is not None and parsed.prefix == prefix and parsed.year == year_short:
            next_sequential = parsed.sequential + 1
    return f"{prefix}{next_sequential:03d}/{year_short}"
