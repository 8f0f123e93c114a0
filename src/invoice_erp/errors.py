"""Domain exceptions raised by the invoice lifecycle and stock ledger."""

from __future__ import annotations

from typing import Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class InvoiceValidationError(BusinessRuleViolation, ValueError):
    """Raised when invoice input is incomplete or malformed."""


class DuplicateInvoiceNumberError(BusinessRuleViolation):
    """Raised when an invoice number is already used for its type and year."""

    def __init__(self, number: str, invoice_type: str, year: int) -> None:
        super().__init__(
            f"Invoice number '{number}' is already used for '{invoice_type}' invoices in {year}"
        )
        self.number = number
        self.invoice_type = invoice_type
        self.year = year


class DuplicateSkuError(BusinessRuleViolation):
    """Raised when a product SKU collides with an existing one."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or invoice is unknown."""


class ProductNotFoundError(MissingReferenceError):
    """Raised when an invoice line references a product that no longer exists."""

    def __init__(self, product_id: str, product_name: Optional[str] = None) -> None:
        label = f"{product_name} (ID: {product_id})" if product_name else product_id
        super().__init__(f"Product {label} not found")
        self.product_id = product_id
        self.product_name = product_name


class InvoiceNotFoundError(MissingReferenceError):
    """Raised when an invoice identifier cannot be resolved."""


class InvalidStateError(BusinessRuleViolation):
    """Raised when an invoice is not in the state a transition requires."""


class NegativeStockError(BusinessRuleViolation):
    """Raised when an invoice effect would drive a product below zero stock."""

    def __init__(self, product_id: str, product_name: str, current_stock: int, attempted_change: int) -> None:
        super().__init__(
            f'Insufficient stock for product "{product_name}". '
            f"Current: {current_stock}, Change: {attempted_change:+d}, "
            f"New: {current_stock + attempted_change}"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.current_stock = current_stock
        self.attempted_change = attempted_change


__all__ = [
    "BusinessRuleViolation",
    "InvoiceValidationError",
    "DuplicateInvoiceNumberError",
    "DuplicateSkuError",
    "MissingReferenceError",
    "ProductNotFoundError",
    "InvoiceNotFoundError",
    "InvalidStateError",
    "NegativeStockError",
]
