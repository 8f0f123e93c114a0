"""Integration tests describing the end-to-end Invoice ERP workflows.

These scenarios document how the data access, ledger and business logic
layers collaborate, with writes going to disk between steps the way the
CLI drives them.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from invoice_erp import constants, core_logic, data_manager, reconciliation
from invoice_erp.constants import InvoiceType


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Persist ``context`` and hand back a freshly opened one."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_invoice_lifecycle_flow(runtime_context, add_product, invoice_command):
    """Walk a product through sale, return, trash, restore and purge."""

    product = add_product("Bolt", stock=100)
    pid = product.product_id
    context = _reload(runtime_context)

    sale = core_logic.create_invoice(context, invoice_command((pid, 10), number="001/25"))
    returned = core_logic.create_invoice(
        context, invoice_command((pid, -4), number="002/25", invoice_type=InvoiceType.RETURN)
    )
    core_logic.create_invoice(
        context, invoice_command((pid, 6), number="003/25", invoice_type=InvoiceType.GIFTED_DAMAGED)
    )
    context = _reload(context)
    assert core_logic.get_product(context, pid).on_hand == 88

    # Trashing the return takes the four units back out of stock.
    core_logic.soft_delete_invoice(context, returned.invoice_id)
    context = _reload(context)
    assert core_logic.get_product(context, pid).on_hand == 84
    assert [inv.invoice_id for inv in core_logic.list_trashed_invoices(context)] == [returned.invoice_id]

    core_logic.restore_invoice(context, returned.invoice_id)
    core_logic.soft_delete_invoice(context, sale.invoice_id)
    core_logic.permanently_delete_invoice(context, sale.invoice_id)
    context = _reload(context)

    assert core_logic.get_product(context, pid).on_hand == 98
    with pytest.raises(core_logic.InvoiceNotFoundError):
        core_logic.get_invoice(context, sale.invoice_id)

    # The reconciled ledger agrees with the incrementally maintained stock.
    assert reconciliation.recalculate_product_stock(context, pid) == 98
    assert reconciliation.find_stock_drift(context) == []


def test_refresh_discards_unsaved_changes(runtime_context, add_product, invoice_command):
    product = add_product(stock=5)
    context = _reload(runtime_context)

    core_logic.create_invoice(context, invoice_command((product.product_id, 5)))
    assert core_logic.get_product(context, product.product_id).on_hand == 0

    context = core_logic.refresh_context(context)

    assert core_logic.get_product(context, product.product_id).on_hand == 5
    assert core_logic.list_invoices(context) == []


def test_edit_moves_stock_between_products(runtime_context, add_product, invoice_command):
    old = add_product("Old", stock=10)
    new = add_product("New", stock=10)
    created = core_logic.create_invoice(runtime_context, invoice_command((old.product_id, 3)))
    context = _reload(runtime_context)

    updated = core_logic.update_invoice(
        context,
        core_logic.InvoiceUpdateCommand(
            invoice_id=created.invoice_id,
            items=(core_logic.InvoiceLineCommand(product_id=new.product_id, quantity=4),),
        ),
    )
    context = _reload(context)

    assert updated.items_ids == (new.product_id,)
    assert updated.total == Decimal("40.00")
    assert core_logic.get_product(context, old.product_id).on_hand == 10
    assert core_logic.get_product(context, new.product_id).on_hand == 6
    assert core_logic.get_invoice(context, created.invoice_id).total == Decimal("40.00")


def test_failed_invoice_leaves_workbook_untouched(runtime_context, add_product, invoice_command):
    plenty = add_product("Plenty", stock=50)
    scarce = add_product("Scarce", stock=1)
    context = _reload(runtime_context)

    with pytest.raises(core_logic.NegativeStockError):
        core_logic.create_invoice(context, invoice_command((plenty.product_id, 5), (scarce.product_id, 2)))
    context = _reload(context)

    assert core_logic.get_product(context, plenty.product_id).on_hand == 50
    assert core_logic.get_product(context, scarce.product_id).on_hand == 1
    assert core_logic.list_invoices(context, include_deleted=True) == []


def test_numbering_survives_reload(runtime_context, add_product, invoice_command):
    product = add_product(stock=10)
    core_logic.create_invoice(runtime_context, invoice_command((product.product_id, 1), number="004/25"))
    core_logic.create_invoice(
        runtime_context,
        invoice_command((product.product_id, 1), number="CASH 002/25", invoice_type=InvoiceType.CASH),
    )
    context = _reload(runtime_context)

    today = date(2025, 6, 30)
    assert core_logic.next_invoice_number(context, InvoiceType.SALE, today=today) == "005/25"
    assert core_logic.next_invoice_number(context, InvoiceType.CASH, today=today) == "CASH 003/25"
    with pytest.raises(core_logic.DuplicateInvoiceNumberError):
        core_logic.create_invoice(context, invoice_command((product.product_id, 1), number="004/25"))


def test_activity_log_is_persisted(runtime_context, add_product, invoice_command):
    product = add_product("Bolt", stock=10)
    created = core_logic.create_invoice(runtime_context, invoice_command((product.product_id, 1)))
    core_logic.soft_delete_invoice(runtime_context, created.invoice_id)
    context = _reload(runtime_context)

    messages = {entry.message for entry in core_logic.list_activity(context)}

    assert 'New product "Bolt" added by admin@example.com' in messages
    assert "New invoice 001/25 created by admin@example.com" in messages
    assert "Invoice 001/25 moved to trash by admin@example.com" in messages


def test_clear_all_data_empties_every_collection(runtime_context, add_product, invoice_command):
    product = add_product(stock=10)
    core_logic.create_invoice(runtime_context, invoice_command((product.product_id, 2)))
    context = _reload(runtime_context)

    assert core_logic.clear_all_data(context) == (1, 1)
    context = _reload(context)

    assert core_logic.list_products(context) == []
    assert core_logic.list_invoices(context, include_deleted=True) == []
    assert data_manager.query_documents(context.workbook, constants.Collection.INVOICES) == []
