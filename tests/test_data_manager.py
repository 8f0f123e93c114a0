"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from invoice_erp import constants, data_manager
from invoice_erp.constants import Collection
from invoice_erp.data_manager import QueryFilter, WriteKind, WriteOp


def _product_doc(product_id: str, *, on_hand: int = 5, sku: str | None = None) -> dict:
    return {
        "ProductID": product_id,
        "Name": f"Product {product_id}",
        "SKU": sku or f"SKU-{product_id}",
        "Category": "General",
        "Price": Decimal("2.50"),
        "Quantity": on_hand,
        "OnHand": on_hand,
        "InitialStock": on_hand,
    }


@pytest.fixture
def store(master_workbook_path: Path) -> OpenpyxlWorkbook:
    """Open a fresh workbook and seed two products."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.atomic_batch_write(
        workbook,
        [
            WriteOp(WriteKind.SET, Collection.PRODUCTS, "P1", _product_doc("P1", on_hand=5)),
            WriteOp(WriteKind.SET, Collection.PRODUCTS, "P2", _product_doc("P2", on_hand=0)),
        ],
    )
    return workbook


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    monkeypatch.chdir(config_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "UserEmail") == "admin@example.com"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_user_email == "admin@example.com"
    assert settings.store_name == "Test Store"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {member.value for member in Collection}


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(store, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    copy_path = tmp_path / "exports" / "copy.xlsx"
    data_manager.save_workbook(store, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    ids = [row[0] for row in copy[Collection.PRODUCTS.value].iter_rows(min_row=2, values_only=True)]
    assert ids == ["P1", "P2"]


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should reload the on-disk state."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.atomic_batch_write(
        workbook, [WriteOp(WriteKind.SET, Collection.PRODUCTS, "P9", _product_doc("P9"))]
    )

    reloaded = data_manager.refresh_workbook(master_workbook_path)

    assert reloaded is not workbook
    assert data_manager.get_document(reloaded, Collection.PRODUCTS, "P9") is None


def test_locate_row_unknown_column_raises(store):
    with pytest.raises(KeyError):
        data_manager.locate_row(store, Collection.PRODUCTS.value, "Nope", "P1")


# ---------------------------------------------------------------------------
# Document reads and queries
# ---------------------------------------------------------------------------


def test_get_document_returns_fields(store):
    document = data_manager.get_document(store, Collection.PRODUCTS, "P1")

    assert document is not None
    assert document["OnHand"] == 5
    assert document["SKU"] == "SKU-P1"


def test_get_document_missing_returns_none(store):
    assert data_manager.get_document(store, Collection.PRODUCTS, "nope") is None


def test_query_documents_supports_ranges_and_membership(store):
    low = data_manager.query_documents(store, Collection.PRODUCTS, [QueryFilter("OnHand", "<", 1)])
    picked = data_manager.query_documents(store, Collection.PRODUCTS, [QueryFilter("ProductID", "in", ["P2", "P7"])])

    assert [doc["ProductID"] for doc in low] == ["P2"]
    assert [doc["ProductID"] for doc in picked] == ["P2"]


def test_query_documents_array_contains_reads_json_cells(store):
    data_manager.atomic_batch_write(
        store,
        [
            WriteOp(WriteKind.SET, Collection.INVOICES, "I1", {"Number": "001/25", "ItemsIds": ["P1", "P2"]}),
            WriteOp(WriteKind.SET, Collection.INVOICES, "I2", {"Number": "002/25", "ItemsIds": ["P2"]}),
        ],
    )

    results = data_manager.query_documents(store, Collection.INVOICES, [QueryFilter("ItemsIds", "array-contains", "P1")])

    assert [doc["InvoiceID"] for doc in results] == ["I1"]
    assert results[0]["ItemsIds"] == ["P1", "P2"]


def test_query_documents_orders_and_limits(store):
    results = data_manager.query_documents(store, Collection.PRODUCTS, order_by="OnHand", limit=1)

    assert [doc["ProductID"] for doc in results] == ["P2"]


def test_query_documents_rejects_unknown_operator(store):
    with pytest.raises(ValueError):
        data_manager.query_documents(store, Collection.PRODUCTS, [QueryFilter("OnHand", "~", 1)])


# ---------------------------------------------------------------------------
# Atomic batches
# ---------------------------------------------------------------------------


def test_batch_update_writes_only_given_fields(store):
    data_manager.atomic_batch_write(
        store, [WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P1", {"OnHand": 3})]
    )

    document = data_manager.get_document(store, Collection.PRODUCTS, "P1")
    assert document["OnHand"] == 3
    assert document["Quantity"] == 5


def test_batch_with_missing_target_writes_nothing(store):
    ops = [
        WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P1", {"OnHand": 1}),
        WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "ghost", {"OnHand": 1}),
    ]

    with pytest.raises(data_manager.BatchWriteError):
        data_manager.atomic_batch_write(store, ops)

    assert data_manager.get_document(store, Collection.PRODUCTS, "P1")["OnHand"] == 5


def test_batch_with_unknown_field_is_rejected(store):
    with pytest.raises(data_manager.BatchWriteError):
        data_manager.atomic_batch_write(
            store, [WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P1", {"Colour": "red"})]
        )


def test_batch_compare_and_swap_rejects_stale_value(store):
    ops = [
        WriteOp(WriteKind.SET, Collection.INVOICES, "I1", {"Number": "001/25"}),
        WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P1", {"OnHand": 4}, expected={"OnHand": 6}),
    ]

    with pytest.raises(data_manager.StaleDocumentError):
        data_manager.atomic_batch_write(store, ops)

    assert data_manager.get_document(store, Collection.INVOICES, "I1") is None
    assert data_manager.get_document(store, Collection.PRODUCTS, "P1")["OnHand"] == 5


def test_batch_sees_documents_created_earlier_in_batch(store):
    data_manager.atomic_batch_write(
        store,
        [
            WriteOp(WriteKind.SET, Collection.PRODUCTS, "P3", _product_doc("P3")),
            WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P3", {"OnHand": 1}),
            WriteOp(WriteKind.DELETE, Collection.PRODUCTS, "P2"),
        ],
    )

    assert data_manager.get_document(store, Collection.PRODUCTS, "P3")["OnHand"] == 1
    assert data_manager.get_document(store, Collection.PRODUCTS, "P2") is None


def test_batch_rolls_back_when_applying_fails(store, monkeypatch):
    original = data_manager._apply_write
    calls = {"count": 0}

    def flaky_apply(workbook, op):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError("disk hiccup")
        original(workbook, op)

    monkeypatch.setattr(data_manager, "_apply_write", flaky_apply)

    with pytest.raises(OSError):
        data_manager.atomic_batch_write(
            store,
            [
                WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P1", {"OnHand": 0}),
                WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, "P2", {"OnHand": 9}),
            ],
        )

    assert data_manager.get_document(store, Collection.PRODUCTS, "P1")["OnHand"] == 5
    assert data_manager.get_document(store, Collection.PRODUCTS, "P2")["OnHand"] == 0


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def test_invoice_serialization_survives_the_workbook(store):
    invoice = data_manager.InvoiceRow(
        invoice_id="I1",
        number="001/25",
        date="2025-03-01",
        invoice_type=constants.InvoiceType.RETURN.value,
        status="saved",
        customer=data_manager.CustomerInfo(name="Ada", email="ada@example.com"),
        items=(
            data_manager.InvoiceItem(
                product_id="P1",
                name="Product P1",
                sku="SKU-P1",
                price=Decimal("2.50"),
                quantity=-2,
                purchase_price=Decimal("1.10"),
                discount=Decimal("5"),
            ),
        ),
        items_ids=("P1",),
        subtotal=Decimal("-4.75"),
        discount=Decimal("0.00"),
        discount_percentage=Decimal("0"),
        total=Decimal("-4.75"),
    )
    data_manager.atomic_batch_write(
        store, [WriteOp(WriteKind.SET, Collection.INVOICES, "I1", data_manager.serialize_invoice(invoice))]
    )

    restored = data_manager.deserialize_invoice(data_manager.get_document(store, Collection.INVOICES, "I1"))

    assert restored == invoice
    assert not restored.is_trashed


def test_deserialize_invoice_fills_legacy_defaults():
    document = {
        "InvoiceID": "I-old",
        "Number": "003/23",
        "Date": "2023-01-05",
        "Customer": {"name": "Bob"},
        "Items": [{"productId": "P1", "quantity": 2, "price": 3}],
    }

    invoice = data_manager.deserialize_invoice(document)

    assert invoice.invoice_type == "sale"
    assert invoice.items_ids == ("P1",)
    assert invoice.items[0].price == Decimal("3")
    assert invoice.items[0].discount == Decimal("0")


def test_deserialize_product_normalizes_numbers():
    product = data_manager.deserialize_product(
        {"ProductID": "P1", "Name": "Bolt", "Price": 1.5, "OnHand": 4.0, "Quantity": None, "InitialStock": ""}
    )

    assert product.price == Decimal("1.5")
    assert product.on_hand == 4
    assert product.quantity == 0
    assert product.initial_stock is None
