"""Data access layer for Invoice ERP.

This module exposes the ``master_workbook.xlsx`` workbook as a small document
store. Every worksheet is a collection, every row a document keyed by its
first column, and the header row names the document fields. Business logic
belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Document operations: point reads, filtered queries, and atomic batches of
   ``set``/``update``/``delete`` writes that either fully apply or leave the
   workbook untouched.
4. Row mapping: converting documents into typed records and back.
"""


from __future__ import annotations

import configparser
import json
import operator
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import Collection, InvoiceType


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = Collection.PRODUCTS.value
INVOICES_SHEET = Collection.INVOICES.value
ACTIVITY_LOG_SHEET = Collection.ACTIVITY_LOG.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "Name",
        "SKU",
        "Category",
        "Price",
        "PurchasePrice",
        "Quantity",
        "OnHand",
        "InitialStock",
        "ShortDescription",
        "CreatedAt",
        "UpdatedAt",
    ],
    INVOICES_SHEET: [
        "InvoiceID",
        "Number",
        "Date",
        "InvoiceType",
        "Status",
        "Customer",
        "Items",
        "ItemsIds",
        "Subtotal",
        "Discount",
        "DiscountPercentage",
        "Total",
        "DeletedAt",
        "CreatedAt",
        "UpdatedAt",
    ],
    ACTIVITY_LOG_SHEET: [
        "LogID",
        "Message",
        "UserID",
        "UserEmail",
        "Timestamp",
    ],
}

ID_COLUMNS: Mapping[str, str] = {name: columns[0] for name, columns in SHEET_COLUMNS.items()}

# Cells holding nested structures are stored as JSON text.
JSON_FIELDS = frozenset({"Customer", "Items", "ItemsIds"})


class BatchWriteError(RuntimeError):
    """Raised when a batch references unknown documents, sheets, or fields."""


class StaleDocumentError(BatchWriteError):
    """Raised when a document no longer holds the values a write expected."""


class WriteKind(str, Enum):
    """Kinds of document writes accepted by :func:`atomic_batch_write`."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOp:
    """One document write inside an atomic batch.

    ``expected`` optionally maps field names to the values the stored
    document must still hold for the batch to commit.
    """

    kind: WriteKind
    collection: Collection
    doc_id: str
    data: Mapping[str, Any] = field(default_factory=dict)
    expected: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class QueryFilter:
    """Field predicate used by :func:`query_documents`."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_user_id: str
    default_user_email: str


@dataclass(frozen=True)
class CustomerInfo:
    """Customer block embedded in an invoice document."""

    name: str
    email: str = ""
    address: str = ""
    phone: Optional[str] = None


@dataclass(frozen=True)
class InvoiceItem:
    """Invoice line with the product snapshot taken when it was saved."""

    product_id: str
    name: str
    sku: str
    price: Decimal
    quantity: int
    purchase_price: Optional[Decimal] = None
    discount: Decimal = Decimal("0")


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a document from the ``Products`` collection."""

    product_id: str
    name: str
    sku: str
    category: str
    price: Decimal
    purchase_price: Optional[Decimal]
    quantity: int
    on_hand: int
    initial_stock: Optional[int]
    short_description: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a document from the ``Invoices`` collection."""

    invoice_id: str
    number: str
    date: str
    invoice_type: str
    status: str
    customer: CustomerInfo
    items: Tuple[InvoiceItem, ...]
    items_ids: Tuple[str, ...]
    subtotal: Decimal
    discount: Decimal
    discount_percentage: Decimal
    total: Decimal
    deleted_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class ActivityLogRow:
    """In-memory view of a document from the ``ActivityLog`` collection."""

    log_id: str
    message: str
    user_id: Optional[str]
    user_email: str
    timestamp_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded before the file is checked.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Required entries are validated later by
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback, and the
    result is resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container with the resolved data
            file path, store metadata, schema version, and the identity used
            for activity log entries.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user_id = parser.get("Defaults", "UserId")
        default_user_email = parser.get("Defaults", "UserEmail")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_user_id=default_user_id,
        default_user_email=default_user_email,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles to their 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value == key_value:
            return row_idx

    return None


def get_document(workbook: Workbook, collection: Collection, doc_id: str) -> Optional[Dict[str, Any]]:
    """Read a single document by identifier.

    Args:
        workbook (Workbook): Workbook backing the store.
        collection (Collection): Collection (worksheet) to read from.
        doc_id (str): Value of the collection's identifier column.

    Returns:
        dict[str, Any] | None: Field mapping with JSON cells decoded, or
            ``None`` when no row carries ``doc_id``.
    """

    sheet_name = Collection(collection).value
    row_index = locate_row(workbook, sheet_name, ID_COLUMNS[sheet_name], doc_id)
    if row_index is None:
        return None
    sheet = workbook[sheet_name]
    raw = [cell.value for cell in sheet[row_index]]
    return _read_document(header_map(sheet), raw)


_COMPARATORS: Mapping[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _matches(document: Mapping[str, Any], condition: QueryFilter) -> bool:
    actual = document.get(condition.field)
    if condition.op == "array-contains":
        return isinstance(actual, list) and condition.value in actual
    if condition.op == "in":
        return actual in condition.value
    comparator = _COMPARATORS.get(condition.op)
    if comparator is None:
        raise ValueError(f"Unsupported query operator: {condition.op}")
    if condition.op not in ("==", "!=") and actual is None:
        return False
    return comparator(actual, condition.value)


def query_documents(
    workbook: Workbook,
    collection: Collection,
    filters: Sequence[QueryFilter] = (),
    *,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Return every document in ``collection`` that satisfies all ``filters``.

    Supported operators are equality (``==``/``!=``), ranges (``<``, ``<=``,
    ``>``, ``>=``; documents with an empty field never match a range),
    membership (``in``), and ``array-contains`` for list-valued JSON fields.

    Args:
        workbook (Workbook): Workbook backing the store.
        collection (Collection): Collection to scan.
        filters (Sequence[QueryFilter]): Predicates combined with logical AND.
        order_by (str | None): Optional field to sort by. Empty values sort
            last.
        descending (bool): Reverse the ordering when ``order_by`` is given.
        limit (int | None): Maximum number of documents returned.

    Returns:
        list[dict[str, Any]]: Matching documents in sheet order unless
            ``order_by`` is supplied.

    Raises:
        ValueError: If a filter uses an unknown operator.
    """

    sheet = workbook[Collection(collection).value]
    columns = header_map(sheet)
    results: List[Dict[str, Any]] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        document = _read_document(columns, raw)
        if all(_matches(document, condition) for condition in filters):
            results.append(document)

    if order_by is not None:
        present = [doc for doc in results if doc.get(order_by) is not None]
        missing = [doc for doc in results if doc.get(order_by) is None]
        present.sort(key=lambda doc: doc[order_by], reverse=descending)
        results = present + missing
    if limit is not None:
        results = results[:limit]
    return results


def atomic_batch_write(workbook: Workbook, ops: Sequence[WriteOp]) -> None:
    """Apply a batch of document writes as one all-or-nothing unit.

    The batch is validated in full before any cell changes: every target
    sheet and field must exist, ``update``/``delete`` targets must exist
    (documents created earlier in the same batch count), and every
    ``expected`` mapping must match the stored document. Writes are then
    applied in order. Should applying fail midway, the touched sheets are
    restored from a snapshot taken just before the first write and the error
    is re-raised.

    Args:
        workbook (Workbook): Workbook backing the store.
        ops (Sequence[WriteOp]): Writes to apply in order.

    Raises:
        BatchWriteError: If validation rejects the batch. Nothing is written.
        StaleDocumentError: If a document no longer holds an expected value.
    """

    if not ops:
        return

    _validate_batch(workbook, ops)

    touched = {Collection(op.collection).value for op in ops}
    snapshots = {name: _snapshot_sheet(workbook[name]) for name in touched}
    try:
        for op in ops:
            _apply_write(workbook, op)
    except Exception:
        log.error("Batch write failed midway; restoring %s", ", ".join(sorted(touched)))
        for name, rows in snapshots.items():
            _restore_sheet(workbook[name], rows)
        raise

    log.debug("Committed batch of %d writes across %s", len(ops), ", ".join(sorted(touched)))


def _validate_batch(workbook: Workbook, ops: Sequence[WriteOp]) -> None:
    existence: Dict[Tuple[str, str], bool] = {}
    for op in ops:
        sheet_name = Collection(op.collection).value
        if sheet_name not in workbook.sheetnames:
            raise BatchWriteError(f"Unknown collection: {sheet_name}")
        columns = header_map(workbook[sheet_name])
        unknown = sorted(set(op.data) - set(columns))
        if unknown:
            raise BatchWriteError(f"Unknown {sheet_name} fields: {', '.join(unknown)}")

        key = (sheet_name, op.doc_id)
        if key not in existence:
            existence[key] = locate_row(workbook, sheet_name, ID_COLUMNS[sheet_name], op.doc_id) is not None
        if op.kind in (WriteKind.UPDATE, WriteKind.DELETE) and not existence[key]:
            raise BatchWriteError(f"Document not found: {sheet_name}/{op.doc_id}")

        if op.expected:
            current = get_document(workbook, op.collection, op.doc_id) or {}
            for field_name, expected_value in op.expected.items():
                if current.get(field_name) != expected_value:
                    log.warning(
                        "Stale write rejected for %s/%s: %s is %r, expected %r",
                        sheet_name,
                        op.doc_id,
                        field_name,
                        current.get(field_name),
                        expected_value,
                    )
                    raise StaleDocumentError(
                        f"{sheet_name}/{op.doc_id} changed since it was read ({field_name})"
                    )

        existence[key] = op.kind is not WriteKind.DELETE


def _apply_write(workbook: Workbook, op: WriteOp) -> None:
    sheet_name = Collection(op.collection).value
    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    id_column = ID_COLUMNS[sheet_name]
    row_index = locate_row(workbook, sheet_name, id_column, op.doc_id)

    if op.kind is WriteKind.DELETE:
        sheet.delete_rows(row_index)
        return

    if op.kind is WriteKind.SET:
        values = dict(op.data)
        values[id_column] = op.doc_id
        if row_index is None:
            sheet.append([_encode_cell(values.get(name)) for name in columns])
            return
        for name, col in columns.items():
            sheet.cell(row=row_index, column=col, value=_encode_cell(values.get(name)))
        return

    for name, value in op.data.items():
        sheet.cell(row=row_index, column=columns[name], value=_encode_cell(value))


def _snapshot_sheet(sheet: Worksheet) -> List[Tuple[Any, ...]]:
    return [tuple(row) for row in sheet.iter_rows(min_row=2, values_only=True)]


def _restore_sheet(sheet: Worksheet, rows: Iterable[Tuple[Any, ...]]) -> None:
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row in rows:
        sheet.append(list(row))


def _encode_cell(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value)
    return value


def _read_document(columns: Mapping[str, int], raw: Sequence[Any]) -> Dict[str, Any]:
    document: Dict[str, Any] = {}
    for name, col in columns.items():
        value = raw[col - 1] if col - 1 < len(raw) else None
        if name in JSON_FIELDS and isinstance(value, str):
            value = json.loads(value)
        document[name] = value
    return document


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product documents as typed :class:`ProductRow` records."""

    for document in query_documents(workbook, Collection.PRODUCTS):
        yield deserialize_product(document)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Iterate over invoice documents, trashed ones included."""

    for document in query_documents(workbook, Collection.INVOICES):
        yield deserialize_invoice(document)


def iter_activity(workbook: Workbook) -> Iterable[ActivityLogRow]:
    """Iterate over the activity log in insertion order."""

    for document in query_documents(workbook, Collection.ACTIVITY_LOG):
        yield deserialize_activity(document)


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    """Convert a product dataclass into a ``Products`` document.

    Args:
        record (ProductRow): Structured product data to transform.

    Returns:
        dict[str, Any]: Field mapping keyed by the worksheet headers.
    """

    return {
        "ProductID": record.product_id,
        "Name": record.name,
        "SKU": record.sku,
        "Category": record.category,
        "Price": record.price,
        "PurchasePrice": record.purchase_price,
        "Quantity": record.quantity,
        "OnHand": record.on_hand,
        "InitialStock": record.initial_stock,
        "ShortDescription": record.short_description,
        "CreatedAt": record.created_at,
        "UpdatedAt": record.updated_at,
    }


def serialize_invoice_item(item: InvoiceItem) -> Dict[str, Any]:
    """Convert an invoice line into the JSON shape stored in ``Items``.

    Decimal values are written as strings so the JSON text keeps their exact
    representation.
    """

    return {
        "productId": item.product_id,
        "name": item.name,
        "sku": item.sku,
        "price": str(item.price),
        "quantity": item.quantity,
        "purchasePrice": str(item.purchase_price) if item.purchase_price is not None else None,
        "discount": str(item.discount),
    }


def serialize_invoice(record: InvoiceRow) -> Dict[str, Any]:
    """Convert an invoice dataclass into an ``Invoices`` document.

    Args:
        record (InvoiceRow): Structured invoice data to transform.

    Returns:
        dict[str, Any]: Field mapping keyed by the worksheet headers with the
            customer, items and item ids as JSON-ready structures.
    """

    return {
        "InvoiceID": record.invoice_id,
        "Number": record.number,
        "Date": record.date,
        "InvoiceType": record.invoice_type,
        "Status": record.status,
        "Customer": {
            "name": record.customer.name,
            "email": record.customer.email,
            "address": record.customer.address,
            "phone": record.customer.phone,
        },
        "Items": [serialize_invoice_item(item) for item in record.items],
        "ItemsIds": list(record.items_ids),
        "Subtotal": record.subtotal,
        "Discount": record.discount,
        "DiscountPercentage": record.discount_percentage,
        "Total": record.total,
        "DeletedAt": record.deleted_at,
        "CreatedAt": record.created_at,
        "UpdatedAt": record.updated_at,
    }


def serialize_activity(record: ActivityLogRow) -> Dict[str, Any]:
    """Convert an activity entry into an ``ActivityLog`` document."""

    return {
        "LogID": record.log_id,
        "Message": record.message,
        "UserID": record.user_id,
        "UserEmail": record.user_email,
        "Timestamp": record.timestamp_iso,
    }


def deserialize_product(document: Mapping[str, Any]) -> ProductRow:
    """Convert a ``Products`` document into a strongly typed record.

    Numeric cells come back from Excel as ``int`` or ``float``; they are
    normalized to ``int`` stock counts and :class:`~decimal.Decimal` prices.
    Identifier and text fields are coerced to ``str``.

    Args:
        document (Mapping[str, Any]): Raw document from the store.

    Returns:
        ProductRow: Dataclass with consistent Python representations.
    """

    return ProductRow(
        product_id=str(document["ProductID"]),
        name=_to_str(document.get("Name")),
        sku=_to_str(document.get("SKU")),
        category=_to_str(document.get("Category")),
        price=_to_decimal(document.get("Price")),
        purchase_price=_to_optional_decimal(document.get("PurchasePrice")),
        quantity=_to_int(document.get("Quantity")),
        on_hand=_to_int(document.get("OnHand")),
        initial_stock=_to_optional_int(document.get("InitialStock")),
        short_description=_to_str(document.get("ShortDescription")),
        created_at=_to_optional_str(document.get("CreatedAt")),
        updated_at=_to_optional_str(document.get("UpdatedAt")),
    )


def deserialize_invoice_item(raw: Mapping[str, Any]) -> InvoiceItem:
    """Convert one JSON line from ``Items`` into an :class:`InvoiceItem`."""

    return InvoiceItem(
        product_id=str(raw["productId"]),
        name=_to_str(raw.get("name")),
        sku=_to_str(raw.get("sku")),
        price=_to_decimal(raw.get("price")),
        quantity=_to_int(raw.get("quantity")),
        purchase_price=_to_optional_decimal(raw.get("purchasePrice")),
        discount=_to_decimal(raw.get("discount")),
    )


def deserialize_invoice(document: Mapping[str, Any]) -> InvoiceRow:
    """Convert an ``Invoices`` document into a strongly typed record.

    Invoices written before the type field existed default to ``sale``.
    ``ItemsIds`` is rebuilt from the lines when the stored list is missing.

    Args:
        document (Mapping[str, Any]): Raw document from the store with JSON
            fields already decoded.

    Returns:
        InvoiceRow: Dataclass reflecting the document contents.
    """

    customer_raw = document.get("Customer") or {}
    items = tuple(deserialize_invoice_item(raw) for raw in document.get("Items") or [])
    items_ids = document.get("ItemsIds")
    if items_ids is None:
        items_ids = [item.product_id for item in items]

    return InvoiceRow(
        invoice_id=str(document["InvoiceID"]),
        number=_to_str(document.get("Number")),
        date=_to_str(document.get("Date")),
        invoice_type=_to_str(document.get("InvoiceType")) or InvoiceType.SALE.value,
        status=_to_str(document.get("Status")),
        customer=CustomerInfo(
            name=_to_str(customer_raw.get("name")),
            email=_to_str(customer_raw.get("email")),
            address=_to_str(customer_raw.get("address")),
            phone=_to_optional_str(customer_raw.get("phone")),
        ),
        items=items,
        items_ids=tuple(str(product_id) for product_id in items_ids),
        subtotal=_to_decimal(document.get("Subtotal")),
        discount=_to_decimal(document.get("Discount")),
        discount_percentage=_to_decimal(document.get("DiscountPercentage")),
        total=_to_decimal(document.get("Total")),
        deleted_at=_to_optional_str(document.get("DeletedAt")),
        created_at=_to_optional_str(document.get("CreatedAt")),
        updated_at=_to_optional_str(document.get("UpdatedAt")),
    )


def deserialize_activity(document: Mapping[str, Any]) -> ActivityLogRow:
    """Convert an ``ActivityLog`` document into a typed record."""

    return ActivityLogRow(
        log_id=str(document["LogID"]),
        message=_to_str(document.get("Message")),
        user_id=_to_optional_str(document.get("UserID")),
        user_email=_to_str(document.get("UserEmail")),
        timestamp_iso=_to_str(document.get("Timestamp")),
    )


def _to_str(raw: Any) -> str:
    return str(raw) if raw is not None else ""


def _to_optional_str(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _to_decimal(raw: Any, default: Decimal = Decimal("0")) -> Decimal:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _to_optional_decimal(raw: Any) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw))


def _to_int(raw: Any, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_optional_int(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    return int(Decimal(str(raw)))
