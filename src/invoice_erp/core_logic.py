"""Business logic layer for Invoice ERP.

This module is the single authority for stock-affecting invoice transitions.
Every create, edit, trash, restore or permanent delete is computed in memory
with the stock ledger primitives and then submitted to the Data Access Layer
(DAL) as one atomic batch holding the invoice document and every product
document it touches. Product stock writes carry the ``OnHand`` value they were
computed from, so a concurrent change rejects the batch instead of being
overwritten.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, invoicing, log, stock_ledger
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LIFECYCLE_INVOICE_TYPES,
    Collection,
    EffectDirection,
    InvoiceStatus,
    InvoiceType,
)
from .data_manager import CustomerInfo, InvoiceItem, InvoiceRow, ProductRow, QueryFilter, WriteKind, WriteOp
from .errors import (
    BusinessRuleViolation,
    DuplicateInvoiceNumberError,
    DuplicateSkuError,
    InvalidStateError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    MissingReferenceError,
    NegativeStockError,
    ProductNotFoundError,
)


QueryCallback = Callable[[List[Dict[str, Any]]], None]


@dataclass(frozen=True)
class Actor:
    """Identity recorded on activity log entries."""

    user_id: Optional[str]
    user_email: str


@dataclass(frozen=True)
class Subscription:
    """Listener re-run after every commit that touches its collection."""

    collection: Collection
    filters: Tuple[QueryFilter, ...]
    callback: QueryCallback


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    actor: Optional[Actor] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _subscriptions: List[Subscription] = field(default_factory=list, repr=False, compare=False)


@dataclass(frozen=True)
class ProductCommand:
    """User intent for registering a new product."""

    name: str
    sku: str
    price: Decimal
    opening_stock: int = 0
    category: str = "Uncategorized"
    purchase_price: Optional[Decimal] = None
    short_description: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceLineCommand:
    """One requested invoice line; ``price`` overrides the product price."""

    product_id: str
    quantity: int
    discount: Decimal = Decimal("0")
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for creating an invoice."""

    number: str
    date: str
    customer: CustomerInfo
    items: Tuple[InvoiceLineCommand, ...]
    invoice_type: InvoiceType = InvoiceType.SALE
    discount_percentage: Decimal = Decimal("0")
    status: str = InvoiceStatus.SAVED.value
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceUpdateCommand:
    """User intent for editing an invoice; ``None`` keeps the stored value."""

    invoice_id: str
    number: Optional[str] = None
    date: Optional[str] = None
    customer: Optional[CustomerInfo] = None
    items: Optional[Tuple[InvoiceLineCommand, ...]] = None
    invoice_type: Optional[InvoiceType] = None
    discount_percentage: Optional[Decimal] = None
    status: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CreatedInvoice:
    """Identifiers handed back after a successful :func:`create_invoice`."""

    invoice_id: str
    number: str


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_document_id(prefix: str) -> str:
    """Generate an opaque document identifier such as ``INV-3f2a9c1b7d0e``."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory read caches keyed by domain area
    (products, invoices, activity). Buckets are plain dictionaries that are
    dropped whenever a commit touches the matching collection.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


_CACHE_BUCKETS: Mapping[Collection, str] = {
    Collection.PRODUCTS: "products",
    Collection.INVOICES: "invoices",
    Collection.ACTIVITY_LOG: "activity",
}


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, a ``by_id``
            lookup and a ``by_sku`` lookup keyed by the case-folded SKU.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        bucket["by_sku"] = {product.sku.casefold(): product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the invoice cache bucket on demand, trashed invoices included."""

    bucket = _get_cache_bucket(context, "invoices")
    if "all" not in bucket:
        all_invoices = list(data_manager.iter_invoices(context.workbook))
        bucket["all"] = all_invoices
        bucket["by_id"] = {invoice.invoice_id: invoice for invoice in all_invoices}
        log.debug(
            "Populated invoices cache with %d entries (%d trashed)",
            len(all_invoices),
            sum(1 for invoice in all_invoices if invoice.is_trashed),
        )
    return bucket


def load_runtime_context(config_path: Optional[Path] = None, *, actor: Optional[Actor] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        actor (Actor | None): Identity recorded on activity entries. Defaults
            to the ``[Defaults]`` user from the configuration.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, actor=actor)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, the same
            actor, an empty cache and no subscriptions.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, actor=context.actor)


def current_actor(context: RuntimeContext) -> Actor:
    """Return the acting user, falling back to the configured default."""

    if context.actor is not None:
        return context.actor
    return Actor(
        user_id=context.settings.default_user_id or None,
        user_email=context.settings.default_user_email or "Unknown User",
    )


def subscribe_to_query(
    context: RuntimeContext,
    collection: Collection,
    filters: Sequence[QueryFilter],
    callback: QueryCallback,
) -> Callable[[], None]:
    """Register ``callback`` to receive fresh results after relevant commits.

    The callback runs once immediately with the current results and again
    after every commit that writes to ``collection``.

    Returns:
        Callable[[], None]: Function removing the subscription.
    """

    subscription = Subscription(collection=Collection(collection), filters=tuple(filters), callback=callback)
    context._subscriptions.append(subscription)
    callback(data_manager.query_documents(context.workbook, subscription.collection, subscription.filters))

    def unsubscribe() -> None:
        if subscription in context._subscriptions:
            context._subscriptions.remove(subscription)

    return unsubscribe


def _notify_subscribers(context: RuntimeContext, collections: Iterable[Collection]) -> None:
    touched = set(collections)
    for subscription in list(context._subscriptions):
        if subscription.collection not in touched:
            continue
        results = data_manager.query_documents(context.workbook, subscription.collection, subscription.filters)
        try:
            subscription.callback(results)
        except Exception:  # listeners must not undo a committed batch
            log.exception("Subscriber for '%s' raised", subscription.collection.value)


def commit_batch(context: RuntimeContext, ops: Sequence[WriteOp]) -> None:
    """Submit ``ops`` as one atomic batch, then refresh caches and listeners."""

    data_manager.atomic_batch_write(context.workbook, ops)
    touched = {Collection(op.collection) for op in ops}
    _invalidate_cache(context, *(_CACHE_BUCKETS[collection] for collection in touched))
    _notify_subscribers(context, touched)


def _record_activity(context: RuntimeContext, message: str, timestamp: datetime) -> None:
    """Append a best-effort audit entry; failures are logged, not raised."""

    actor = current_actor(context)
    entry = data_manager.ActivityLogRow(
        log_id=generate_document_id("LOG"),
        message=message,
        user_id=actor.user_id,
        user_email=actor.user_email,
        timestamp_iso=timestamp.isoformat(),
    )
    op = WriteOp(WriteKind.SET, Collection.ACTIVITY_LOG, entry.log_id, data_manager.serialize_activity(entry))
    try:
        commit_batch(context, [op])
    except data_manager.BatchWriteError as exc:
        log.warning("Activity log entry dropped (%s): %s", exc, message)


def list_products(context: RuntimeContext) -> List[ProductRow]:
    """Return a copy of the cached product list in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        ProductNotFoundError: If ``product_id`` is absent from the store.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFoundError(product_id) from exc


def list_invoices(context: RuntimeContext, *, include_deleted: bool = False) -> List[InvoiceRow]:
    """Return invoices newest first, hiding trashed ones unless requested.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        include_deleted (bool): When ``True`` invoices currently in the trash
            are part of the result.

    Returns:
        list[InvoiceRow]: Invoices ordered by ``date`` descending; invoices
            sharing a date keep sheet order.
    """
    invoices = _ensure_invoices_cache(context)["all"]
    if not include_deleted:
        invoices = [invoice for invoice in invoices if not invoice.is_trashed]
    return sorted(invoices, key=lambda invoice: invoice.date, reverse=True)


def list_trashed_invoices(context: RuntimeContext) -> List[InvoiceRow]:
    """Return the invoices currently in the trash, newest first."""
    return [invoice for invoice in list_invoices(context, include_deleted=True) if invoice.is_trashed]


def get_invoice(context: RuntimeContext, invoice_id: str) -> InvoiceRow:
    """Resolve an invoice (active or trashed) by its identifier.

    Raises:
        InvoiceNotFoundError: If the identifier is unknown.
    """
    cache = _ensure_invoices_cache(context)
    try:
        return cache["by_id"][invoice_id]
    except KeyError as exc:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise InvoiceNotFoundError(f"Unknown invoice id: {invoice_id}") from exc


def list_activity(context: RuntimeContext) -> List[data_manager.ActivityLogRow]:
    """Return the activity log, newest entry first."""
    bucket = _get_cache_bucket(context, "activity")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_activity(context.workbook))
    return sorted(bucket["all"], key=lambda entry: entry.timestamp_iso, reverse=True)


def require_nonnegative_money(amount: Decimal, label: str = "Amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("%s validation failed: %s", label, amount)
        raise ValueError(f"{label} must be zero or positive")


def require_percentage(value: Decimal, label: str) -> None:
    """Validate that a discount percentage lies between 0 and 100.

    Raises:
        InvoiceValidationError: If ``value`` is outside the range.
    """
    if not Decimal("0") <= Decimal(value) <= Decimal("100"):
        log.error("%s validation failed: %s", label, value)
        raise InvoiceValidationError(f"{label} must be between 0 and 100")


def _coerce_lifecycle_type(value: Any) -> InvoiceType:
    try:
        invoice_type = stock_ledger.resolve_invoice_type(value)
    except ValueError as exc:
        raise InvoiceValidationError(f"Unknown invoice type: {value}") from exc
    if invoice_type not in LIFECYCLE_INVOICE_TYPES:
        log.error("Rejected lifecycle change for legacy invoice type '%s'", invoice_type.value)
        raise InvoiceValidationError(
            f"Invoice type '{invoice_type.value}' is read-only history and cannot be created or edited"
        )
    return invoice_type


def _validate_invoice_header(
    number: str,
    date_iso: str,
    customer: CustomerInfo,
    discount_percentage: Decimal,
) -> date:
    """Check the invoice-level fields and return the parsed invoice date."""

    if not number or not number.strip():
        raise InvoiceValidationError("Invoice number is required")
    try:
        invoice_date = date.fromisoformat(date_iso)
    except (TypeError, ValueError) as exc:
        raise InvoiceValidationError(f"Invoice date must be an ISO date: {date_iso!r}") from exc
    if not customer.name.strip():
        raise InvoiceValidationError("Please enter customer name")
    require_percentage(discount_percentage, "Discount percentage")
    return invoice_date


def _validate_lines(lines: Sequence[InvoiceLineCommand], invoice_type: InvoiceType) -> None:
    """Check requested lines before any product is read.

    Raises:
        InvoiceValidationError: If there are no lines, a quantity is zero or
            not an integer, a decrementing line is negative, or a discount or
            price is out of range.
    """

    if not lines:
        raise InvoiceValidationError("Please add at least one item to the invoice")
    decrementing = stock_ledger.effect_direction(invoice_type) is EffectDirection.DECREMENT
    for line in lines:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity == 0:
            raise InvoiceValidationError(
                f"Quantity for product '{line.product_id}' must be a non-zero integer"
            )
        if decrementing and line.quantity < 0:
            raise InvoiceValidationError(
                f"Quantity for product '{line.product_id}' must be positive on '{invoice_type.value}' invoices"
            )
        require_percentage(line.discount, f"Discount for product '{line.product_id}'")
        if line.price is not None and line.price < Decimal("0"):
            raise InvoiceValidationError(f"Price for product '{line.product_id}' must be zero or positive")


def _ensure_unique_number(
    context: RuntimeContext,
    number: str,
    invoice_type: InvoiceType,
    invoice_date: date,
    *,
    exclude_id: Optional[str] = None,
) -> None:
    """Reject ``number`` when another invoice of the type uses it that year.

    Trashed invoices keep their number reserved until permanently deleted.

    Raises:
        DuplicateInvoiceNumberError: On a collision.
    """

    year = invoice_date.year
    clashes = data_manager.query_documents(
        context.workbook,
        Collection.INVOICES,
        [
            QueryFilter("Number", "==", number),
            QueryFilter("InvoiceType", "==", invoice_type.value),
            QueryFilter("Date", ">=", f"{year:04d}-01-01"),
            QueryFilter("Date", "<", f"{year + 1:04d}-01-01"),
        ],
    )
    if any(document["InvoiceID"] != exclude_id for document in clashes):
        log.error("Duplicate invoice number '%s' (%s, %d)", number, invoice_type.value, year)
        raise DuplicateInvoiceNumberError(number, invoice_type.value, year)


def _load_invoice(context: RuntimeContext, invoice_id: str) -> InvoiceRow:
    """Read an invoice straight from the store, bypassing the read cache."""

    document = data_manager.get_document(context.workbook, Collection.INVOICES, invoice_id)
    if document is None:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise InvoiceNotFoundError(f"Unknown invoice id: {invoice_id}")
    return data_manager.deserialize_invoice(document)


def _load_products(context: RuntimeContext, product_ids: Iterable[str]) -> Dict[str, ProductRow]:
    """Read the current state of each existing product among ``product_ids``.

    Missing products are left out; the ledger raises
    :class:`ProductNotFoundError` when a line needs one of them.
    """

    products: Dict[str, ProductRow] = {}
    for product_id in dict.fromkeys(product_ids):
        document = data_manager.get_document(context.workbook, Collection.PRODUCTS, product_id)
        if document is not None:
            products[product_id] = data_manager.deserialize_product(document)
    return products


def _build_items(
    lines: Sequence[InvoiceLineCommand],
    products: Mapping[str, ProductRow],
    invoice_type: InvoiceType,
) -> Tuple[InvoiceItem, ...]:
    """Snapshot product details onto each requested line.

    Raises:
        ProductNotFoundError: If a requested product does not exist.
    """

    items: List[InvoiceItem] = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            log.warning("Invoice line references unknown product '%s'", line.product_id)
            raise ProductNotFoundError(line.product_id)
        items.append(
            InvoiceItem(
                product_id=product.product_id,
                name=product.name,
                sku=product.sku,
                price=line.price if line.price is not None else product.price,
                quantity=stock_ledger.normalize_quantity(invoice_type, line.quantity),
                purchase_price=product.purchase_price,
                discount=Decimal(line.discount),
            )
        )
    return tuple(items)


def _stock_writes(
    balances: Mapping[str, int],
    products: Mapping[str, ProductRow],
    timestamp: datetime,
) -> List[WriteOp]:
    """Turn changed balances into compare-and-swap product updates."""

    return [
        WriteOp(
            WriteKind.UPDATE,
            Collection.PRODUCTS,
            product_id,
            {"OnHand": balance, "UpdatedAt": timestamp.isoformat()},
            expected={"OnHand": products[product_id].on_hand},
        )
        for product_id, balance in stock_ledger.changed_balances(balances, products).items()
    ]


def create_invoice(context: RuntimeContext, command: InvoiceCommand) -> CreatedInvoice:
    """Validate an invoice, apply its stock effect and store it atomically.

    The workflow validates the header and lines, rejects a number already
    used for the same type within the invoice year, snapshots product
    details onto each line, and applies every line's effect against the
    products' current ``OnHand``. The invoice document and all product
    updates are committed as one batch.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (InvoiceCommand): Structured intent describing the invoice.

    Returns:
        CreatedInvoice: Identifier and business number of the new invoice.

    Raises:
        InvoiceValidationError: If required fields are missing or malformed.
        DuplicateInvoiceNumberError: If the number is already taken.
        ProductNotFoundError: If a line references an unknown product.
        NegativeStockError: If a decrementing line would drive stock below
            zero.
    """
    invoice_type = _coerce_lifecycle_type(command.invoice_type)
    number = (command.number or "").strip()
    invoice_date = _validate_invoice_header(number, command.date, command.customer, command.discount_percentage)
    _validate_lines(command.items, invoice_type)
    _ensure_unique_number(context, number, invoice_type, invoice_date)

    timestamp = _resolve_timestamp(command.timestamp)
    products = _load_products(context, (line.product_id for line in command.items))
    items = _build_items(command.items, products, invoice_type)
    balances = stock_ledger.apply_invoice(invoice_type, items, {}, products)
    totals = invoicing.calculate_invoice_totals(items, command.discount_percentage)

    invoice = InvoiceRow(
        invoice_id=generate_document_id("INV"),
        number=number,
        date=command.date,
        invoice_type=invoice_type.value,
        status=command.status,
        customer=command.customer,
        items=items,
        items_ids=tuple(dict.fromkeys(item.product_id for item in items)),
        subtotal=totals.subtotal,
        discount=totals.discount,
        discount_percentage=Decimal(command.discount_percentage),
        total=totals.total,
        deleted_at=None,
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
    )
    ops = [WriteOp(WriteKind.SET, Collection.INVOICES, invoice.invoice_id, data_manager.serialize_invoice(invoice))]
    ops.extend(_stock_writes(balances, products, timestamp))
    commit_batch(context, ops)
    log.info(
        "Created %s invoice '%s' (%s) with %d lines, total=%s",
        invoice.invoice_type,
        invoice.number,
        invoice.invoice_id,
        len(items),
        invoice.total,
    )
    _record_activity(context, f"New invoice {invoice.number} created by {current_actor(context).user_email}", timestamp)
    return CreatedInvoice(invoice_id=invoice.invoice_id, number=invoice.number)


def update_invoice(context: RuntimeContext, command: InvoiceUpdateCommand) -> InvoiceRow:
    """Edit an active invoice, moving stock from its old lines to its new ones.

    When the lines or the type change, the complete stored line set is
    reversed against its products first and the complete new line set is
    then applied against the balances left by that reversal. Both steps land
    in the same batch, so lines may be added, removed or moved to another
    product without per-line delta bookkeeping. Totals are always
    recomputed.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (InvoiceUpdateCommand): Fields to replace; ``None`` keeps the
            stored value.

    Returns:
        InvoiceRow: The invoice as stored after the edit.

    Raises:
        InvoiceNotFoundError: If the invoice does not exist.
        InvalidStateError: If the invoice is in the trash.
        InvoiceValidationError: If the merged invoice is invalid, or its lines
            or type change while either type is read-only history.
        DuplicateInvoiceNumberError: If a changed number, type or year
            collides with another invoice.
        ProductNotFoundError: If an old or new line's product is missing.
        NegativeStockError: If the new lines would drive stock below zero.
    """
    existing = _load_invoice(context, command.invoice_id)
    if existing.is_trashed:
        log.error("Attempted edit of trashed invoice '%s'", existing.number)
        raise InvalidStateError(f"Invoice {existing.number} is in the trash and cannot be edited")

    old_type = stock_ledger.resolve_invoice_type(existing.invoice_type)
    if command.items is None and command.invoice_type in (None, old_type):
        # Header-only edit: no stock moves, read-only history types included.
        new_type = old_type
    else:
        new_type = _coerce_lifecycle_type(command.invoice_type if command.invoice_type is not None else old_type)
    number = command.number.strip() if command.number is not None else existing.number
    date_iso = command.date if command.date is not None else existing.date
    customer = command.customer if command.customer is not None else existing.customer
    discount_percentage = (
        command.discount_percentage if command.discount_percentage is not None else existing.discount_percentage
    )
    invoice_date = _validate_invoice_header(number, date_iso, customer, discount_percentage)
    if command.items is not None:
        _validate_lines(command.items, new_type)

    if (number, new_type, date_iso[:4]) != (existing.number, old_type, existing.date[:4]):
        _ensure_unique_number(context, number, new_type, invoice_date, exclude_id=existing.invoice_id)

    timestamp = _resolve_timestamp(command.timestamp)
    new_line_ids = [line.product_id for line in command.items] if command.items is not None else []
    products = _load_products(context, [*(item.product_id for item in existing.items), *new_line_ids])

    if command.items is not None:
        items = _build_items(command.items, products, new_type)
    elif new_type is old_type:
        items = existing.items
    else:
        items = tuple(
            replace(item, quantity=stock_ledger.normalize_quantity(new_type, abs(item.quantity)))
            for item in existing.items
        )

    balances: Dict[str, int] = {}
    if command.items is not None or new_type is not old_type:
        stock_ledger.reverse_invoice(old_type, existing.items, balances, products)
        stock_ledger.apply_invoice(new_type, items, balances, products)
    totals = invoicing.calculate_invoice_totals(items, discount_percentage)

    updated = replace(
        existing,
        number=number,
        date=date_iso,
        invoice_type=new_type.value,
        status=command.status if command.status is not None else existing.status,
        customer=customer,
        items=items,
        items_ids=tuple(dict.fromkeys(item.product_id for item in items)),
        subtotal=totals.subtotal,
        discount=totals.discount,
        discount_percentage=Decimal(discount_percentage),
        total=totals.total,
        updated_at=timestamp.isoformat(),
    )
    ops = [WriteOp(WriteKind.SET, Collection.INVOICES, updated.invoice_id, data_manager.serialize_invoice(updated))]
    ops.extend(_stock_writes(balances, products, timestamp))
    commit_batch(context, ops)
    log.info(
        "Updated invoice '%s' (%s): %d lines, %d products restocked",
        updated.number,
        updated.invoice_id,
        len(items),
        len(ops) - 1,
    )
    _record_activity(context, f"Invoice {updated.number} updated by {current_actor(context).user_email}", timestamp)
    return updated


def soft_delete_invoice(context: RuntimeContext, invoice_id: str, *, timestamp: Optional[datetime] = None) -> InvoiceRow:
    """Move an invoice to the trash and reverse its stock effect.

    Raises:
        InvoiceNotFoundError: If the invoice does not exist.
        InvalidStateError: If the invoice is already in the trash.
        ProductNotFoundError: If a line's product no longer exists.
        NegativeStockError: If undoing the invoice would drive a product below
            zero.
    """
    invoice = _load_invoice(context, invoice_id)
    if invoice.is_trashed:
        log.error("Invoice '%s' is already in trash", invoice.number)
        raise InvalidStateError(f"Invoice {invoice.number} is already in trash")

    moment = _resolve_timestamp(timestamp)
    trashed = _trash_invoices(context, [invoice], moment)[0]
    log.info("Moved invoice '%s' (%s) to trash", invoice.number, invoice.invoice_id)
    _record_activity(context, f"Invoice {invoice.number} moved to trash by {current_actor(context).user_email}", moment)
    return trashed


def restore_invoice(context: RuntimeContext, invoice_id: str, *, timestamp: Optional[datetime] = None) -> InvoiceRow:
    """Bring an invoice back from the trash and re-apply its stock effect.

    Raises:
        InvoiceNotFoundError: If the invoice does not exist.
        InvalidStateError: If the invoice is not in the trash.
        ProductNotFoundError: If a line's product no longer exists.
        NegativeStockError: If there is no longer enough stock for the
            invoice.
    """
    invoice = _load_invoice(context, invoice_id)
    if not invoice.is_trashed:
        log.error("Invoice '%s' is not in trash", invoice.number)
        raise InvalidStateError(f"Invoice {invoice.number} is not in trash")

    moment = _resolve_timestamp(timestamp)
    products = _load_products(context, (item.product_id for item in invoice.items))
    balances = stock_ledger.apply_invoice(invoice.invoice_type, invoice.items, {}, products)
    ops = [
        WriteOp(
            WriteKind.UPDATE,
            Collection.INVOICES,
            invoice.invoice_id,
            {"DeletedAt": None, "UpdatedAt": moment.isoformat()},
        )
    ]
    ops.extend(_stock_writes(balances, products, moment))
    commit_batch(context, ops)
    log.info("Restored invoice '%s' (%s) from trash", invoice.number, invoice.invoice_id)
    _record_activity(context, f"Invoice {invoice.number} restored by {current_actor(context).user_email}", moment)
    return replace(invoice, deleted_at=None, updated_at=moment.isoformat())


def permanently_delete_invoice(context: RuntimeContext, invoice_id: str, *, timestamp: Optional[datetime] = None) -> None:
    """Remove a trashed invoice for good.

    Stock is left alone: the invoice's effect was already reversed when it
    was moved to the trash.

    Raises:
        InvoiceNotFoundError: If the invoice does not exist.
        InvalidStateError: If the invoice is not in the trash.
    """
    invoice = _load_invoice(context, invoice_id)
    if not invoice.is_trashed:
        log.error("Refusing to permanently delete active invoice '%s'", invoice.number)
        raise InvalidStateError(f"Invoice {invoice.number} is not in trash. Please move to trash first.")

    moment = _resolve_timestamp(timestamp)
    commit_batch(context, [WriteOp(WriteKind.DELETE, Collection.INVOICES, invoice.invoice_id)])
    log.info("Permanently deleted invoice '%s' (%s)", invoice.number, invoice.invoice_id)
    _record_activity(
        context, f"Invoice {invoice.number} permanently deleted by {current_actor(context).user_email}", moment
    )


def _trash_invoices(context: RuntimeContext, invoices: Sequence[InvoiceRow], moment: datetime) -> List[InvoiceRow]:
    """Reverse and trash ``invoices`` in a single batch.

    Balances run across the invoices, so two invoices touching the same
    product are reversed cumulatively.
    """

    products = _load_products(context, (item.product_id for invoice in invoices for item in invoice.items))
    balances: Dict[str, int] = {}
    ops: List[WriteOp] = []
    for invoice in invoices:
        stock_ledger.reverse_invoice(invoice.invoice_type, invoice.items, balances, products)
        ops.append(
            WriteOp(
                WriteKind.UPDATE,
                Collection.INVOICES,
                invoice.invoice_id,
                {"DeletedAt": moment.isoformat(), "UpdatedAt": moment.isoformat()},
            )
        )
    ops.extend(_stock_writes(balances, products, moment))
    commit_batch(context, ops)
    return [replace(invoice, deleted_at=moment.isoformat(), updated_at=moment.isoformat()) for invoice in invoices]


def bulk_soft_delete_invoices(
    context: RuntimeContext,
    invoice_ids: Iterable[str],
    *,
    timestamp: Optional[datetime] = None,
) -> List[InvoiceRow]:
    """Move several invoices to the trash in one atomic batch.

    Unknown identifiers and invoices already in the trash are skipped with a
    warning. Any other failure (missing product, negative stock) aborts the
    whole batch.

    Returns:
        list[InvoiceRow]: The invoices that were trashed.
    """
    selected: List[InvoiceRow] = []
    for invoice_id in dict.fromkeys(invoice_ids):
        document = data_manager.get_document(context.workbook, Collection.INVOICES, invoice_id)
        if document is None:
            log.warning("Invoice %s not found for bulk deletion", invoice_id)
            continue
        invoice = data_manager.deserialize_invoice(document)
        if invoice.is_trashed:
            log.warning("Invoice %s is already in trash, skipping", invoice_id)
            continue
        selected.append(invoice)

    if not selected:
        return []

    moment = _resolve_timestamp(timestamp)
    trashed = _trash_invoices(context, selected, moment)
    log.info("Moved %d invoices to trash", len(trashed))
    _record_activity(context, f"Bulk invoices moved to trash by {current_actor(context).user_email}", moment)
    return trashed


def delete_all_invoices(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> List[InvoiceRow]:
    """Move every active invoice to the trash in one atomic batch."""
    active = [invoice for invoice in data_manager.iter_invoices(context.workbook) if not invoice.is_trashed]
    if not active:
        return []

    moment = _resolve_timestamp(timestamp)
    trashed = _trash_invoices(context, active, moment)
    log.info("Moved all %d active invoices to trash", len(trashed))
    _record_activity(context, f"All invoices moved to trash by {current_actor(context).user_email}", moment)
    return trashed


def clear_all_data(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> Tuple[int, int]:
    """Delete every invoice and product in one atomic batch.

    The stock effect of each active invoice is reversed before the documents
    are removed, exactly as trashing would. Lines whose product is already
    gone are skipped.

    Returns:
        tuple[int, int]: Number of invoices and products removed.
    """
    invoices = list(data_manager.iter_invoices(context.workbook))
    products = {product.product_id: product for product in data_manager.iter_products(context.workbook)}
    moment = _resolve_timestamp(timestamp)

    balances: Dict[str, int] = {}
    for invoice in invoices:
        if invoice.is_trashed:
            continue
        present = [item for item in invoice.items if item.product_id in products]
        if len(present) != len(invoice.items):
            log.warning("Invoice %s references deleted products; skipping their reversal", invoice.number)
        stock_ledger.reverse_invoice(invoice.invoice_type, present, balances, products)

    ops = _stock_writes(balances, products, moment)
    ops.extend(WriteOp(WriteKind.DELETE, Collection.INVOICES, invoice.invoice_id) for invoice in invoices)
    ops.extend(WriteOp(WriteKind.DELETE, Collection.PRODUCTS, product_id) for product_id in products)
    commit_batch(context, ops)
    log.info("Cleared %d invoices and %d products", len(invoices), len(products))
    _record_activity(context, f"All data cleared by {current_actor(context).user_email}", moment)
    return len(invoices), len(products)


def next_invoice_number(context: RuntimeContext, invoice_type: InvoiceType, *, today: Optional[date] = None) -> str:
    """Suggest the next business number for ``invoice_type``.

    Invoices of every type share the regular ``NNN/YY`` series except
    ``cash`` invoices, which run their own ``CASH NNN/YY`` series. Trashed
    invoices count, since they keep their number reserved.
    """
    today = today or datetime.now(UTC).date()
    year_short = f"{today.year % 100:02d}"
    prefix = invoicing.numbering_prefix(InvoiceType(invoice_type))

    latest: Optional[str] = None
    highest = 0
    for invoice in _ensure_invoices_cache(context)["all"]:
        parsed = invoicing.parse_invoice_number(invoice.number)
        if parsed is None or parsed.prefix != prefix or parsed.year != year_short:
            continue
        if parsed.sequential > highest:
            highest = parsed.sequential
            latest = invoice.number
    return invoicing.generate_next_invoice_number(latest, year_short, prefix)


def add_product(context: RuntimeContext, command: ProductCommand) -> ProductRow:
    """Register a product with its opening stock.

    ``OnHand``, ``Quantity`` and ``InitialStock`` all start at
    ``opening_stock``; ``InitialStock`` then serves as the reconciliation
    anchor.

    Raises:
        ValueError: If the name or SKU is blank, or a price or the opening
            stock is negative.
        DuplicateSkuError: If another product already uses the SKU, compared
            case-insensitively.
    """
    if not command.name.strip() or not command.sku.strip():
        raise ValueError("Product name and SKU are required")
    require_nonnegative_money(command.price, "Price")
    if command.purchase_price is not None:
        require_nonnegative_money(command.purchase_price, "Purchase price")
    if command.opening_stock < 0:
        raise ValueError("Opening stock must be zero or positive")

    sku = command.sku.strip()
    if sku.casefold() in _ensure_products_cache(context)["by_sku"]:
        log.error("Duplicate SKU '%s' rejected", sku)
        raise DuplicateSkuError(f"SKU '{sku}' is already in use")

    timestamp = _resolve_timestamp(command.timestamp)
    product = ProductRow(
        product_id=generate_document_id("PRD"),
        name=command.name.strip(),
        sku=sku,
        category=command.category,
        price=command.price,
        purchase_price=command.purchase_price,
        quantity=command.opening_stock,
        on_hand=command.opening_stock,
        initial_stock=command.opening_stock,
        short_description=command.short_description,
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
    )
    commit_batch(
        context,
        [WriteOp(WriteKind.SET, Collection.PRODUCTS, product.product_id, data_manager.serialize_product(product))],
    )
    log.info("Added product '%s' (%s) with opening stock %d", product.name, product.product_id, product.on_hand)
    _record_activity(context, f'New product "{product.name}" added by {current_actor(context).user_email}', timestamp)
    return product


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    field_values: Mapping[str, Any],
    timestamp: Optional[datetime] = None,
) -> ProductRow:
    """Directly edit selected product fields.

    Direct edits bypass the stock ledger; changing ``OnHand`` here is the
    usual source of drift that reconciliation reports.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (str): Product to edit.
        field_values (Mapping[str, Any]): Column names mapped to new values.

    Returns:
        ProductRow: The product as stored after the edit.

    Raises:
        ProductNotFoundError: If the product does not exist.
        KeyError: If a field is unknown or is the identifier column.
        DuplicateSkuError: If a new SKU collides with another product.
    """
    current = get_product(context, product_id)
    columns = data_manager.SHEET_COLUMNS[Collection.PRODUCTS.value]
    for field_name in field_values:
        if field_name not in columns or field_name == "ProductID":
            raise KeyError(f"Unknown product field: {field_name}")

    new_sku = field_values.get("SKU")
    if new_sku is not None and str(new_sku).casefold() != current.sku.casefold():
        if str(new_sku).casefold() in _ensure_products_cache(context)["by_sku"]:
            log.error("Duplicate SKU '%s' rejected", new_sku)
            raise DuplicateSkuError(f"SKU '{new_sku}' is already in use")

    moment = _resolve_timestamp(timestamp)
    data = dict(field_values)
    data["UpdatedAt"] = moment.isoformat()
    commit_batch(context, [WriteOp(WriteKind.UPDATE, Collection.PRODUCTS, product_id, data)])
    if "OnHand" in field_values:
        log.warning("OnHand of product '%s' edited directly to %s", product_id, field_values["OnHand"])
    updated = get_product(context, product_id)
    _record_activity(context, f'Product "{updated.name}" updated by {current_actor(context).user_email}', moment)
    return updated


def delete_product(context: RuntimeContext, product_id: str, *, timestamp: Optional[datetime] = None) -> None:
    """Delete a product irreversibly.

    Raises:
        ProductNotFoundError: If the product does not exist.
    """
    product = get_product(context, product_id)
    moment = _resolve_timestamp(timestamp)
    commit_batch(context, [WriteOp(WriteKind.DELETE, Collection.PRODUCTS, product_id)])
    log.info("Deleted product '%s' (%s)", product.name, product_id)
    _record_activity(context, f"Product {product_id} deleted by {current_actor(context).user_email}", moment)


__all__ = [
    "Actor",
    "BusinessRuleViolation",
    "CreatedInvoice",
    "DuplicateInvoiceNumberError",
    "DuplicateSkuError",
    "InvalidStateError",
    "InvoiceCommand",
    "InvoiceLineCommand",
    "InvoiceNotFoundError",
    "InvoiceUpdateCommand",
    "InvoiceValidationError",
    "MissingReferenceError",
    "NegativeStockError",
    "ProductCommand",
    "ProductNotFoundError",
    "RuntimeContext",
    "add_product",
    "bulk_soft_delete_invoices",
    "clear_all_data",
    "commit_batch",
    "create_invoice",
    "delete_all_invoices",
    "delete_product",
    "ensure_schema_version",
    "get_invoice",
    "get_product",
    "list_activity",
    "list_invoices",
    "list_products",
    "list_trashed_invoices",
    "load_runtime_context",
    "next_invoice_number",
    "permanently_delete_invoice",
    "persist_context",
    "refresh_context",
    "restore_invoice",
    "soft_delete_invoice",
    "subscribe_to_query",
    "update_invoice",
    "update_product",
]
