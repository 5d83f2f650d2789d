"""Business logic layer for Shop Ledger.

This module contains the inventory costing and order engine. Every public
operation opens exactly one unit of work: purchases, sales and repairs read
the product rows they act on, validate, write their append-only records and
adjust stock inside that single locked scope, so either everything commits or
nothing does. Catalog maintenance and read models live here as well so callers
have one entry point.
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, ledger, log, stock
from .constants import COST_QUANTUM, EXPECTED_SCHEMA_VERSION, MONEY_QUANTUM, ZERO, DateRange
from .exceptions import BusinessRuleViolation, MissingReferenceError
from .stock import BasketInput
from .unit_of_work import unit_of_work

_RecordT = TypeVar("_RecordT")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for the configuration shared by every operation.

    The context deliberately holds no workbook: each operation loads its own
    copy under lock through :func:`~shop_ledger.unit_of_work.unit_of_work`.
    """

    settings: data_manager.ConfigSettings


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for receiving stock of one product."""

    product_id: str
    quantity: int
    cost_per_unit: Decimal
    purchase_date: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling a basket of products to a customer."""

    customer_id: str
    items: Sequence[BasketInput]
    sale_date: Optional[datetime] = None


@dataclass(frozen=True)
class RepairCommand:
    """User intent for recording a repair job and the parts it consumed."""

    customer_id: str
    description: str
    total_cost: Decimal
    used_parts: Sequence[BasketInput]
    repair_date: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseResult:
    """Committed purchase event plus the product as it stands afterwards."""

    record: data_manager.PurchaseRow
    product: data_manager.ProductRow


@dataclass(frozen=True)
class SaleAggregate:
    """A committed sale with its line items."""

    sale: data_manager.SaleRow
    items: Tuple[data_manager.SaleItemRow, ...]


@dataclass(frozen=True)
class RepairAggregate:
    """A committed repair with the parts it consumed."""

    repair: data_manager.RepairRow
    used_parts: Tuple[data_manager.UsedPartRow, ...]


@dataclass(frozen=True)
class CustomerHistory:
    """A customer together with their sales and repairs, newest first."""

    customer: data_manager.CustomerRow
    sales: Tuple[SaleAggregate, ...] = field(default_factory=tuple)
    repairs: Tuple[RepairAggregate, ...] = field(default_factory=tuple)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object. Naive values are taken to be UTC.

    Returns:
        datetime: ``candidate`` when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{suffix}``
            where the six character suffix keeps rows created within the same
            microsecond (for example sale items) distinct.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6].upper()}"


def _normalize_money(amount: Decimal, quantum: Decimal) -> Decimal:
    ledger.require_nonnegative_money(amount)
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings for the engine.

    Resolves ``config.ini``, parses settings and verifies the configured
    workbook exists. No workbook is kept open; see :class:`RuntimeContext`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if not settings.data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {settings.data_file}")
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings)


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


# ---------------------------------------------------------------------------
# Catalog maintenance
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    sale_price: Decimal,
    category_id: Optional[str] = None,
    unit_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Register a new product with no stock and a zero cost basis.

    Stock and average cost only ever change through purchases, sales and
    repairs.

    Raises:
        BusinessRuleViolation: If the id or the name is already taken.
        ValueError: If the id or name is blank or the price is negative.
    """
    if not product_id or not product_id.strip():
        raise ValueError("Product id is required")
    if not product_name or not product_name.strip():
        raise ValueError("Product name is required")
    sale_price = _normalize_money(sale_price, MONEY_QUANTUM)

    record = data_manager.ProductRow(
        product_id=product_id.strip(),
        product_name=product_name.strip(),
        sale_price=sale_price,
        quantity=0,
        average_cost=ZERO.quantize(COST_QUANTUM),
        category_id=category_id,
        unit_id=unit_id,
        created_at=_resolve_timestamp(None),
    )
    with unit_of_work(context.settings) as work:
        for existing in data_manager.iter_products(work.workbook):
            if existing.product_id == record.product_id:
                log.error("Duplicate product id '%s'", record.product_id)
                raise BusinessRuleViolation(f"Product id already exists: {record.product_id}")
            if existing.product_name.casefold() == record.product_name.casefold():
                log.error("Duplicate product name '%s'", record.product_name)
                raise BusinessRuleViolation(f"A product with this name already exists: {record.product_name}")
        data_manager.append_product(work.workbook, record)
    log.info("Added product '%s' (%s) at price %s", record.product_id, record.product_name, record.sale_price)
    return record


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    product_name: Optional[str] = None,
    sale_price: Optional[Decimal] = None,
    category_id: Optional[str] = None,
    unit_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Edit the descriptive fields of a product.

    Only name, price, category and unit can be edited; on-hand quantity and
    average cost are derived state and are not accepted here. A new price only
    affects sales recorded afterwards.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        BusinessRuleViolation: If the new name belongs to another product.
        ValueError: If the new name is blank or the new price is negative.
    """
    field_values: Dict[str, object] = {}
    if product_name is not None:
        if not product_name.strip():
            raise ValueError("Product name is required")
        field_values["ProductName"] = product_name.strip()
    if sale_price is not None:
        field_values["SalePrice"] = _normalize_money(sale_price, MONEY_QUANTUM)
    if category_id is not None:
        field_values["CategoryID"] = category_id
    if unit_id is not None:
        field_values["UnitID"] = unit_id

    with unit_of_work(context.settings) as work:
        current = _require_product(work.workbook, product_id)
        new_name = field_values.get("ProductName")
        if new_name is not None:
            for other in data_manager.iter_products(work.workbook):
                if other.product_id != product_id and other.product_name.casefold() == str(new_name).casefold():
                    log.error("Duplicate product name '%s'", new_name)
                    raise BusinessRuleViolation(f"A product with this name already exists: {new_name}")
        if field_values:
            data_manager.update_product(work.workbook, product_id, field_values=field_values)
        updated = data_manager.get_product(work.workbook, product_id) or current
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(field_values) or "none")
    return updated


def add_customer(
    context: RuntimeContext,
    *,
    customer_id: str,
    customer_name: str,
    phone: Optional[str] = None,
    address: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Register a customer that sales and repairs can reference.

    Raises:
        BusinessRuleViolation: If ``customer_id`` is already registered.
        ValueError: If the id or name is blank.
    """
    if not customer_id or not customer_id.strip():
        raise ValueError("Customer id is required")
    if not customer_name or not customer_name.strip():
        raise ValueError("Customer name is required")

    record = data_manager.CustomerRow(
        customer_id=customer_id.strip(),
        customer_name=customer_name.strip(),
        phone=phone or None,
        address=address or None,
        created_at=_resolve_timestamp(None),
    )
    with unit_of_work(context.settings) as work:
        if _find_customer(work.workbook, record.customer_id) is not None:
            log.error("Duplicate customer id '%s'", record.customer_id)
            raise BusinessRuleViolation(f"Customer id already exists: {record.customer_id}")
        data_manager.append_customer(work.workbook, record)
    log.info("Added customer '%s' (%s)", record.customer_id, record.customer_name)
    return record


def customer_exists(context: RuntimeContext, customer_id: str) -> bool:
    """Answer whether ``customer_id`` is registered."""
    with unit_of_work(context.settings, read_only=True) as work:
        return _find_customer(work.workbook, customer_id) is not None


# ---------------------------------------------------------------------------
# Engine operations
# ---------------------------------------------------------------------------


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> PurchaseResult:
    """Append a purchase event and fold it into the product's cost basis.

    The product row is read, the weighted average is recomputed from the
    pre-purchase quantity and cost, and both the purchase record and the new
    quantity/average are written in one unit of work.

    Args:
        context (RuntimeContext): Runtime context naming the workbook.
        command (PurchaseCommand): Structured purchase intent.

    Returns:
        PurchaseResult: The stored record and the updated product snapshot.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValueError: If quantity or cost validations fail.
        ConflictError: If the workbook stayed locked past the timeout.
        InternalError: If persistence failed; nothing was written.
    """
    ledger.require_positive_quantity(command.quantity)
    cost_per_unit = _normalize_money(command.cost_per_unit, COST_QUANTUM)
    created_at = _resolve_timestamp(None)
    purchase_date = _resolve_timestamp(command.purchase_date) if command.purchase_date else created_at

    with unit_of_work(context.settings) as work:
        product = _require_product(work.workbook, command.product_id)
        updated = ledger.apply_purchase(product, command.quantity, cost_per_unit)
        record = data_manager.PurchaseRow(
            purchase_id=generate_record_id(prefix="P", when=created_at),
            product_id=product.product_id,
            quantity=command.quantity,
            cost_per_unit=cost_per_unit,
            purchase_date=purchase_date,
            created_at=created_at,
        )
        data_manager.append_purchase(work.workbook, record)
        data_manager.update_product(
            work.workbook,
            product.product_id,
            field_values={"Quantity": updated.quantity, "AverageCost": updated.average_cost},
        )

    log.info(
        "Recorded purchase '%s' for product '%s' (quantity=%s, cost=%s): on hand %s -> %s, average cost %s -> %s",
        record.purchase_id,
        product.product_id,
        command.quantity,
        cost_per_unit,
        product.quantity,
        updated.quantity,
        product.average_cost,
        updated.average_cost,
    )
    return PurchaseResult(record=record, product=updated)


def create_sale(context: RuntimeContext, command: SaleCommand) -> SaleAggregate:
    """Validate, price, persist and fulfil a sale as one atomic operation.

    Steps, all inside one unit of work:

    1. the customer must exist, the basket must be non-empty, free of
       duplicates, and every product must exist;
    2. every line must be covered by the on-hand quantity;
    3. each line freezes the product's current sale price and average cost;
    4. the sale and its items are appended with derived totals;
    5. stock is decremented for every line.

    Any failure leaves the workbook untouched.

    Raises:
        MissingReferenceError: For an unknown customer or product.
        EmptyBasketError: If no items were supplied.
        DuplicateLineItemError: If a product appears on two lines.
        InsufficientStockError: Listing every short line.
        ValueError: If a line quantity is not a positive whole number.
        ConflictError: If the workbook stayed locked past the timeout.
        InternalError: If persistence failed; nothing was written.
    """
    basket = stock.build_basket(command.items)
    created_at = _resolve_timestamp(command.sale_date)

    with unit_of_work(context.settings) as work:
        workbook = work.workbook
        _require_customer(workbook, command.customer_id)
        stock.validate_basket_shape(basket)
        products = stock.load_basket_products(workbook, basket)
        stock.validate_stock(products, basket)

        sale_id = generate_record_id(prefix="S", when=created_at)
        items = tuple(
            data_manager.SaleItemRow(
                sale_item_id=generate_record_id(prefix="SI", when=created_at),
                sale_id=sale_id,
                product_id=line.product_id,
                quantity=line.quantity,
                price_at_time=products[line.product_id].sale_price,
                cost_at_time=products[line.product_id].average_cost,
            )
            for line in basket
        )
        sale = data_manager.SaleRow(
            sale_id=sale_id,
            customer_id=command.customer_id,
            total_amount=sum((ledger.line_total(item.quantity, item.price_at_time) for item in items), ZERO),
            total_cost=sum((ledger.line_total(item.quantity, item.cost_at_time) for item in items), ZERO),
            created_at=created_at,
        )
        data_manager.append_sale(workbook, sale)
        for item in items:
            data_manager.append_sale_item(workbook, item)
        for line in basket:
            _consume_stock(workbook, line)

    log.info(
        "Recorded sale '%s' for customer '%s' (%d line(s), amount=%s, cost=%s)",
        sale.sale_id,
        sale.customer_id,
        len(items),
        sale.total_amount,
        sale.total_cost,
    )
    return SaleAggregate(sale=sale, items=items)


def create_repair(context: RuntimeContext, command: RepairCommand) -> RepairAggregate:
    """Validate, cost, persist and consume parts for a repair atomically.

    Follows the same steps as :func:`create_sale`. Each part freezes only its
    average cost. ``total_cost`` is what the shop bills; ``parts_cost`` is
    derived from the parts and ``labor_cost = total_cost - parts_cost`` is
    stored as-is, negative when the job was billed below its parts cost.

    Raises:
        MissingReferenceError: For an unknown customer or product.
        EmptyBasketError: If no parts were supplied.
        DuplicateLineItemError: If a product appears on two lines.
        InsufficientStockError: Listing every short line.
        ValueError: If the description is blank, the billed total is not
            positive, or a part quantity is not a positive whole number.
        ConflictError: If the workbook stayed locked past the timeout.
        InternalError: If persistence failed; nothing was written.
    """
    if not command.description or not command.description.strip():
        raise ValueError("Job description is required")
    total_cost = _normalize_money(command.total_cost, MONEY_QUANTUM)
    if total_cost <= ZERO:
        log.error("Repair total validation failed: %s", command.total_cost)
        raise ValueError("Total cost must be positive")
    basket = stock.build_basket(command.used_parts)
    created_at = _resolve_timestamp(command.repair_date)

    with unit_of_work(context.settings) as work:
        workbook = work.workbook
        _require_customer(workbook, command.customer_id)
        stock.validate_basket_shape(basket)
        products = stock.load_basket_products(workbook, basket)
        stock.validate_stock(products, basket)

        repair_id = generate_record_id(prefix="R", when=created_at)
        used_parts = tuple(
            data_manager.UsedPartRow(
                used_part_id=generate_record_id(prefix="RP", when=created_at),
                repair_id=repair_id,
                product_id=line.product_id,
                quantity=line.quantity,
                cost_at_time=products[line.product_id].average_cost,
            )
            for line in basket
        )
        parts_cost = sum((ledger.line_total(part.quantity, part.cost_at_time) for part in used_parts), ZERO)
        repair = data_manager.RepairRow(
            repair_id=repair_id,
            customer_id=command.customer_id,
            description=command.description.strip(),
            total_cost=total_cost,
            parts_cost=parts_cost,
            labor_cost=total_cost - parts_cost,
            created_at=created_at,
        )
        data_manager.append_repair(workbook, repair)
        for part in used_parts:
            data_manager.append_used_part(workbook, part)
        for line in basket:
            _consume_stock(workbook, line)

    if repair.labor_cost < ZERO:
        log.warning(
            "Repair '%s' billed %s below its parts cost %s (labor %s)",
            repair.repair_id,
            repair.total_cost,
            repair.parts_cost,
            repair.labor_cost,
        )
    log.info(
        "Recorded repair '%s' for customer '%s' (%d part(s), total=%s, parts=%s, labor=%s)",
        repair.repair_id,
        repair.customer_id,
        len(used_parts),
        repair.total_cost,
        repair.parts_cost,
        repair.labor_cost,
    )
    return RepairAggregate(repair=repair, used_parts=used_parts)


def _consume_stock(workbook: Workbook, line: stock.BasketLine) -> data_manager.ProductRow:
    """Decrement one product by ``line.quantity`` only if enough is on hand.

    The row is re-read right before the write so the decrement is conditional
    on the quantity actually stored, not on an earlier snapshot.
    """
    product = _require_product(workbook, line.product_id)
    updated = ledger.apply_consumption(product, line.quantity)
    data_manager.update_product(workbook, product.product_id, field_values={"Quantity": updated.quantity})
    log.debug("Product '%s' on hand %s -> %s", product.product_id, product.quantity, updated.quantity)
    return updated


def _require_product(workbook: Workbook, product_id: str) -> data_manager.ProductRow:
    product = data_manager.get_product(workbook, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError("product", product_id)
    return product


def _find_customer(workbook: Workbook, customer_id: str) -> Optional[data_manager.CustomerRow]:
    for customer in data_manager.iter_customers(workbook):
        if customer.customer_id == customer_id:
            return customer
    return None


def _require_customer(workbook: Workbook, customer_id: str) -> data_manager.CustomerRow:
    customer = _find_customer(workbook, customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError("customer", customer_id)
    return customer


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    with unit_of_work(context.settings, read_only=True) as work:
        return list(data_manager.iter_products(work.workbook))


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        return _require_product(work.workbook, product_id)


def list_purchases(context: RuntimeContext, *, product_id: Optional[str] = None) -> List[data_manager.PurchaseRow]:
    """Return purchase records, newest purchase date first.

    Args:
        context (RuntimeContext): Runtime context naming the workbook.
        product_id (str | None): Restrict the history to one product.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        purchases = [
            purchase
            for purchase in data_manager.iter_purchases(work.workbook)
            if product_id is None or purchase.product_id == product_id
        ]
    purchases.sort(key=lambda purchase: purchase.purchase_date, reverse=True)
    return purchases


def list_sales(context: RuntimeContext, *, date_range: Optional[DateRange] = None) -> List[SaleAggregate]:
    """Return committed sales with their items, newest first."""
    with unit_of_work(context.settings, read_only=True) as work:
        sales = _collect_sales(work.workbook)
    return _filter_recent(sales, date_range, key=lambda aggregate: aggregate.sale.created_at)


def get_sale(context: RuntimeContext, sale_id: str) -> SaleAggregate:
    """Fetch one committed sale.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        for aggregate in _collect_sales(work.workbook):
            if aggregate.sale.sale_id == sale_id:
                return aggregate
    log.warning("Sale lookup failed for id '%s'", sale_id)
    raise MissingReferenceError("sale", sale_id)


def list_repairs(context: RuntimeContext, *, date_range: Optional[DateRange] = None) -> List[RepairAggregate]:
    """Return committed repairs with their parts, newest first."""
    with unit_of_work(context.settings, read_only=True) as work:
        repairs = _collect_repairs(work.workbook)
    return _filter_recent(repairs, date_range, key=lambda aggregate: aggregate.repair.created_at)


def get_repair(context: RuntimeContext, repair_id: str) -> RepairAggregate:
    """Fetch one committed repair.

    Raises:
        MissingReferenceError: If ``repair_id`` is unknown.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        for aggregate in _collect_repairs(work.workbook):
            if aggregate.repair.repair_id == repair_id:
                return aggregate
    log.warning("Repair lookup failed for id '%s'", repair_id)
    raise MissingReferenceError("repair", repair_id)


def get_customer_history(context: RuntimeContext, customer_id: str) -> CustomerHistory:
    """Return a customer with all of their sales and repairs, newest first.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        customer = _require_customer(work.workbook, customer_id)
        sales = [aggregate for aggregate in _collect_sales(work.workbook) if aggregate.sale.customer_id == customer_id]
        repairs = [
            aggregate for aggregate in _collect_repairs(work.workbook) if aggregate.repair.customer_id == customer_id
        ]
    sales.sort(key=lambda aggregate: aggregate.sale.created_at, reverse=True)
    repairs.sort(key=lambda aggregate: aggregate.repair.created_at, reverse=True)
    return CustomerHistory(customer=customer, sales=tuple(sales), repairs=tuple(repairs))


def calculate_repair_analytics(context: RuntimeContext, *, date_range: Optional[DateRange] = None) -> Dict[str, object]:
    """Summarize repair revenue over an optional window.

    Returns:
        dict[str, object]: ``total_repairs``, ``total_revenue`` (sum of billed
            totals), ``average_repair_cost``, ``total_labor_revenue`` and
            ``total_parts_cost``.
    """
    repairs = [aggregate.repair for aggregate in list_repairs(context, date_range=date_range)]
    total_repairs = len(repairs)
    total_revenue = sum((repair.total_cost for repair in repairs), ZERO)
    average = (total_revenue / total_repairs).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP) if total_repairs else ZERO
    summary: Dict[str, object] = {
        "total_repairs": total_repairs,
        "total_revenue": total_revenue,
        "average_repair_cost": average,
        "total_labor_revenue": sum((repair.labor_cost for repair in repairs), ZERO),
        "total_parts_cost": sum((repair.parts_cost for repair in repairs), ZERO),
    }
    log.debug("Calculated repair analytics for %s: %s", date_range.value if date_range else "all time", summary)
    return summary


def calculate_inventory(context: RuntimeContext) -> Dict[str, int]:
    """Compute on-hand quantities by folding over the recorded history.

    Purchases add, sale items and used parts subtract. Products start with no
    stock, so for a consistent workbook the result equals each product's stored
    ``quantity``.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        inventory = _fold_inventory(work.workbook)
    log.debug("Calculated inventory balances for %d products", len(inventory))
    return inventory


def find_stock_discrepancies(context: RuntimeContext) -> Dict[str, Tuple[int, int]]:
    """Compare stored quantities against the folded history.

    Both sides are read from the same locked snapshot of the workbook.

    Returns:
        dict[str, tuple[int, int]]: ``product_id -> (stored, expected)`` for
            every product whose stored quantity disagrees with its history.
    """
    with unit_of_work(context.settings, read_only=True) as work:
        stored = {product.product_id: product.quantity for product in data_manager.iter_products(work.workbook)}
        expected = _fold_inventory(work.workbook)
    discrepancies = {
        product_id: (stored.get(product_id, 0), quantity)
        for product_id, quantity in expected.items()
        if stored.get(product_id, 0) != quantity
    }
    if discrepancies:
        log.error("Stock discrepancies detected for: %s", ", ".join(sorted(discrepancies)))
    return discrepancies


def calculate_stock_value(context: RuntimeContext) -> Decimal:
    """Return the value of stock on hand, ``sum(quantity * average_cost)``."""
    with unit_of_work(context.settings, read_only=True) as work:
        value = sum(
            (product.quantity * product.average_cost for product in data_manager.iter_products(work.workbook)),
            ZERO,
        )
    log.debug("Calculated stock value %s", value)
    return value


def _fold_inventory(workbook: Workbook) -> Dict[str, int]:
    inventory: Dict[str, int] = {product.product_id: 0 for product in data_manager.iter_products(workbook)}
    for purchase in data_manager.iter_purchases(workbook):
        inventory[purchase.product_id] = inventory.get(purchase.product_id, 0) + purchase.quantity
    for item in data_manager.iter_sale_items(workbook):
        inventory[item.product_id] = inventory.get(item.product_id, 0) - item.quantity
    for part in data_manager.iter_used_parts(workbook):
        inventory[part.product_id] = inventory.get(part.product_id, 0) - part.quantity
    return inventory


def _collect_sales(workbook: Workbook) -> List[SaleAggregate]:
    items_by_sale: Dict[str, List[data_manager.SaleItemRow]] = {}
    for item in data_manager.iter_sale_items(workbook):
        items_by_sale.setdefault(item.sale_id, []).append(item)
    return [
        SaleAggregate(sale=sale, items=tuple(items_by_sale.get(sale.sale_id, ())))
        for sale in data_manager.iter_sales(workbook)
    ]


def _collect_repairs(workbook: Workbook) -> List[RepairAggregate]:
    parts_by_repair: Dict[str, List[data_manager.UsedPartRow]] = {}
    for part in data_manager.iter_used_parts(workbook):
        parts_by_repair.setdefault(part.repair_id, []).append(part)
    return [
        RepairAggregate(repair=repair, used_parts=tuple(parts_by_repair.get(repair.repair_id, ())))
        for repair in data_manager.iter_repairs(workbook)
    ]


def date_range_start(date_range: DateRange, *, now: Optional[datetime] = None) -> datetime:
    """Return the earliest timestamp included in ``date_range``.

    Windows are measured from the start of the current UTC day: ``today`` is
    that midnight, ``7days`` goes back seven days from it and ``1month`` one
    calendar month, clamped to the last day of a shorter month.
    """
    now = now or _resolve_timestamp(None)
    start_of_day = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    if date_range is DateRange.TODAY:
        return start_of_day
    if date_range is DateRange.SEVEN_DAYS:
        return start_of_day - timedelta(days=7)
    year, month = (start_of_day.year, start_of_day.month - 1) if start_of_day.month > 1 else (start_of_day.year - 1, 12)
    day = min(start_of_day.day, calendar.monthrange(year, month)[1])
    return start_of_day.replace(year=year, month=month, day=day)


def _filter_recent(
    records: Iterable[_RecordT], date_range: Optional[DateRange], *, key: Callable[[_RecordT], datetime]
) -> List[_RecordT]:
    if date_range is not None:
        start = date_range_start(date_range)
        records = [record for record in records if key(record) >= start]
    return sorted(records, key=key, reverse=True)
