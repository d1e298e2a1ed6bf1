"""
FIFO Allocator

Draws sold cartons out of shipment items oldest-first:
- Eligible stock: items with remaining > 0 whose shipment is open or closed
- Order: Shipment.fifo_sequence, then item id
- All-or-nothing: a request eligible stock cannot cover fails without changes
- Locks: candidate shipments by id, then their items in FIFO order

allocate() only plans (under row locks held until the caller's transaction
ends); allocate_and_create() plans, decrements and writes invoice lines in one
transaction; reverse_allocation() gives a line's cartons back to the exact item
it drew from.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, Query

from shipment_ledger.core.quantities import Cartons, cartons, kilograms, money, weight_of
from shipment_ledger.db.locking import atomic
from shipment_ledger.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    LineAlreadyReversedError,
    NotFoundError,
    ValidationError,
)
from shipment_ledger.logging_config import get_logger
from shipment_ledger.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from shipment_ledger.models.shipment import Shipment, ShipmentItem, ShipmentStatus
from shipment_ledger.schemas.allocation import AllocationEntry, AllocationPlan, FifoBreakdownRow

logger = get_logger(__name__)


def eligible_items_query(db: Session, product_id: int) -> Query:
    """
    Eligible stock for a product in FIFO order.

    The single definition used by allocation, availability and the breakdown
    view, so the three can never disagree.
    """
    return (
        db.query(ShipmentItem)
        .join(Shipment, ShipmentItem.shipment_id == Shipment.id)
        .filter(
            ShipmentItem.product_id == product_id,
            ShipmentItem.remaining_quantity > 0,
            Shipment.status.in_(ShipmentStatus.ALLOCATABLE),
        )
        .order_by(Shipment.fifo_sequence.asc(), ShipmentItem.id.asc())
    )


def _validate_quantity(quantity) -> Cartons:
    try:
        count = cartons(quantity)
    except (TypeError, ValueError):
        raise ValidationError(
            "Quantity must be a whole number of cartons", field="quantity", value=quantity
        )
    if count <= 0:
        raise ValidationError("Quantity must be positive", field="quantity", value=quantity)
    return count


def _lock_shipment_rows(db: Session, shipment_ids) -> Dict[int, Shipment]:
    """Lock shipment rows in id order."""
    shipment_ids = sorted(set(shipment_ids))
    if not shipment_ids:
        return {}
    rows = (
        db.query(Shipment)
        .filter(Shipment.id.in_(shipment_ids))
        .order_by(Shipment.id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    return {shipment.id: shipment for shipment in rows}


def _lock_candidate_shipments(db: Session, product_id: int) -> Dict[int, Shipment]:
    """
    Lock every shipment currently holding eligible stock of the product.

    Shipments are always locked before their items, as in settlement.
    """
    candidate_ids = [
        shipment_id for (shipment_id,) in
        eligible_items_query(db, product_id)
        .order_by(None)
        .with_entities(ShipmentItem.shipment_id)
        .distinct()
        .all()
    ]
    return _lock_shipment_rows(db, candidate_ids)


def _lock_eligible_items(db: Session, product_id: int) -> List[ShipmentItem]:
    return (
        eligible_items_query(db, product_id)
        .with_for_update(of=ShipmentItem)
        .populate_existing()
        .all()
    )


def _plan(db: Session, product_id: int, quantity: Cartons) -> List[Tuple[ShipmentItem, int]]:
    """Lock shipments, then their eligible items, and walk the items greedily. Raises if stock falls short."""
    _lock_candidate_shipments(db, product_id)
    items = _lock_eligible_items(db, product_id)

    slices = []
    needed = quantity
    for item in items:
        if needed <= 0:
            break
        take = min(item.remaining_quantity, needed)
        slices.append((item, take))
        needed -= take

    if needed > 0:
        available = sum(item.remaining_quantity for item in items)
        logger.warning(
            f"Insufficient stock for product {product_id}: requested {quantity}, available {available}",
            extra={"product_id": product_id, "requested": quantity, "available": available},
        )
        raise InsufficientStockError(product_id, requested=quantity, available=available)

    return slices


def allocate(db: Session, product_id: int, quantity: int) -> AllocationPlan:
    """
    Plan an allocation of `quantity` cartons without changing stock.

    Rows are locked FOR UPDATE; the locks last until the caller commits or
    rolls back.

    Args:
        db: Database session
        product_id: Product to allocate
        quantity: Cartons requested (positive integer)

    Returns:
        AllocationPlan whose entries sum to exactly `quantity`

    Raises:
        ValidationError: quantity is not a positive whole number
        InsufficientStockError: eligible stock is short (nothing is changed)
    """
    count = _validate_quantity(quantity)
    slices = _plan(db, product_id, count)
    return AllocationPlan(
        product_id=product_id,
        requested=count,
        entries=[
            AllocationEntry(
                shipment_item_id=item.id,
                shipment_id=item.shipment_id,
                shipment_number=item.shipment.number,
                fifo_sequence=item.shipment.fifo_sequence,
                cartons=take,
                weight_per_unit=Decimal(str(item.weight_per_unit)),
                unit_cost=Decimal(str(item.unit_cost or 0)),
            )
            for item, take in slices
        ],
    )


def _split_weight(slices: List[Tuple[ShipmentItem, int]], quantity: int,
                  total_weight: Optional[Decimal]) -> List[Decimal]:
    """Per-slice weights. A scale total is split by carton share, remainder on the last slice."""
    if total_weight is None:
        return [weight_of(take, item.weight_per_unit) for item, take in slices]

    total = kilograms(total_weight)
    weights = []
    assigned = Decimal("0")
    for index, (_item, take) in enumerate(slices):
        if index == len(slices) - 1:
            share = total - assigned
        else:
            share = kilograms(total * take / quantity)
        weights.append(share)
        assigned += share
    return weights


def _close_sold_out_shipments(db: Session, shipment_ids) -> None:
    """Open shipments with nothing left to sell stop accepting intake."""
    for shipment in _lock_shipment_rows(db, shipment_ids).values():
        if shipment.status != ShipmentStatus.OPEN:
            continue
        left = db.query(func.coalesce(func.sum(ShipmentItem.remaining_quantity), 0)).filter(
            ShipmentItem.shipment_id == shipment.id
        ).scalar()
        if left == 0:
            shipment.status = ShipmentStatus.CLOSED
            logger.info(
                f"Shipment {shipment.number} sold out, closed",
                extra={"shipment_id": shipment.id},
            )


def allocate_and_create(
    db: Session,
    invoice_id: int,
    product_id: int,
    quantity: int,
    unit_price,
    *,
    total_weight=None,
    actor: Optional[str] = None,
    as_of_date: Optional[date] = None,
) -> List[InvoiceLine]:
    """
    Allocate stock FIFO and book it as invoice lines in one transaction.

    One InvoiceLine is written per shipment item touched, each recording the
    exact item it drew from. The line weight is the nominal carton weight, or a
    proportional share of `total_weight` when the scale total is supplied.
    subtotal = weight * unit_price (price per kg).

    Args:
        db: Database session
        invoice_id: Active invoice the lines attach to
        product_id: Product being sold
        quantity: Cartons sold
        unit_price: Price per kilogram
        total_weight: Optional scale weight for the whole quantity
        actor: Who booked the sale
        as_of_date: Working date stamped on the lines (defaults to today)

    Returns:
        The created invoice lines, in FIFO order

    Raises:
        ValidationError: bad quantity, price or weight
        NotFoundError: invoice does not exist
        InvalidStateError: invoice is cancelled
        InsufficientStockError: nothing is changed
        ConcurrencyError: lock wait timed out or a concurrent write won; retryable
    """
    count = _validate_quantity(quantity)
    price = Decimal(str(unit_price))
    if price < 0:
        raise ValidationError("Unit price cannot be negative", field="unit_price", value=unit_price)
    if total_weight is not None and Decimal(str(total_weight)) <= 0:
        raise ValidationError("Total weight must be positive", field="total_weight", value=total_weight)

    line_date = as_of_date or date.today()

    with atomic(db, "allocate_and_create"):
        invoice = db.get(Invoice, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.status != InvoiceStatus.ACTIVE:
            raise InvalidStateError(
                f"Invoice {invoice.number} is {invoice.status}",
                current_state=invoice.status,
                allowed_states=[InvoiceStatus.ACTIVE],
            )

        slices = _plan(db, product_id, count)
        weights = _split_weight(slices, count, total_weight)

        lines = []
        for (item, take), weight in zip(slices, weights):
            item.sold_quantity += take
            item.remaining_quantity -= take
            line = InvoiceLine(
                invoice_id=invoice.id,
                product_id=product_id,
                shipment_item_id=item.id,
                cartons=take,
                weight=weight,
                unit_price=price,
                subtotal=money(weight * price),
                line_date=line_date,
                returned_quantity=0,
                created_by=actor,
            )
            db.add(line)
            lines.append(line)

        db.flush()
        _close_sold_out_shipments(db, {item.shipment_id for item, _take in slices})

    logger.info(
        f"Allocated {count} cartons of product {product_id} to invoice {invoice_id} "
        f"across {len(lines)} shipment item(s)",
        extra={
            "invoice_id": invoice_id,
            "product_id": product_id,
            "quantity": count,
            "shipment_item_ids": [line.shipment_item_id for line in lines],
        },
    )
    return lines


def reverse_allocation(db: Session, invoice_line_id: int, *, actor: Optional[str] = None) -> InvoiceLine:
    """
    Undo one invoice line's allocation against the item it drew from.

    Only the cartons still counted as sold (cartons minus returned) go back.
    The line is kept and stamped reversed. Reversing twice is refused, as is
    reversing against a settled shipment; late returns go through
    return_service.record_return instead.
    """
    with atomic(db, "reverse_allocation"):
        line = (
            db.query(InvoiceLine)
            .filter(InvoiceLine.id == invoice_line_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not line:
            raise NotFoundError("InvoiceLine", invoice_line_id)
        if line.is_reversed:
            raise LineAlreadyReversedError(invoice_line_id)

        item = (
            db.query(ShipmentItem)
            .filter(ShipmentItem.id == line.shipment_item_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        if item.shipment.status == ShipmentStatus.SETTLED:
            raise InvalidStateError(
                f"Shipment {item.shipment.number} is settled; record a return instead",
                current_state=ShipmentStatus.SETTLED,
                allowed_states=list(ShipmentStatus.ALLOCATABLE),
                details={"invoice_line_id": invoice_line_id, "shipment_id": item.shipment_id},
            )

        restored = line.cartons - (line.returned_quantity or 0)
        item.sold_quantity -= restored
        item.remaining_quantity += restored
        line.reversed_at = datetime.utcnow()
        line.reversed_by = actor

    logger.info(
        f"Reversed invoice line {invoice_line_id}: {restored} cartons back to item {item.id}",
        extra={"invoice_line_id": invoice_line_id, "shipment_item_id": item.id, "cartons": restored},
    )
    return line


def available_stock(db: Session, product_id: int) -> Cartons:
    """Total eligible cartons for a product. Advisory; takes no locks."""
    total = (
        eligible_items_query(db, product_id)
        .order_by(None)
        .with_entities(func.coalesce(func.sum(ShipmentItem.remaining_quantity), 0))
        .scalar()
    )
    return Cartons(int(total))


def fifo_breakdown(db: Session, product_id: int) -> List[FifoBreakdownRow]:
    """Eligible items for a product in the order allocation would consume them."""
    return [
        FifoBreakdownRow(
            shipment_item_id=item.id,
            shipment_id=item.shipment_id,
            shipment_number=item.shipment.number,
            fifo_sequence=item.shipment.fifo_sequence,
            arrival_date=item.shipment.arrival_date,
            status=item.shipment.status,
            weight_per_unit=Decimal(str(item.weight_per_unit)),
            weight_label=item.weight_label,
            remaining_quantity=item.remaining_quantity,
            unit_cost=Decimal(str(item.unit_cost or 0)),
        )
        for item in eligible_items_query(db, product_id).all()
    ]
