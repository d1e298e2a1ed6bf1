"""
Settlement Engine

settle() closes a shipment's books:
1. Forwards unsold cartons into the next open shipment (end_of_shipment carryover)
2. Computes per-item wastage from nominal vs scale weight
3. Freezes sales, expenses, commission and the supplier balance on the shipment

unsettle() is its exact inverse, provided nobody has sold the forwarded stock.

Each runs as one transaction: shipments are locked first (ordered by id),
then their items.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from shipment_ledger.core.quantities import kilograms
from shipment_ledger.core.settings import get_settings
from shipment_ledger.db.locking import atomic
from shipment_ledger.exceptions import (
    AlreadySettledError,
    ForwardedStockAlreadyConsumedError,
    LaterShipmentSettledError,
    NotFoundError,
    NotSettledError,
    SameShipmentError,
    TargetNotOpenError,
)
from shipment_ledger.logging_config import get_logger
from shipment_ledger.models.invoice import InvoiceLine
from shipment_ledger.models.shipment import (
    Carryover, CarryoverReason, Shipment, ShipmentItem, ShipmentStatus
)
from shipment_ledger.services.balance import compute_supplier_balance
from shipment_ledger.services.expense_ledger import ExpenseTableLedger, SupplierLedger
from shipment_ledger.services.ledger_queries import (
    counted_sale_lines,
    find_matching_item,
    later_settled_shipment,
    lock_shipment_items,
    new_carried_item,
    previous_settled_shipment,
    receive_carried_stock,
    sold_cartons_by_item,
    sold_weight_by_item,
    total_sales_value,
)

logger = get_logger(__name__)

# Settlement figures cleared again by unsettle()
SETTLEMENT_FIELDS = (
    "total_sales",
    "total_sold_quantity",
    "total_wastage",
    "total_carryover_out",
    "total_supplier_expenses",
    "total_supplier_payments",
    "late_returns_value",
    "commission_rate",
    "net_sales",
    "company_commission",
    "previous_supplier_balance",
    "final_supplier_balance",
)


def _lock_shipments(db: Session, *shipment_ids: int) -> Dict[int, Shipment]:
    rows = (
        db.query(Shipment)
        .filter(Shipment.id.in_(set(shipment_ids)))
        .order_by(Shipment.id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    found = {shipment.id: shipment for shipment in rows}
    for shipment_id in shipment_ids:
        if shipment_id not in found:
            raise NotFoundError("Shipment", shipment_id)
    return found


def previous_supplier_balance(db: Session, shipment: Shipment) -> Decimal:
    """Closing balance of the supplier's prior settled shipment, else the opening balance."""
    previous = previous_settled_shipment(db, shipment)
    if previous is not None:
        return Decimal(str(previous.final_supplier_balance or 0))
    return Decimal(str(shipment.supplier.opening_balance or 0))


def late_returns_value(db: Session, shipment: Shipment) -> Tuple[Decimal, int]:
    """
    Value and carton count of late returns from the supplier's previous
    settled shipment that landed in this one.

    Returned cartons are tracked, but their monetary value is not yet
    defined and is reported as zero.
    """
    previous = previous_settled_shipment(db, shipment)
    if previous is None:
        return Decimal("0"), 0
    returned = sum(
        carryover.quantity
        for carryover in db.query(Carryover).filter(
            Carryover.reason == CarryoverReason.LATE_RETURN,
            Carryover.from_shipment_id == previous.id,
            Carryover.to_shipment_id == shipment.id,
        )
    )
    return Decimal("0"), returned


def _forward_unsold(
    db: Session,
    shipment: Shipment,
    target: Shipment,
    items: List[ShipmentItem],
    target_items: List[ShipmentItem],
    actor: Optional[str],
) -> int:
    forwarded_total = 0
    for item in items:
        quantity = item.remaining_quantity
        if quantity <= 0:
            continue

        dest = find_matching_item(target_items, item.product_id, item.weight_per_unit)
        if dest is None:
            dest = new_carried_item(item, target.id, quantity)
            db.add(dest)
            target_items.append(dest)
        else:
            receive_carried_stock(dest, quantity)

        item.carryover_out_quantity += quantity
        item.remaining_quantity = 0
        db.flush()

        db.add(Carryover(
            from_shipment_id=shipment.id,
            from_shipment_item_id=item.id,
            to_shipment_id=target.id,
            to_shipment_item_id=dest.id,
            product_id=item.product_id,
            quantity=quantity,
            reason=CarryoverReason.END_OF_SHIPMENT,
            created_by=actor,
        ))
        forwarded_total += quantity
    return forwarded_total


def settle(
    db: Session,
    shipment_id: int,
    next_shipment_id: int,
    *,
    actor: Optional[str] = None,
    as_of_date: Optional[date] = None,
    ledger: Optional[SupplierLedger] = None,
    commission_rate: Optional[Decimal] = None,
) -> Shipment:
    """
    Settle a shipment, forwarding its unsold stock into `next_shipment_id`.

    Args:
        db: Database session
        shipment_id: Shipment being settled (open or closed)
        next_shipment_id: Open shipment receiving unsold cartons
        actor: Who settled
        as_of_date: End of the supplier payment window (defaults to today)
        ledger: Source of supplier expenses/payments (defaults to the expenses table)
        commission_rate: Fraction overriding the configured company commission

    Returns:
        The settled shipment

    Raises:
        AlreadySettledError, TargetNotOpenError, SameShipmentError: checked in this order
        LaterShipmentSettledError: a later shipment of the supplier is settled
        ConcurrencyError: lock wait timed out; retryable
    """
    ledger = ledger or ExpenseTableLedger()
    as_of_date = as_of_date or date.today()
    rate = Decimal(str(commission_rate)) if commission_rate is not None \
        else get_settings().commission_rate

    with atomic(db, "settle"):
        locked = _lock_shipments(db, shipment_id, next_shipment_id)
        shipment = locked[shipment_id]
        target = locked[next_shipment_id]

        if shipment.status == ShipmentStatus.SETTLED:
            raise AlreadySettledError(shipment.id)
        if target.status != ShipmentStatus.OPEN:
            raise TargetNotOpenError(target.id, target.status)
        if shipment.id == target.id:
            raise SameShipmentError(shipment.id)

        later = later_settled_shipment(db, shipment)
        if later is not None:
            raise LaterShipmentSettledError(shipment.id, later.id)

        items = lock_shipment_items(db, shipment.id)
        target_items = lock_shipment_items(db, target.id)

        forwarded = _forward_unsold(db, shipment, target, items, target_items, actor)

        lines = counted_sale_lines(db, [item.id for item in items])
        sold_cartons = sold_cartons_by_item(lines)
        sold_weights = sold_weight_by_item(lines)
        total_wastage = Decimal("0")
        for item in items:
            # Nominal weight of the cartons the counted lines still sell
            expected = Decimal(sold_cartons.get(item.id, 0)) * Decimal(str(item.weight_per_unit))
            actual = sold_weights.get(item.id, Decimal("0"))
            item.wastage_quantity = kilograms(max(Decimal("0"), expected - actual))
            total_wastage += item.wastage_quantity

        returns_value, _returned = late_returns_value(db, shipment)
        balance = compute_supplier_balance(
            total_sales=total_sales_value(lines),
            late_returns_value=returns_value,
            commission_rate=rate,
            supplier_expenses=ledger.supplier_expenses(db, shipment),
            previous_balance=previous_supplier_balance(db, shipment),
            supplier_payments=ledger.supplier_payments(
                db, shipment.supplier_id, shipment.arrival_date, as_of_date
            ),
        )

        shipment.total_sales = balance.total_sales
        shipment.total_sold_quantity = sum(item.sold_quantity for item in items)
        shipment.total_wastage = kilograms(total_wastage)
        shipment.total_carryover_out = sum(item.carryover_out_quantity for item in items)
        shipment.total_supplier_expenses = balance.supplier_expenses
        shipment.total_supplier_payments = balance.supplier_payments
        shipment.late_returns_value = balance.late_returns_value
        shipment.commission_rate = balance.commission_rate
        shipment.net_sales = balance.net_sales
        shipment.company_commission = balance.company_commission
        shipment.previous_supplier_balance = balance.previous_balance
        shipment.final_supplier_balance = balance.final_balance

        shipment.status = ShipmentStatus.SETTLED
        shipment.settled_at = datetime.utcnow()
        shipment.settled_by = actor

    logger.info(
        f"Settled shipment {shipment.number}: forwarded {forwarded} cartons to {target.number}, "
        f"final supplier balance {balance.final_balance}",
        extra={
            "shipment_id": shipment_id,
            "next_shipment_id": next_shipment_id,
            "forwarded": forwarded,
            "total_sales": balance.total_sales,
            "final_balance": balance.final_balance,
        },
    )
    return shipment


def unsettle(db: Session, shipment_id: int, *, actor: Optional[str] = None) -> Shipment:
    """
    Reverse a settlement.

    Every end_of_shipment carryover out of the shipment is pulled back. If any
    destination item no longer holds the forwarded cartons the whole operation
    is refused and nothing changes. Destination items that were created only
    to receive the carryover, and never sold from, are removed again.

    Raises:
        NotSettledError: shipment is not settled
        LaterShipmentSettledError: a later shipment of the supplier is settled
        ForwardedStockAlreadyConsumedError: forwarded stock was sold or moved on
    """
    with atomic(db, "unsettle"):
        shipment = _lock_shipments(db, shipment_id)[shipment_id]
        if shipment.status != ShipmentStatus.SETTLED:
            raise NotSettledError(shipment.id, shipment.status)

        later = later_settled_shipment(db, shipment)
        if later is not None:
            raise LaterShipmentSettledError(shipment.id, later.id)

        carryovers = (
            db.query(Carryover)
            .filter(
                Carryover.from_shipment_id == shipment.id,
                Carryover.reason == CarryoverReason.END_OF_SHIPMENT,
            )
            .order_by(Carryover.id)
            .all()
        )

        items = {item.id: item for item in lock_shipment_items(db, shipment.id)}
        dest_ids = sorted({c.to_shipment_item_id for c in carryovers})
        dests = {
            item.id: item
            for item in db.query(ShipmentItem)
            .filter(ShipmentItem.id.in_(dest_ids))
            .order_by(ShipmentItem.id)
            .with_for_update()
            .populate_existing()
            .all()
        } if dest_ids else {}

        # Check every edge before touching anything
        pulled: Dict[int, int] = {}
        for carryover in carryovers:
            dest = dests[carryover.to_shipment_item_id]
            still_there = dest.remaining_quantity - pulled.get(dest.id, 0)
            if still_there < carryover.quantity:
                logger.warning(
                    f"Unsettle of shipment {shipment.number} refused: carryover {carryover.id} "
                    f"forwarded {carryover.quantity}, {max(still_there, 0)} left",
                    extra={"shipment_id": shipment.id, "carryover_id": carryover.id},
                )
                raise ForwardedStockAlreadyConsumedError(
                    carryover.id, forwarded=carryover.quantity, available=max(still_there, 0)
                )
            pulled[dest.id] = pulled.get(dest.id, 0) + carryover.quantity

        for carryover in carryovers:
            quantity = carryover.quantity
            source = items[carryover.from_shipment_item_id]
            dest = dests[carryover.to_shipment_item_id]

            source.remaining_quantity += quantity
            source.carryover_out_quantity -= quantity
            dest.initial_quantity -= quantity
            dest.carryover_in_quantity -= quantity
            dest.remaining_quantity -= quantity
            db.delete(carryover)
        db.flush()

        for dest in dests.values():
            if dest.initial_quantity == 0 and not _is_referenced(db, dest):
                db.delete(dest)

        for item in items.values():
            item.wastage_quantity = Decimal("0")

        for field in SETTLEMENT_FIELDS:
            setattr(shipment, field, None)
        shipment.status = ShipmentStatus.CLOSED
        shipment.settled_at = None
        shipment.settled_by = None

    logger.info(
        f"Unsettled shipment {shipment.number}: pulled back {sum(pulled.values())} cartons",
        extra={"shipment_id": shipment_id, "carryovers": len(carryovers), "actor": actor},
    )
    return shipment


def _is_referenced(db: Session, item: ShipmentItem) -> bool:
    if db.query(InvoiceLine.id).filter(InvoiceLine.shipment_item_id == item.id).first():
        return True
    return db.query(Carryover.id).filter(
        (Carryover.from_shipment_item_id == item.id) | (Carryover.to_shipment_item_id == item.id)
    ).first() is not None
