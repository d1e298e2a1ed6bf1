"""
Queries shared by the allocator, settlement engine, return flow and report.

Keeping them in one place means "what counts as a sale" and "which shipment
comes before this one" are answered the same way everywhere.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from shipment_ledger.core.quantities import Kilograms, Money, kilograms, money
from shipment_ledger.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from shipment_ledger.models.shipment import Carryover, CarryoverReason, Shipment, ShipmentItem, ShipmentStatus


def counted_sale_lines(db: Session, item_ids: Iterable[int]) -> List[InvoiceLine]:
    """Unreversed lines on active invoices drawn from the given items."""
    item_ids = list(item_ids)
    if not item_ids:
        return []
    return (
        db.query(InvoiceLine)
        .join(Invoice, InvoiceLine.invoice_id == Invoice.id)
        .filter(
            InvoiceLine.shipment_item_id.in_(item_ids),
            InvoiceLine.reversed_at.is_(None),
            Invoice.status == InvoiceStatus.ACTIVE,
        )
        .order_by(InvoiceLine.id)
        .all()
    )


def net_cartons(line: InvoiceLine, restored: int = 0) -> int:
    """Cartons still counted as sold; `restored` adds back returns to ignore."""
    return line.cartons - (line.returned_quantity or 0) + restored


def net_weight(line: InvoiceLine, restored: int = 0) -> Kilograms:
    """Scale weight still sold on the line after returns."""
    counted = net_cartons(line, restored)
    if counted == line.cartons:
        return kilograms(line.weight)
    return kilograms(Decimal(str(line.weight)) * counted / line.cartons)


def net_revenue(line: InvoiceLine, restored: int = 0) -> Money:
    counted = net_cartons(line, restored)
    if counted == line.cartons:
        return money(line.subtotal)
    return money(Decimal(str(line.subtotal)) * counted / line.cartons)


def sold_cartons_by_item(
    lines: Iterable[InvoiceLine], restored: Optional[Dict[int, int]] = None
) -> Dict[int, int]:
    restored = restored or {}
    totals: Dict[int, int] = defaultdict(int)
    for line in lines:
        totals[line.shipment_item_id] += net_cartons(line, restored.get(line.id, 0))
    return totals


def sold_weight_by_item(
    lines: Iterable[InvoiceLine], restored: Optional[Dict[int, int]] = None
) -> Dict[int, Decimal]:
    restored = restored or {}
    totals: Dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
    for line in lines:
        totals[line.shipment_item_id] += net_weight(line, restored.get(line.id, 0))
    return totals


def total_sales_value(lines: Iterable[InvoiceLine], restored: Optional[Dict[int, int]] = None) -> Money:
    restored = restored or {}
    return money(sum((net_revenue(line, restored.get(line.id, 0)) for line in lines), Decimal("0")))


def returned_since_settlement(db: Session, shipment: Shipment) -> Dict[int, int]:
    """
    Late-returned cartons per invoice line, recorded after the shipment's
    current settlement. Empty for a shipment that is not settled.

    These returns land in another shipment's stock and do not change what
    the settlement booked, so settle-time figures count them as still sold.
    """
    if not shipment.is_settled or shipment.settled_at is None:
        return {}
    rows = (
        db.query(Carryover.invoice_line_id, func.sum(Carryover.quantity))
        .filter(
            Carryover.reason == CarryoverReason.LATE_RETURN,
            Carryover.from_shipment_id == shipment.id,
            Carryover.invoice_line_id.isnot(None),
            Carryover.created_at >= shipment.settled_at,
        )
        .group_by(Carryover.invoice_line_id)
        .all()
    )
    return {line_id: int(quantity) for line_id, quantity in rows}


def _before(shipment: Shipment):
    return or_(
        Shipment.fifo_sequence < shipment.fifo_sequence,
        and_(Shipment.fifo_sequence == shipment.fifo_sequence, Shipment.id < shipment.id),
    )


def _after(shipment: Shipment):
    return or_(
        Shipment.fifo_sequence > shipment.fifo_sequence,
        and_(Shipment.fifo_sequence == shipment.fifo_sequence, Shipment.id > shipment.id),
    )


def previous_settled_shipment(db: Session, shipment: Shipment) -> Optional[Shipment]:
    """The supplier's latest settled shipment ahead of this one in fifo order."""
    return (
        db.query(Shipment)
        .filter(
            Shipment.supplier_id == shipment.supplier_id,
            Shipment.status == ShipmentStatus.SETTLED,
            _before(shipment),
        )
        .order_by(Shipment.fifo_sequence.desc(), Shipment.id.desc())
        .first()
    )


def later_settled_shipment(db: Session, shipment: Shipment) -> Optional[Shipment]:
    """Any settled shipment of the same supplier behind this one in fifo order."""
    return (
        db.query(Shipment)
        .filter(
            Shipment.supplier_id == shipment.supplier_id,
            Shipment.status == ShipmentStatus.SETTLED,
            _after(shipment),
        )
        .order_by(Shipment.fifo_sequence.asc(), Shipment.id.asc())
        .first()
    )


def find_matching_item(
    items: Iterable[ShipmentItem], product_id: int, weight_per_unit
) -> Optional[ShipmentItem]:
    """Stock is interchangeable only within the same product and carton weight."""
    wpu = Decimal(str(weight_per_unit))
    for item in items:
        if item.product_id == product_id and Decimal(str(item.weight_per_unit)) == wpu:
            return item
    return None


def lock_shipment_items(db: Session, shipment_id: int) -> List[ShipmentItem]:
    return (
        db.query(ShipmentItem)
        .filter(ShipmentItem.shipment_id == shipment_id)
        .order_by(ShipmentItem.id)
        .with_for_update()
        .populate_existing()
        .all()
    )


def new_carried_item(source: ShipmentItem, shipment_id: int, quantity: int) -> ShipmentItem:
    """Destination item created to receive stock that had no match."""
    return ShipmentItem(
        shipment_id=shipment_id,
        product_id=source.product_id,
        weight_per_unit=source.weight_per_unit,
        weight_label=source.weight_label,
        unit_cost=source.unit_cost,
        cartons=0,
        initial_quantity=quantity,
        sold_quantity=0,
        carryover_in_quantity=quantity,
        carryover_out_quantity=0,
        remaining_quantity=quantity,
        wastage_quantity=Decimal("0"),
    )


def receive_carried_stock(item: ShipmentItem, quantity: int) -> None:
    item.initial_quantity += quantity
    item.carryover_in_quantity += quantity
    item.remaining_quantity += quantity
