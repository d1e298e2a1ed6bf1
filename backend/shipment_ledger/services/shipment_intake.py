"""
Shipment intake

Creates shipments and their stock lines. fifo_sequence is assigned once, as
one past the current maximum, and never changes afterwards.
"""
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shipment_ledger.core.quantities import cartons as as_cartons
from shipment_ledger.db.locking import atomic
from shipment_ledger.exceptions import NotFoundError, ShipmentNotOpenError, ValidationError
from shipment_ledger.logging_config import get_logger
from shipment_ledger.models.shipment import Shipment, ShipmentItem, ShipmentStatus
from shipment_ledger.models.supplier import Product, Supplier

logger = get_logger(__name__)


def next_fifo_sequence(db: Session) -> int:
    current = db.query(func.max(Shipment.fifo_sequence)).scalar()
    return (current or 0) + 1


def create_shipment(
    db: Session,
    supplier_id: int,
    arrival_date: date,
    *,
    number: Optional[str] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Shipment:
    """
    Register an arriving shipment, open for intake and sale.

    Args:
        db: Database session
        supplier_id: Supplier the shipment belongs to
        arrival_date: Date received (reporting only; FIFO order comes from fifo_sequence)
        number: Shipment number; generated from the sequence when omitted
        notes: Free text
        actor: Who registered it

    Returns:
        The new Shipment
    """
    with atomic(db, "create_shipment"):
        supplier = db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFoundError("Supplier", supplier_id)

        sequence = next_fifo_sequence(db)
        shipment = Shipment(
            number=number or f"SHP-{sequence:05d}",
            supplier_id=supplier.id,
            fifo_sequence=sequence,
            arrival_date=arrival_date,
            status=ShipmentStatus.OPEN,
            notes=notes,
            created_by=actor,
        )
        db.add(shipment)
        db.flush()

    logger.info(
        f"Created shipment {shipment.number} (fifo {shipment.fifo_sequence}) for supplier {supplier_id}",
        extra={"shipment_id": shipment.id, "supplier_id": supplier_id},
    )
    return shipment


def add_shipment_item(
    db: Session,
    shipment_id: int,
    product_id: int,
    cartons: int,
    weight_per_unit,
    *,
    unit_cost=0,
    weight_label: Optional[str] = None,
) -> ShipmentItem:
    """Add fresh cartons of a product to an open shipment."""
    try:
        count = as_cartons(cartons)
    except (TypeError, ValueError):
        raise ValidationError("Cartons must be a whole number", field="cartons", value=cartons)
    if count <= 0:
        raise ValidationError("Cartons must be positive", field="cartons", value=cartons)
    wpu = Decimal(str(weight_per_unit))
    if wpu <= 0:
        raise ValidationError("Weight per unit must be positive", field="weight_per_unit", value=weight_per_unit)
    cost = Decimal(str(unit_cost))
    if cost < 0:
        raise ValidationError("Unit cost cannot be negative", field="unit_cost", value=unit_cost)

    with atomic(db, "add_shipment_item"):
        shipment = (
            db.query(Shipment)
            .filter(Shipment.id == shipment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not shipment:
            raise NotFoundError("Shipment", shipment_id)
        if shipment.status != ShipmentStatus.OPEN:
            raise ShipmentNotOpenError(shipment.id, shipment.status)
        if not db.get(Product, product_id):
            raise NotFoundError("Product", product_id)

        item = ShipmentItem(
            shipment_id=shipment.id,
            product_id=product_id,
            weight_per_unit=wpu,
            weight_label=weight_label,
            unit_cost=cost,
            cartons=count,
            initial_quantity=count,
            sold_quantity=0,
            carryover_in_quantity=0,
            carryover_out_quantity=0,
            remaining_quantity=count,
            wastage_quantity=Decimal("0"),
        )
        db.add(item)
        db.flush()

    logger.info(
        f"Added {count} cartons of product {product_id} to shipment {shipment_id}",
        extra={"shipment_id": shipment_id, "shipment_item_id": item.id, "cartons": count},
    )
    return item


def close_shipment(db: Session, shipment_id: int, *, actor: Optional[str] = None) -> Shipment:
    """Stop intake on an open shipment. Its stock stays sellable."""
    with atomic(db, "close_shipment"):
        shipment = (
            db.query(Shipment)
            .filter(Shipment.id == shipment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not shipment:
            raise NotFoundError("Shipment", shipment_id)
        if shipment.status != ShipmentStatus.OPEN:
            raise ShipmentNotOpenError(shipment.id, shipment.status)
        shipment.status = ShipmentStatus.CLOSED

    logger.info(f"Closed shipment {shipment.number}", extra={"shipment_id": shipment_id, "actor": actor})
    return shipment
