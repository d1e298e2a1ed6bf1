"""
Customer Return Service

Cartons a customer sends back re-enter stock:
- Source shipment not yet settled: straight back onto the item they were sold from
- Source shipment settled: into the matching item of the earliest open shipment,
  recorded as a late_return carryover so the next settlement can account for it
"""
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from shipment_ledger.core.quantities import cartons
from shipment_ledger.db.locking import atomic
from shipment_ledger.exceptions import (
    InvalidStateError,
    LineAlreadyReversedError,
    NotFoundError,
    ReturnExceedsSaleError,
    ValidationError,
)
from shipment_ledger.logging_config import get_logger
from shipment_ledger.models.invoice import InvoiceLine, InvoiceStatus
from shipment_ledger.models.shipment import (
    Carryover, CarryoverReason, Shipment, ShipmentItem, ShipmentStatus
)
from shipment_ledger.services.ledger_queries import (
    find_matching_item,
    lock_shipment_items,
    new_carried_item,
    receive_carried_stock,
)

logger = get_logger(__name__)


@dataclass
class ReturnResult:
    """Outcome of a recorded return"""
    invoice_line: InvoiceLine
    target_item: ShipmentItem
    quantity: int
    carryover: Optional[Carryover] = None

    @property
    def is_late(self) -> bool:
        return self.carryover is not None


def _earliest_open_shipment(db: Session, supplier_id: int) -> Optional[Shipment]:
    """The supplier's own earliest open shipment, else the earliest open one overall."""
    query = (
        db.query(Shipment)
        .filter(Shipment.status == ShipmentStatus.OPEN)
        .order_by(Shipment.fifo_sequence.asc(), Shipment.id.asc())
        .with_for_update()
    )
    return query.filter(Shipment.supplier_id == supplier_id).first() or query.first()


def record_return(
    db: Session,
    invoice_line_id: int,
    quantity: int,
    *,
    actor: Optional[str] = None,
    as_of_date: Optional[date] = None,
) -> ReturnResult:
    """
    Put returned cartons from an invoice line back into stock.

    Args:
        db: Database session
        invoice_line_id: Line the cartons were sold on
        quantity: Cartons returned
        actor: Who recorded the return
        as_of_date: Date noted on a late-return carryover

    Returns:
        ReturnResult naming the item that received the stock

    Raises:
        ValidationError: quantity is not a positive whole number
        NotFoundError: line does not exist
        LineAlreadyReversedError: the line's allocation was reversed
        ReturnExceedsSaleError: more than the line's unreturned cartons
        InvalidStateError: invoice cancelled, or a late return with no open shipment
    """
    try:
        count = cartons(quantity)
    except (TypeError, ValueError):
        raise ValidationError("Returned quantity must be whole cartons", field="quantity", value=quantity)
    if count <= 0:
        raise ValidationError("Returned quantity must be positive", field="quantity", value=quantity)

    with atomic(db, "record_return"):
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
        if line.invoice.status != InvoiceStatus.ACTIVE:
            raise InvalidStateError(
                f"Invoice {line.invoice.number} is {line.invoice.status}",
                current_state=line.invoice.status,
                allowed_states=[InvoiceStatus.ACTIVE],
            )

        returnable = line.cartons - (line.returned_quantity or 0)
        if count > returnable:
            raise ReturnExceedsSaleError(invoice_line_id, requested=count, returnable=returnable)

        source = (
            db.query(ShipmentItem)
            .filter(ShipmentItem.id == line.shipment_item_id)
            .with_for_update()
            .populate_existing()
            .one()
        )

        carryover = None
        if source.shipment.status != ShipmentStatus.SETTLED:
            source.sold_quantity -= count
            source.remaining_quantity += count
            target = source
        else:
            open_shipment = _earliest_open_shipment(db, source.shipment.supplier_id)
            if open_shipment is None:
                raise InvalidStateError(
                    "No open shipment to receive a late return",
                    details={"invoice_line_id": invoice_line_id},
                )
            open_items = lock_shipment_items(db, open_shipment.id)
            target = find_matching_item(open_items, source.product_id, source.weight_per_unit)
            if target is None:
                target = new_carried_item(source, open_shipment.id, count)
                db.add(target)
            else:
                receive_carried_stock(target, count)
            db.flush()

            carryover = Carryover(
                from_shipment_id=source.shipment_id,
                from_shipment_item_id=source.id,
                to_shipment_id=open_shipment.id,
                to_shipment_item_id=target.id,
                product_id=source.product_id,
                invoice_line_id=line.id,
                quantity=count,
                reason=CarryoverReason.LATE_RETURN,
                notes=f"Return on invoice line {line.id} ({(as_of_date or date.today()).isoformat()})",
                created_by=actor,
            )
            db.add(carryover)

        line.returned_quantity = (line.returned_quantity or 0) + count

    logger.info(
        f"Recorded return of {count} cartons on invoice line {invoice_line_id}"
        + (" as late return" if carryover is not None else ""),
        extra={
            "invoice_line_id": invoice_line_id,
            "quantity": count,
            "target_item_id": target.id,
            "late": carryover is not None,
        },
    )
    return ReturnResult(invoice_line=line, target_item=target, quantity=count, carryover=carryover)
