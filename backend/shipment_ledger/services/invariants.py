"""
Stock and balance invariants

Conservation, checked on every flushed ShipmentItem:

    remaining = cartons + carryover_in - sold - carryover_out,  remaining >= 0
    initial   = cartons + carryover_in

The audit helpers scan stored data for rows that break these rules or for
gaps in a supplier's balance chain; they never modify anything.
"""
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from shipment_ledger.exceptions import LedgerIntegrityError
from shipment_ledger.logging_config import get_logger
from shipment_ledger.models.shipment import Shipment, ShipmentItem, ShipmentStatus
from shipment_ledger.models.supplier import Supplier
from shipment_ledger.services.balance import compute_supplier_balance

logger = get_logger(__name__)

_COUNTERS = (
    "cartons",
    "initial_quantity",
    "sold_quantity",
    "carryover_in_quantity",
    "carryover_out_quantity",
    "remaining_quantity",
)


def item_violations(item: ShipmentItem) -> List[str]:
    """Return human-readable invariant violations for one item (empty when sound)."""
    problems = []
    for name in _COUNTERS:
        if (getattr(item, name) or 0) < 0:
            problems.append(f"{name} is negative ({getattr(item, name)})")

    remaining = item.remaining_quantity or 0
    if remaining != item.expected_remaining:
        problems.append(
            f"remaining_quantity {remaining} != cartons + carryover_in - sold - carryover_out "
            f"({item.expected_remaining})"
        )

    initial = item.initial_quantity or 0
    if initial != (item.cartons or 0) + (item.carryover_in_quantity or 0):
        problems.append(
            f"initial_quantity {initial} != cartons + carryover_in "
            f"({(item.cartons or 0) + (item.carryover_in_quantity or 0)})"
        )
    return problems


def check_item(item: ShipmentItem) -> None:
    """Raise LedgerIntegrityError if the item breaks stock conservation."""
    problems = item_violations(item)
    if problems:
        raise LedgerIntegrityError(
            f"Shipment item {item.id} violates stock conservation: {'; '.join(problems)}",
            details={"shipment_item_id": item.id, "violations": problems},
        )


@event.listens_for(Session, "before_flush")
def _guard_stock_conservation(session, flush_context, instances):
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, ShipmentItem):
            check_item(obj)


def find_stock_inconsistencies(
    db: Session,
    product_id: Optional[int] = None,
    shipment_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Scan stored shipment items for conservation violations.

    Args:
        db: Database session
        product_id: Optional filter by product
        shipment_id: Optional filter by shipment

    Returns:
        List of inconsistency records
    """
    query = db.query(ShipmentItem)
    if product_id:
        query = query.filter(ShipmentItem.product_id == product_id)
    if shipment_id:
        query = query.filter(ShipmentItem.shipment_id == shipment_id)

    inconsistencies = []
    for item in query.order_by(ShipmentItem.id).all():
        problems = item_violations(item)
        if problems:
            inconsistencies.append({
                "shipment_item_id": item.id,
                "shipment_id": item.shipment_id,
                "product_id": item.product_id,
                "remaining": item.remaining_quantity,
                "expected_remaining": item.expected_remaining,
                "violations": problems,
            })
            logger.warning(
                f"Stock inconsistency on shipment item {item.id}: {'; '.join(problems)}"
            )
    return inconsistencies


def find_balance_chain_breaks(
    db: Session,
    supplier_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Walk each supplier's settled shipments in fifo order and report links where
    the opening balance differs from the prior closing balance, or where the
    stored closing balance does not follow from the stored settlement figures.
    """
    suppliers = db.query(Supplier)
    if supplier_id:
        suppliers = suppliers.filter(Supplier.id == supplier_id)

    breaks = []
    for supplier in suppliers.order_by(Supplier.id).all():
        settled = (
            db.query(Shipment)
            .filter(
                Shipment.supplier_id == supplier.id,
                Shipment.status == ShipmentStatus.SETTLED,
            )
            .order_by(Shipment.fifo_sequence.asc(), Shipment.id.asc())
            .all()
        )
        expected_opening = Decimal(str(supplier.opening_balance or 0))
        for shipment in settled:
            opening = Decimal(str(shipment.previous_supplier_balance or 0))
            if opening != expected_opening:
                breaks.append({
                    "supplier_id": supplier.id,
                    "shipment_id": shipment.id,
                    "issue": "opening_balance_mismatch",
                    "expected": expected_opening,
                    "actual": opening,
                })

            recomputed = compute_supplier_balance(
                total_sales=shipment.total_sales or 0,
                late_returns_value=shipment.late_returns_value or 0,
                commission_rate=shipment.commission_rate or 0,
                supplier_expenses=shipment.total_supplier_expenses or 0,
                previous_balance=opening,
                supplier_payments=shipment.total_supplier_payments or 0,
            )
            stored_final = Decimal(str(shipment.final_supplier_balance or 0))
            if recomputed.final_balance != stored_final:
                breaks.append({
                    "supplier_id": supplier.id,
                    "shipment_id": shipment.id,
                    "issue": "final_balance_mismatch",
                    "expected": recomputed.final_balance,
                    "actual": stored_final,
                })
            expected_opening = stored_final
    return breaks
