"""
Settlement Report Projector

Read-only view of one shipment for audit and print. Recomputes sales,
weights and the supplier balance from what is stored; never writes.

For a settled shipment the balance is rebuilt from the stored settlement
fields and compared with the stored final balance (balance_matches), and the
stored total sales with a fresh sum over invoice lines (sales_match). Late
returns recorded after the settlement are counted as still sold, so the
figures are the ones the settlement saw. Either flag being False means the
settlement engine and the data disagree.
"""
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from shipment_ledger.core.quantities import kilograms, money, weight_of
from shipment_ledger.core.settings import get_settings
from shipment_ledger.exceptions import NotFoundError
from shipment_ledger.models.shipment import Carryover, CarryoverReason, Shipment, ShipmentItem
from shipment_ledger.schemas.settlement import (
    FinancialSummary,
    ItemLine,
    MovementLine,
    ProductSales,
    SettlementReport,
    ShipmentHeader,
    WeightAnalysis,
)
from shipment_ledger.services.balance import compute_supplier_balance
from shipment_ledger.services.expense_ledger import ExpenseTableLedger, SupplierLedger
from shipment_ledger.services.ledger_queries import (
    counted_sale_lines,
    net_cartons,
    net_revenue,
    net_weight,
    returned_since_settlement,
    sold_weight_by_item,
    total_sales_value,
)
from shipment_ledger.services.settlement_service import late_returns_value, previous_supplier_balance

ZERO = Decimal("0")


def _movement(carryover: Carryover, item: ShipmentItem, counterpart: Shipment) -> MovementLine:
    return MovementLine(
        carryover_id=carryover.id,
        product_id=carryover.product_id,
        product_name=item.product.name,
        counterpart_shipment_id=counterpart.id,
        counterpart_shipment_number=counterpart.number,
        cartons=carryover.quantity,
        weight=weight_of(carryover.quantity, item.weight_per_unit),
        reason=carryover.reason,
        created_at=carryover.created_at,
    )


def _sales_by_product(lines, restored: Dict[int, int]) -> List[ProductSales]:
    grouped: Dict[int, dict] = OrderedDict()
    for line in lines:
        row = grouped.setdefault(line.product_id, {
            "product_name": line.shipment_item.product.name,
            "cartons": 0,
            "weight": ZERO,
            "revenue": ZERO,
        })
        back = restored.get(line.id, 0)
        row["cartons"] += net_cartons(line, back)
        row["weight"] += net_weight(line, back)
        row["revenue"] += net_revenue(line, back)

    sales = []
    for product_id, row in grouped.items():
        weight = kilograms(row["weight"])
        sales.append(ProductSales(
            product_id=product_id,
            product_name=row["product_name"],
            cartons=row["cartons"],
            weight=weight,
            revenue=money(row["revenue"]),
            average_price=money(row["revenue"] / weight) if weight else money(0),
        ))
    return sales


def generate_settlement_report(
    db: Session,
    shipment_id: int,
    *,
    as_of_date: Optional[date] = None,
    ledger: Optional[SupplierLedger] = None,
    commission_rate: Optional[Decimal] = None,
) -> SettlementReport:
    """
    Build the settlement report for a shipment.

    Args:
        db: Database session
        shipment_id: Shipment to report on
        as_of_date: Reference date for duration and, for unsettled shipments,
            the end of the payment window (defaults to today)
        ledger: Expense source used for unsettled projections
        commission_rate: Fraction used for unsettled projections

    Returns:
        SettlementReport
    """
    settings = get_settings()
    as_of_date = as_of_date or date.today()
    ledger = ledger or ExpenseTableLedger()

    shipment = db.get(Shipment, shipment_id)
    if not shipment:
        raise NotFoundError("Shipment", shipment_id)

    items = list(shipment.items)
    lines = counted_sale_lines(db, [item.id for item in items])
    restored = returned_since_settlement(db, shipment)
    sold_weights = sold_weight_by_item(lines, restored)

    end = shipment.settled_at.date() if shipment.settled_at else as_of_date
    duration_days = max((end - shipment.arrival_date).days, 0)
    header = ShipmentHeader(
        shipment_id=shipment.id,
        number=shipment.number,
        supplier_id=shipment.supplier_id,
        supplier_name=shipment.supplier.name,
        fifo_sequence=shipment.fifo_sequence,
        arrival_date=shipment.arrival_date,
        status=shipment.status,
        settled_at=shipment.settled_at,
        settled_by=shipment.settled_by,
        duration_days=duration_days,
        aging_warning=not shipment.is_settled and duration_days > settings.SHIPMENT_AGING_WARNING_DAYS,
    )

    item_lines = []
    for item in items:
        wpu = Decimal(str(item.weight_per_unit))
        item_lines.append(ItemLine(
            shipment_item_id=item.id,
            product_id=item.product_id,
            product_name=item.product.name,
            weight_per_unit=wpu,
            weight_label=item.weight_label,
            cartons=item.cartons,
            initial_quantity=item.initial_quantity,
            sold_quantity=item.sold_quantity,
            carryover_in_quantity=item.carryover_in_quantity,
            carryover_out_quantity=item.carryover_out_quantity,
            remaining_quantity=item.remaining_quantity,
            expected_weight=weight_of(item.initial_quantity, wpu),
            sold_weight=kilograms(sold_weights.get(item.id, ZERO)),
            wastage_quantity=kilograms(item.wastage_quantity or 0),
            unit_cost=money(item.unit_cost or 0),
            total_cost=money(Decimal(item.cartons) * Decimal(str(item.unit_cost or 0))),
        ))

    incoming = db.query(Carryover).filter(Carryover.to_shipment_id == shipment.id).order_by(Carryover.id).all()
    outgoing = (
        db.query(Carryover)
        .filter(
            Carryover.from_shipment_id == shipment.id,
            Carryover.reason == CarryoverReason.END_OF_SHIPMENT,
        )
        .order_by(Carryover.id)
        .all()
    )
    carryover_in = [
        _movement(c, c.to_shipment_item, db.get(Shipment, c.from_shipment_id))
        for c in incoming if c.reason == CarryoverReason.END_OF_SHIPMENT
    ]
    returns_in = [
        _movement(c, c.to_shipment_item, db.get(Shipment, c.from_shipment_id))
        for c in incoming if c.reason == CarryoverReason.LATE_RETURN
    ]
    carryover_out = [_movement(c, c.from_shipment_item, db.get(Shipment, c.to_shipment_id)) for c in outgoing]

    incoming_weight = kilograms(sum((weight_of(item.cartons, item.weight_per_unit) for item in items), ZERO))
    carryover_in_weight = kilograms(sum((m.weight for m in carryover_in), ZERO))
    returns_in_weight = kilograms(sum((m.weight for m in returns_in), ZERO))
    carryover_out_weight = kilograms(sum((m.weight for m in carryover_out), ZERO))
    total_weight_in = kilograms(incoming_weight + carryover_in_weight + returns_in_weight)
    effective_weight_in = kilograms(total_weight_in - carryover_out_weight)
    sold_weight = kilograms(sum(sold_weights.values(), ZERO))
    remaining_weight = kilograms(sum(
        (weight_of(item.remaining_quantity, item.weight_per_unit) for item in items), ZERO
    ))
    weights = WeightAnalysis(
        incoming_weight=incoming_weight,
        carryover_in_weight=carryover_in_weight,
        returns_in_weight=returns_in_weight,
        total_weight_in=total_weight_in,
        carryover_out_weight=carryover_out_weight,
        effective_weight_in=effective_weight_in,
        sold_weight=sold_weight,
        remaining_weight=remaining_weight,
        weight_difference=kilograms(effective_weight_in - sold_weight - remaining_weight),
        wastage=kilograms(sum((line.wastage_quantity for line in item_lines), ZERO)),
    )

    live_sales = total_sales_value(lines, restored)
    returns_value, returned_cartons = late_returns_value(db, shipment)
    if shipment.is_settled:
        balance = compute_supplier_balance(
            total_sales=shipment.total_sales or 0,
            late_returns_value=shipment.late_returns_value or 0,
            commission_rate=shipment.commission_rate or 0,
            supplier_expenses=shipment.total_supplier_expenses or 0,
            previous_balance=shipment.previous_supplier_balance or 0,
            supplier_payments=shipment.total_supplier_payments or 0,
        )
        stored_final = money(shipment.final_supplier_balance or 0)
        financials = FinancialSummary(
            **_balance_fields(balance),
            late_returns_cartons=returned_cartons,
            stored_final_balance=stored_final,
            live_total_sales=live_sales,
            balance_matches=balance.final_balance == stored_final,
            sales_match=live_sales == money(shipment.total_sales or 0),
            projected=False,
        )
    else:
        rate = Decimal(str(commission_rate)) if commission_rate is not None else settings.commission_rate
        balance = compute_supplier_balance(
            total_sales=live_sales,
            late_returns_value=returns_value,
            commission_rate=rate,
            supplier_expenses=ledger.supplier_expenses(db, shipment),
            previous_balance=previous_supplier_balance(db, shipment),
            supplier_payments=ledger.supplier_payments(
                db, shipment.supplier_id, shipment.arrival_date, as_of_date
            ),
        )
        financials = FinancialSummary(
            **_balance_fields(balance),
            late_returns_cartons=returned_cartons,
            live_total_sales=live_sales,
            projected=True,
        )

    return SettlementReport(
        header=header,
        items=item_lines,
        sales_by_product=_sales_by_product(lines, restored),
        carryover_in=carryover_in,
        returns_in=returns_in,
        carryover_out=carryover_out,
        weights=weights,
        financials=financials,
        generated_at=datetime.utcnow(),
    )


def _balance_fields(balance) -> dict:
    return {
        "total_sales": balance.total_sales,
        "late_returns_value": balance.late_returns_value,
        "net_sales": balance.net_sales,
        "commission_rate": balance.commission_rate,
        "company_commission": balance.company_commission,
        "supplier_expenses": balance.supplier_expenses,
        "previous_balance": balance.previous_balance,
        "supplier_payments": balance.supplier_payments,
        "final_balance": balance.final_balance,
    }
