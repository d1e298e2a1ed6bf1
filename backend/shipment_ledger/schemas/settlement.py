"""
Settlement report schemas

The report is a read-only projection of one shipment: what came in, what sold,
what moved on, and how the supplier balance was reached.
"""
from pydantic import BaseModel
from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal


# ============================================================================
# Header
# ============================================================================

class ShipmentHeader(BaseModel):
    shipment_id: int
    number: str
    supplier_id: int
    supplier_name: str
    fifo_sequence: int
    arrival_date: date
    status: str
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None
    duration_days: int
    aging_warning: bool = False


# ============================================================================
# Stock movement
# ============================================================================

class ItemLine(BaseModel):
    """Per-item counters and weights"""
    shipment_item_id: int
    product_id: int
    product_name: str
    weight_per_unit: Decimal
    weight_label: Optional[str] = None
    cartons: int
    initial_quantity: int
    sold_quantity: int
    carryover_in_quantity: int
    carryover_out_quantity: int
    remaining_quantity: int
    expected_weight: Decimal
    sold_weight: Decimal
    wastage_quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal


class ProductSales(BaseModel):
    """Net sales of one product out of this shipment"""
    product_id: int
    product_name: str
    cartons: int
    weight: Decimal
    revenue: Decimal
    average_price: Decimal


class MovementLine(BaseModel):
    """One carryover edge seen from this shipment"""
    carryover_id: int
    product_id: int
    product_name: str
    counterpart_shipment_id: int
    counterpart_shipment_number: str
    cartons: int
    weight: Decimal
    reason: str
    created_at: Optional[datetime] = None


class WeightAnalysis(BaseModel):
    """Incoming versus outgoing weight, in kilograms"""
    incoming_weight: Decimal
    carryover_in_weight: Decimal
    returns_in_weight: Decimal
    total_weight_in: Decimal
    carryover_out_weight: Decimal
    effective_weight_in: Decimal
    sold_weight: Decimal
    remaining_weight: Decimal
    weight_difference: Decimal
    wastage: Decimal


# ============================================================================
# Financials
# ============================================================================

class FinancialSummary(BaseModel):
    """Balance chain figures.

    For a settled shipment these are reproduced from stored settlement fields;
    for an unsettled one they are a projection from live data.
    """
    total_sales: Decimal
    late_returns_value: Decimal
    late_returns_cartons: int = 0
    net_sales: Decimal
    commission_rate: Decimal
    company_commission: Decimal
    supplier_expenses: Decimal
    previous_balance: Decimal
    supplier_payments: Decimal
    final_balance: Decimal
    stored_final_balance: Optional[Decimal] = None
    live_total_sales: Decimal
    balance_matches: Optional[bool] = None
    sales_match: Optional[bool] = None
    projected: bool = False


class SettlementReport(BaseModel):
    header: ShipmentHeader
    items: List[ItemLine]
    sales_by_product: List[ProductSales]
    carryover_in: List[MovementLine]
    returns_in: List[MovementLine]
    carryover_out: List[MovementLine]
    weights: WeightAnalysis
    financials: FinancialSummary
    generated_at: datetime
