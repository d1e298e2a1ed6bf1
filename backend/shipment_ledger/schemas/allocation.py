"""
FIFO allocation schemas

Schemas for:
- Allocation plans returned by the allocator
- Read-only FIFO breakdown views of eligible stock
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
from decimal import Decimal


class AllocationEntry(BaseModel):
    """One slice of an allocation, drawn from a single shipment item"""
    shipment_item_id: int
    shipment_id: int
    shipment_number: str
    fifo_sequence: int
    cartons: int = Field(..., gt=0)
    weight_per_unit: Decimal
    unit_cost: Decimal = Decimal("0")


class AllocationPlan(BaseModel):
    """Ordered allocation covering the full requested carton count"""
    product_id: int
    requested: int
    entries: List[AllocationEntry]

    @property
    def total_cartons(self) -> int:
        return sum(entry.cartons for entry in self.entries)


class FifoBreakdownRow(BaseModel):
    """Eligible stock for a product, one row per shipment item in FIFO order"""
    shipment_item_id: int
    shipment_id: int
    shipment_number: str
    fifo_sequence: int
    arrival_date: date
    status: str
    weight_per_unit: Decimal
    weight_label: Optional[str] = None
    remaining_quantity: int
    unit_cost: Decimal = Decimal("0")

    class Config:
        from_attributes = True
