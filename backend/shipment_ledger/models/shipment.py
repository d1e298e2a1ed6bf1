"""
Shipment models

A Shipment is one supplier's batch arriving on one date. Its ShipmentItems are
the stock lines the FIFO allocator draws from; Carryover rows are the audit
edges left behind when stock moves between shipments.

All ShipmentItem counters are carton counts. Weights (weight_per_unit,
wastage_quantity) are kilograms.
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Date, ForeignKey, Text, CheckConstraint, Index
)
from sqlalchemy.orm import relationship, validates

from shipment_ledger.db.base import Base
from shipment_ledger.exceptions import ImmutableFieldError


class ShipmentStatus:
    OPEN = "open"
    CLOSED = "closed"
    SETTLED = "settled"

    # Statuses whose stock the allocator may consume
    ALLOCATABLE = (OPEN, CLOSED)


class CarryoverReason:
    END_OF_SHIPMENT = "end_of_shipment"
    LATE_RETURN = "late_return"


class Shipment(Base):
    """Shipment model - matches shipments table"""
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True)
    number = Column(String(50), unique=True, nullable=False)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)

    # Authoritative consumption order; arrival_date is for reporting only
    fifo_sequence = Column(Integer, nullable=False, index=True)
    arrival_date = Column(Date, nullable=False)

    # Values: open, closed, settled
    status = Column(String(20), nullable=False, default=ShipmentStatus.OPEN, index=True)
    notes = Column(Text, nullable=True)

    # Settlement audit
    settled_at = Column(DateTime, nullable=True)
    settled_by = Column(String(100), nullable=True)

    # Settlement totals (populated only while settled)
    total_sales = Column(Numeric(15, 2), nullable=True)
    total_sold_quantity = Column(Integer, nullable=True)
    total_wastage = Column(Numeric(15, 3), nullable=True)
    total_carryover_out = Column(Integer, nullable=True)
    total_supplier_expenses = Column(Numeric(15, 2), nullable=True)
    total_supplier_payments = Column(Numeric(15, 2), nullable=True)
    late_returns_value = Column(Numeric(15, 2), nullable=True)
    commission_rate = Column(Numeric(6, 4), nullable=True)
    net_sales = Column(Numeric(15, 2), nullable=True)
    company_commission = Column(Numeric(15, 2), nullable=True)

    # Balance chain pair
    previous_supplier_balance = Column(Numeric(15, 2), nullable=True)
    final_supplier_balance = Column(Numeric(15, 2), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)

    supplier = relationship("Supplier", back_populates="shipments")
    items = relationship("ShipmentItem", back_populates="shipment", order_by="ShipmentItem.id")

    @validates("fifo_sequence")
    def _freeze_fifo_sequence(self, key, value):
        if self.fifo_sequence is not None and value != self.fifo_sequence:
            raise ImmutableFieldError("Shipment", key)
        return value

    @property
    def is_settled(self) -> bool:
        return self.status == ShipmentStatus.SETTLED

    def __repr__(self):
        return f"<Shipment {self.number} seq={self.fifo_sequence} {self.status}>"


class ShipmentItem(Base):
    """Shipment item model - matches shipment_items table"""
    __tablename__ = "shipment_items"

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)

    # Nominal carton weight (kg) used for forward planning and wastage
    weight_per_unit = Column(Numeric(8, 3), nullable=False)
    weight_label = Column(String(50), nullable=True)  # e.g. "2-3 kg"

    # Carton counters
    cartons = Column(Integer, nullable=False, default=0)  # fresh intake only
    initial_quantity = Column(Integer, nullable=False, default=0)  # cartons + carryover in
    sold_quantity = Column(Integer, nullable=False, default=0)
    carryover_in_quantity = Column(Integer, nullable=False, default=0)
    carryover_out_quantity = Column(Integer, nullable=False, default=0)
    remaining_quantity = Column(Integer, nullable=False, default=0)

    # Weight lost between nominal and scale weight, set at settlement (kg)
    wastage_quantity = Column(Numeric(10, 3), nullable=False, default=0)

    unit_cost = Column(Numeric(10, 2), nullable=False, default=0)

    # Optimistic lock; bumps on every UPDATE
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    shipment = relationship("Shipment", back_populates="items")
    product = relationship("Product")
    invoice_lines = relationship("InvoiceLine", back_populates="shipment_item")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_shipment_items_remaining_non_negative"),
        CheckConstraint(
            "remaining_quantity = cartons + carryover_in_quantity - sold_quantity - carryover_out_quantity",
            name="ck_shipment_items_conservation",
        ),
        CheckConstraint(
            "initial_quantity = cartons + carryover_in_quantity",
            name="ck_shipment_items_initial",
        ),
        Index("ix_shipment_items_fifo", "product_id", "remaining_quantity"),
    )

    @property
    def expected_remaining(self) -> int:
        return (
            (self.cartons or 0)
            + (self.carryover_in_quantity or 0)
            - (self.sold_quantity or 0)
            - (self.carryover_out_quantity or 0)
        )

    def __repr__(self):
        return (
            f"<ShipmentItem {self.id} shipment={self.shipment_id} product={self.product_id} "
            f"remaining={self.remaining_quantity}>"
        )


class Carryover(Base):
    """Carryover model - matches carryovers table

    Immutable audit edge for stock moved between shipment items.
    """
    __tablename__ = "carryovers"

    id = Column(Integer, primary_key=True, index=True)

    from_shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    from_shipment_item_id = Column(Integer, ForeignKey("shipment_items.id"), nullable=False)
    to_shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    to_shipment_item_id = Column(Integer, ForeignKey("shipment_items.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    # Set on late returns: the sale the cartons came back from
    invoice_line_id = Column(Integer, ForeignKey("invoice_lines.id"), nullable=True, index=True)

    quantity = Column(Integer, nullable=False)  # cartons

    # Values: end_of_shipment, late_return
    reason = Column(String(30), nullable=False, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)

    from_shipment_item = relationship("ShipmentItem", foreign_keys=[from_shipment_item_id])
    to_shipment_item = relationship("ShipmentItem", foreign_keys=[to_shipment_item_id])

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_carryovers_quantity_positive"),
    )

    def __repr__(self):
        return f"<Carryover {self.reason}: {self.quantity} {self.from_shipment_item_id}->{self.to_shipment_item_id}>"
