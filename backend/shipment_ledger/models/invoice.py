"""
Invoice models

Invoices are created by the invoicing collaborator; the ledger only attaches
lines to them. Each line remembers the exact ShipmentItem it drew from, which
is what makes reversal exact.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Date, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from shipment_ledger.db.base import Base


class InvoiceStatus:
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Invoice(Base):
    """Invoice model - matches invoices table"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    number = Column(String(50), unique=True, nullable=False)
    customer_name = Column(String(255), nullable=True)
    invoice_date = Column(Date, nullable=False)

    # Values: active, cancelled
    status = Column(String(20), nullable=False, default=InvoiceStatus.ACTIVE)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lines = relationship("InvoiceLine", back_populates="invoice", order_by="InvoiceLine.id")

    def __repr__(self):
        return f"<Invoice {self.number} {self.status}>"


class InvoiceLine(Base):
    """Invoice line model - matches invoice_lines table"""
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    shipment_item_id = Column(Integer, ForeignKey("shipment_items.id"), nullable=False, index=True)

    cartons = Column(Integer, nullable=False)
    weight = Column(Numeric(10, 3), nullable=False)  # kg from the scale
    unit_price = Column(Numeric(10, 2), nullable=False)  # per kg
    subtotal = Column(Numeric(15, 2), nullable=False)

    # Working date of the daily report the line was booked on
    line_date = Column(Date, nullable=True)

    # Cartons sent back through the return flow
    returned_quantity = Column(Integer, nullable=False, default=0)

    reversed_at = Column(DateTime, nullable=True)
    reversed_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)

    invoice = relationship("Invoice", back_populates="lines")
    shipment_item = relationship("ShipmentItem", back_populates="invoice_lines")

    __table_args__ = (
        CheckConstraint("cartons > 0", name="ck_invoice_lines_cartons_positive"),
        CheckConstraint("returned_quantity >= 0 AND returned_quantity <= cartons",
                        name="ck_invoice_lines_returned_range"),
    )

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None

    def __repr__(self):
        return f"<InvoiceLine {self.id}: {self.cartons} from item {self.shipment_item_id}>"
