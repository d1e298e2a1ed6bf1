"""
Expense model

Owned by the expense-ledger collaborator. Settlement reads supplier charges
("supplier") and payments made to the supplier ("supplier_payment").
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Date, ForeignKey, Text

from shipment_ledger.db.base import Base


class ExpenseKind:
    SUPPLIER = "supplier"
    SUPPLIER_PAYMENT = "supplier_payment"
    OTHER = "other"


class Expense(Base):
    """Expense model - matches expenses table"""
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True, index=True)

    # Values: supplier, supplier_payment, other
    kind = Column(String(30), nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    expense_date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Expense {self.kind}: {self.amount}>"
