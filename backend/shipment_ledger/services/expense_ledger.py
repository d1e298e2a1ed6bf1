"""
Expense ledger collaborator

Settlement needs two figures it does not own: supplier charges booked against
a shipment, and payments made to the supplier over a period. Callers can pass
any object with these two methods; ExpenseTableLedger reads the expenses table.
"""
from datetime import date
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from shipment_ledger.models.expense import Expense, ExpenseKind
from shipment_ledger.models.shipment import Shipment


class SupplierLedger(Protocol):
    def supplier_expenses(self, db: Session, shipment: Shipment) -> Decimal:
        ...

    def supplier_payments(self, db: Session, supplier_id: int, start: date, end: date) -> Decimal:
        ...


class ExpenseTableLedger:
    """SupplierLedger backed by the expenses table."""

    def supplier_expenses(self, db: Session, shipment: Shipment) -> Decimal:
        total = db.query(func.coalesce(func.sum(Expense.amount), 0)).filter(
            Expense.shipment_id == shipment.id,
            Expense.kind == ExpenseKind.SUPPLIER,
        ).scalar()
        return Decimal(str(total))

    def supplier_payments(self, db: Session, supplier_id: int, start: date, end: date) -> Decimal:
        total = db.query(func.coalesce(func.sum(Expense.amount), 0)).filter(
            Expense.supplier_id == supplier_id,
            Expense.kind == ExpenseKind.SUPPLIER_PAYMENT,
            Expense.expense_date >= start,
            Expense.expense_date <= end,
        ).scalar()
        return Decimal(str(total))
