"""Database models"""
from shipment_ledger.models.supplier import Supplier, Product
from shipment_ledger.models.shipment import (
    Shipment, ShipmentItem, Carryover, ShipmentStatus, CarryoverReason
)
from shipment_ledger.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from shipment_ledger.models.expense import Expense, ExpenseKind

__all__ = [
    # Master data
    "Supplier",
    "Product",
    # Stock
    "Shipment",
    "ShipmentItem",
    "Carryover",
    "ShipmentStatus",
    "CarryoverReason",
    # Sales
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
    # Expense ledger
    "Expense",
    "ExpenseKind",
]
