"""
Test data factories for the shipment ledger.

Provides functions to create test entities with sensible defaults.

Unlike flush-only factories, these commit: ledger operations roll back their
own transaction on failure, and the fixture data has to survive that.

Usage:
    from tests.factories import create_test_shipment, create_test_shipment_item

    def test_something(db_session):
        shipment = create_test_shipment(db_session)
        item = create_test_shipment_item(db_session, shipment, cartons=100)
"""
from datetime import date
from decimal import Decimal
from typing import Optional, Dict
from sqlalchemy.orm import Session

from shipment_ledger.models import (
    Expense, ExpenseKind, Invoice, InvoiceStatus, Product, Shipment, ShipmentItem,
    ShipmentStatus, Supplier,
)
from shipment_ledger.services.shipment_intake import next_fifo_sequence


# =============================================================================
# SEQUENCE MANAGEMENT
# =============================================================================

_sequences: Dict[str, int] = {}


def reset_sequences():
    """Reset all sequences. Call between tests for predictable names."""
    global _sequences
    _sequences = {}


def _next(name: str) -> int:
    """Get next sequence number for a given entity type."""
    _sequences[name] = _sequences.get(name, 0) + 1
    return _sequences[name]


def _save(db: Session, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


# =============================================================================
# MASTER DATA
# =============================================================================

def create_test_supplier(
    db: Session,
    name: Optional[str] = None,
    opening_balance: Decimal = Decimal("0.00"),
    **overrides
) -> Supplier:
    seq = _next("supplier")
    return _save(db, Supplier(
        name=name or f"Test Supplier {seq}",
        opening_balance=opening_balance,
        **overrides
    ))


def create_test_product(
    db: Session,
    sku: Optional[str] = None,
    name: Optional[str] = None,
    **overrides
) -> Product:
    seq = _next("product")
    return _save(db, Product(
        sku=sku or f"PROD-{seq:04d}",
        name=name or f"Test Product {seq}",
        active=overrides.pop("active", True),
        **overrides
    ))


# =============================================================================
# STOCK
# =============================================================================

def create_test_shipment(
    db: Session,
    supplier: Optional[Supplier] = None,
    arrival_date: Optional[date] = None,
    status: str = ShipmentStatus.OPEN,
    **overrides
) -> Shipment:
    """
    Create a test shipment with the next fifo_sequence.

    Args:
        db: Database session
        supplier: Owning supplier (created if not provided)
        arrival_date: Defaults to 2025-01-01
        status: open, closed or settled
        **overrides: Additional field overrides

    Returns:
        Created Shipment instance
    """
    supplier = supplier or create_test_supplier(db)
    seq = _next("shipment")
    return _save(db, Shipment(
        number=overrides.pop("number", f"SHP-T{seq:04d}"),
        supplier_id=supplier.id,
        fifo_sequence=overrides.pop("fifo_sequence", next_fifo_sequence(db)),
        arrival_date=arrival_date or date(2025, 1, 1),
        status=status,
        **overrides
    ))


def create_test_shipment_item(
    db: Session,
    shipment: Shipment,
    product: Optional[Product] = None,
    cartons: int = 100,
    weight_per_unit: Decimal = Decimal("10.000"),
    sold: int = 0,
    **overrides
) -> ShipmentItem:
    """Create a consistent stock line: initial = cartons, remaining = cartons - sold."""
    product = product or create_test_product(db)
    return _save(db, ShipmentItem(
        shipment_id=shipment.id,
        product_id=product.id,
        weight_per_unit=weight_per_unit,
        weight_label=overrides.pop("weight_label", None),
        unit_cost=overrides.pop("unit_cost", Decimal("0.00")),
        cartons=cartons,
        initial_quantity=cartons,
        sold_quantity=sold,
        carryover_in_quantity=0,
        carryover_out_quantity=0,
        remaining_quantity=cartons - sold,
        wastage_quantity=Decimal("0"),
        **overrides
    ))


# =============================================================================
# SALES AND EXPENSES
# =============================================================================

def create_test_invoice(
    db: Session,
    number: Optional[str] = None,
    status: str = InvoiceStatus.ACTIVE,
    **overrides
) -> Invoice:
    seq = _next("invoice")
    return _save(db, Invoice(
        number=number or f"INV-{seq:05d}",
        customer_name=overrides.pop("customer_name", f"Customer {seq}"),
        invoice_date=overrides.pop("invoice_date", date(2025, 1, 5)),
        status=status,
        **overrides
    ))


def create_test_expense(
    db: Session,
    supplier: Supplier,
    amount: Decimal,
    kind: str = ExpenseKind.SUPPLIER,
    shipment: Optional[Shipment] = None,
    expense_date: Optional[date] = None,
    **overrides
) -> Expense:
    return _save(db, Expense(
        supplier_id=supplier.id,
        shipment_id=shipment.id if shipment else None,
        kind=kind,
        amount=amount,
        expense_date=expense_date or date(2025, 1, 10),
        **overrides
    ))
