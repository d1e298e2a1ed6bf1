"""
Unit Tests for ledger invariants and balance math
"""
import pytest
from datetime import date
from decimal import Decimal

from sqlalchemy import text

from shipment_ledger.exceptions import LedgerIntegrityError
from shipment_ledger.models import ShipmentItem
from shipment_ledger.services.balance import compute_supplier_balance
from shipment_ledger.services.fifo_allocator import allocate_and_create
from shipment_ledger.services.invariants import (
    check_item,
    find_balance_chain_breaks,
    find_stock_inconsistencies,
    item_violations,
)
from shipment_ledger.services.settlement_service import settle

from tests.factories import (
    create_test_invoice,
    create_test_product,
    create_test_shipment,
    create_test_shipment_item,
    create_test_supplier,
)


def _item(**counters):
    values = dict(cartons=10, initial_quantity=10, sold_quantity=0, carryover_in_quantity=0,
                  carryover_out_quantity=0, remaining_quantity=10)
    values.update(counters)
    return ShipmentItem(id=1, **values)


class TestComputeSupplierBalance:

    def test_formula(self):
        balance = compute_supplier_balance(
            total_sales=Decimal("1000"),
            late_returns_value=Decimal("0"),
            commission_rate=Decimal("0.06"),
            supplier_expenses=Decimal("50"),
            previous_balance=Decimal("200"),
            supplier_payments=Decimal("100"),
        )

        assert balance.net_sales == Decimal("1000.00")
        assert balance.company_commission == Decimal("60.00")
        assert balance.final_balance == Decimal("990.00")

    def test_late_returns_reduce_net_sales(self):
        balance = compute_supplier_balance(
            total_sales="500", late_returns_value="100", commission_rate="0.10",
            supplier_expenses=0, previous_balance=0, supplier_payments=0,
        )

        assert balance.net_sales == Decimal("400.00")
        assert balance.company_commission == Decimal("40.00")
        assert balance.final_balance == Decimal("360.00")

    def test_rounds_half_up_to_cents(self):
        balance = compute_supplier_balance(
            total_sales="0.125", late_returns_value=0, commission_rate=0,
            supplier_expenses=0, previous_balance=0, supplier_payments=0,
        )

        assert balance.total_sales == Decimal("0.13")


class TestCheckItem:

    def test_consistent_item_passes(self):
        check_item(_item(sold_quantity=4, remaining_quantity=6))

    def test_carried_item_passes(self):
        check_item(_item(cartons=0, initial_quantity=5, carryover_in_quantity=5, remaining_quantity=5))

    def test_remaining_mismatch(self):
        with pytest.raises(LedgerIntegrityError):
            check_item(_item(sold_quantity=4, remaining_quantity=7))

    def test_negative_remaining(self):
        problems = item_violations(_item(sold_quantity=12, remaining_quantity=-2))
        assert any("negative" in problem for problem in problems)

    def test_initial_must_include_carryover_in(self):
        problems = item_violations(_item(carryover_in_quantity=5, remaining_quantity=15))
        assert any("initial_quantity" in problem for problem in problems)


class TestFlushGuard:

    def test_inconsistent_write_is_rejected(self, db_session):
        shipment = create_test_shipment(db_session)
        item = create_test_shipment_item(db_session, shipment, cartons=10)

        item.remaining_quantity = 11
        with pytest.raises(LedgerIntegrityError):
            db_session.commit()
        db_session.rollback()

        db_session.refresh(item)
        assert item.remaining_quantity == 10


class TestAudits:

    def test_clean_ledger_has_no_findings(self, db_session):
        shipment = create_test_shipment(db_session)
        create_test_shipment_item(db_session, shipment, cartons=10, sold=3)

        assert find_stock_inconsistencies(db_session) == []
        assert find_balance_chain_breaks(db_session) == []

    def test_finds_stored_conservation_break(self, db_session):
        shipment = create_test_shipment(db_session)
        item = create_test_shipment_item(db_session, shipment, cartons=10)
        # Simulate a row written outside the ORM by a broken job
        db_session.execute(text("PRAGMA ignore_check_constraints = ON"))
        try:
            db_session.execute(
                text("UPDATE shipment_items SET remaining_quantity = 7 WHERE id = :id"), {"id": item.id}
            )
            db_session.commit()

            [finding] = find_stock_inconsistencies(db_session)
        finally:
            db_session.execute(text("PRAGMA ignore_check_constraints = OFF"))

        assert finding["shipment_item_id"] == item.id
        assert finding["expected_remaining"] == 10
        assert finding["remaining"] == 7

    def test_finds_balance_chain_break(self, db_session):
        supplier = create_test_supplier(db_session, opening_balance=Decimal("100.00"))
        product = create_test_product(db_session)
        s1 = create_test_shipment(db_session, supplier)
        s2 = create_test_shipment(db_session, supplier)
        s3 = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, s1, product, cartons=10)
        invoice = create_test_invoice(db_session)
        allocate_and_create(db_session, invoice.id, product.id, 4, Decimal("3.00"))
        settle(db_session, s1.id, s2.id, as_of_date=date(2025, 1, 31))
        settle(db_session, s2.id, s3.id, as_of_date=date(2025, 1, 31))
        assert find_balance_chain_breaks(db_session, supplier_id=supplier.id) == []

        s2.previous_supplier_balance = Decimal("0.00")
        db_session.commit()

        issues = {brk["issue"] for brk in find_balance_chain_breaks(db_session, supplier_id=supplier.id)}
        assert "opening_balance_mismatch" in issues
