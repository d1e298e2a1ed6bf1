"""
Unit Tests for the FIFO Allocator

Tests:
1. Plan ordering (fifo_sequence, then item id) and eligibility
2. All-or-nothing failure with the numeric shortfall
3. Invoice line creation, weight split and auto-close
4. Exact reversal
5. Availability and breakdown queries agree with allocation
6. Lock order: shipments before their items
"""
import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

from shipment_ledger.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    LineAlreadyReversedError,
    NotFoundError,
    ValidationError,
)
from shipment_ledger.models import InvoiceLine, InvoiceStatus, ShipmentStatus
from shipment_ledger.services import fifo_allocator
from shipment_ledger.services.fifo_allocator import (
    allocate,
    allocate_and_create,
    available_stock,
    fifo_breakdown,
    reverse_allocation,
)

from tests.factories import (
    create_test_invoice,
    create_test_product,
    create_test_shipment,
    create_test_shipment_item,
    create_test_supplier,
)


@pytest.fixture
def product(db_session):
    return create_test_product(db_session, name="Tomatoes")


@pytest.fixture
def supplier(db_session):
    return create_test_supplier(db_session)


def _counters(item):
    return (
        item.initial_quantity,
        item.sold_quantity,
        item.carryover_in_quantity,
        item.carryover_out_quantity,
        item.remaining_quantity,
    )


class TestAllocate:
    """Tests for allocate()"""

    def test_consumes_lowest_fifo_sequence_first(self, db_session, supplier, product):
        """fifo_sequence wins over arrival_date"""
        older = create_test_shipment(db_session, supplier, arrival_date=date(2025, 2, 1))
        newer = create_test_shipment(db_session, supplier, arrival_date=date(2025, 1, 1))
        newer_item = create_test_shipment_item(db_session, newer, product, cartons=50)
        older_item = create_test_shipment_item(db_session, older, product, cartons=20)

        plan = allocate(db_session, product.id, 30)

        assert [(e.shipment_item_id, e.cartons) for e in plan.entries] == [
            (older_item.id, 20),
            (newer_item.id, 10),
        ]
        assert plan.total_cartons == 30
        assert plan.entries[0].fifo_sequence < plan.entries[1].fifo_sequence

    def test_ties_within_shipment_break_by_item_id(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        first = create_test_shipment_item(db_session, shipment, product, cartons=5)
        second = create_test_shipment_item(
            db_session, shipment, product, cartons=5, weight_per_unit=Decimal("12.000")
        )

        plan = allocate(db_session, product.id, 8)

        assert [(e.shipment_item_id, e.cartons) for e in plan.entries] == [(first.id, 5), (second.id, 3)]

    def test_skips_settled_shipments_and_empty_items(self, db_session, supplier, product):
        settled = create_test_shipment(db_session, supplier, status=ShipmentStatus.SETTLED)
        create_test_shipment_item(db_session, settled, product, cartons=100)
        closed = create_test_shipment(db_session, supplier, status=ShipmentStatus.CLOSED)
        create_test_shipment_item(db_session, closed, product, cartons=10, sold=10)
        closed_item = create_test_shipment_item(db_session, closed, product, cartons=15)

        plan = allocate(db_session, product.id, 15)

        assert [e.shipment_item_id for e in plan.entries] == [closed_item.id]

    def test_plan_does_not_change_stock(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        item = create_test_shipment_item(db_session, shipment, product, cartons=40)

        allocate(db_session, product.id, 25)
        db_session.rollback()
        db_session.refresh(item)

        assert item.remaining_quantity == 40
        assert item.sold_quantity == 0

    def test_repeated_plans_are_identical(self, db_session, supplier, product):
        for cartons in (7, 9, 11):
            shipment = create_test_shipment(db_session, supplier)
            create_test_shipment_item(db_session, shipment, product, cartons=cartons)

        assert allocate(db_session, product.id, 20) == allocate(db_session, product.id, 20)

    def test_insufficient_stock_reports_requested_and_available(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, shipment, product, cartons=25)
        other = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, other, product, cartons=15)

        with pytest.raises(InsufficientStockError) as exc_info:
            allocate(db_session, product.id, 1000)

        assert exc_info.value.requested == 1000
        assert exc_info.value.available == 40
        assert exc_info.value.details["shortfall"] == 960

    @pytest.mark.parametrize("quantity", [0, -5, 2.5, float("inf"), float("nan")])
    def test_rejects_bad_quantity(self, db_session, product, quantity):
        with pytest.raises(ValidationError):
            allocate(db_session, product.id, quantity)


class TestAllocateAndCreate:
    """Tests for allocate_and_create()"""

    def test_writes_one_line_per_item_touched(self, db_session, supplier, product):
        s1 = create_test_shipment(db_session, supplier)
        s2 = create_test_shipment(db_session, supplier)
        first = create_test_shipment_item(db_session, s1, product, cartons=20)
        second = create_test_shipment_item(db_session, s2, product, cartons=50)
        invoice = create_test_invoice(db_session)

        lines = allocate_and_create(
            db_session, invoice.id, product.id, 30, Decimal("2.50"),
            actor="cashier", as_of_date=date(2025, 1, 7),
        )

        assert [(line.shipment_item_id, line.cartons) for line in lines] == [(first.id, 20), (second.id, 10)]
        assert [line.weight for line in lines] == [Decimal("200.000"), Decimal("100.000")]
        assert [line.subtotal for line in lines] == [Decimal("500.00"), Decimal("250.00")]
        assert all(line.line_date == date(2025, 1, 7) for line in lines)
        assert all(line.created_by == "cashier" for line in lines)

        db_session.refresh(first)
        db_session.refresh(second)
        assert (first.sold_quantity, first.remaining_quantity) == (20, 0)
        assert (second.sold_quantity, second.remaining_quantity) == (10, 40)

    def test_splits_scale_weight_by_carton_share(self, db_session, supplier, product):
        s1 = create_test_shipment(db_session, supplier)
        s2 = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, s1, product, cartons=20)
        create_test_shipment_item(db_session, s2, product, cartons=50)
        invoice = create_test_invoice(db_session)

        lines = allocate_and_create(
            db_session, invoice.id, product.id, 30, Decimal("2.00"), total_weight=Decimal("290.5")
        )

        assert [Decimal(str(line.weight)) for line in lines] == [Decimal("193.667"), Decimal("96.833")]
        assert sum(Decimal(str(line.weight)) for line in lines) == Decimal("290.500")

    def test_closes_open_shipment_once_sold_out(self, db_session, supplier, product):
        sold_out = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, sold_out, product, cartons=30)
        partly = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, partly, product, cartons=30)
        invoice = create_test_invoice(db_session)

        allocate_and_create(db_session, invoice.id, product.id, 40, Decimal("1.00"))

        db_session.refresh(sold_out)
        db_session.refresh(partly)
        assert sold_out.status == ShipmentStatus.CLOSED
        assert partly.status == ShipmentStatus.OPEN

    def test_insufficient_stock_mutates_nothing(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        item = create_test_shipment_item(db_session, shipment, product, cartons=40)
        invoice = create_test_invoice(db_session)

        with pytest.raises(InsufficientStockError) as exc_info:
            allocate_and_create(db_session, invoice.id, product.id, 1000, Decimal("2.00"))

        assert (exc_info.value.requested, exc_info.value.available) == (1000, 40)
        db_session.refresh(item)
        assert _counters(item) == (40, 0, 0, 0, 40)
        assert db_session.query(InvoiceLine).count() == 0

    def test_cancelled_invoice_is_refused(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, shipment, product, cartons=10)
        invoice = create_test_invoice(db_session, status=InvoiceStatus.CANCELLED)

        with pytest.raises(InvalidStateError):
            allocate_and_create(db_session, invoice.id, product.id, 5, Decimal("2.00"))

    def test_missing_invoice(self, db_session, product):
        with pytest.raises(NotFoundError):
            allocate_and_create(db_session, 999, product.id, 5, Decimal("2.00"))

    def test_negative_price_rejected_before_any_lookup(self, db_session, product):
        with pytest.raises(ValidationError):
            allocate_and_create(db_session, 999, product.id, 5, Decimal("-1"))


class TestReverseAllocation:
    """Tests for reverse_allocation()"""

    def test_round_trip_restores_item_counters(self, db_session, supplier, product):
        s1 = create_test_shipment(db_session, supplier)
        s2 = create_test_shipment(db_session, supplier)
        first = create_test_shipment_item(db_session, s1, product, cartons=20, sold=3)
        second = create_test_shipment_item(db_session, s2, product, cartons=50)
        before = [_counters(first), _counters(second)]
        invoice = create_test_invoice(db_session)

        lines = allocate_and_create(db_session, invoice.id, product.id, 30, Decimal("2.00"))
        for line in lines:
            reverse_allocation(db_session, line.id, actor="manager")

        db_session.refresh(first)
        db_session.refresh(second)
        assert [_counters(first), _counters(second)] == before
        for line in lines:
            db_session.refresh(line)
            assert line.reversed_at is not None
            assert line.reversed_by == "manager"

    def test_second_reversal_is_refused(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        item = create_test_shipment_item(db_session, shipment, product, cartons=20)
        invoice = create_test_invoice(db_session)
        [line] = allocate_and_create(db_session, invoice.id, product.id, 5, Decimal("2.00"))

        reverse_allocation(db_session, line.id)
        with pytest.raises(LineAlreadyReversedError):
            reverse_allocation(db_session, line.id)

        db_session.refresh(item)
        assert item.remaining_quantity == 20

    def test_refused_when_source_shipment_settled(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        item = create_test_shipment_item(db_session, shipment, product, cartons=20)
        invoice = create_test_invoice(db_session)
        [line] = allocate_and_create(db_session, invoice.id, product.id, 5, Decimal("2.00"))
        shipment.status = ShipmentStatus.SETTLED
        db_session.commit()

        with pytest.raises(InvalidStateError):
            reverse_allocation(db_session, line.id)

        db_session.refresh(item)
        assert item.sold_quantity == 5

    def test_missing_line(self, db_session):
        with pytest.raises(NotFoundError):
            reverse_allocation(db_session, 12345)


class TestStockQueries:
    """Tests for available_stock() and fifo_breakdown()"""

    def test_available_stock_counts_eligible_items_only(self, db_session, supplier, product):
        open_shipment = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, open_shipment, product, cartons=20)
        closed = create_test_shipment(db_session, supplier, status=ShipmentStatus.CLOSED)
        create_test_shipment_item(db_session, closed, product, cartons=15)
        settled = create_test_shipment(db_session, supplier, status=ShipmentStatus.SETTLED)
        create_test_shipment_item(db_session, settled, product, cartons=100)
        create_test_shipment_item(db_session, open_shipment, create_test_product(db_session), cartons=70)

        assert available_stock(db_session, product.id) == 35

    def test_available_stock_for_unknown_product_is_zero(self, db_session):
        assert available_stock(db_session, 404) == 0

    def test_breakdown_matches_allocation_order(self, db_session, supplier, product):
        for cartons in (12, 8, 30):
            shipment = create_test_shipment(db_session, supplier)
            create_test_shipment_item(db_session, shipment, product, cartons=cartons)

        breakdown = fifo_breakdown(db_session, product.id)
        plan = allocate(db_session, product.id, 50)

        assert [row.shipment_item_id for row in breakdown] == [e.shipment_item_id for e in plan.entries]
        assert [row.remaining_quantity for row in breakdown] == [12, 8, 30]
        assert sum(row.remaining_quantity for row in breakdown) == available_stock(db_session, product.id)


class TestLockOrder:
    """Allocation takes shipment locks before item locks, like settlement"""

    def test_shipments_locked_before_items(self, db_session, supplier, product):
        shipment = create_test_shipment(db_session, supplier)
        create_test_shipment_item(db_session, shipment, product, cartons=10)
        invoice = create_test_invoice(db_session)

        order = MagicMock()
        with patch.object(fifo_allocator, "_lock_shipment_rows",
                          wraps=fifo_allocator._lock_shipment_rows) as lock_shipments, \
                patch.object(fifo_allocator, "_lock_eligible_items",
                             wraps=fifo_allocator._lock_eligible_items) as lock_items:
            order.attach_mock(lock_shipments, "shipments")
            order.attach_mock(lock_items, "items")
            allocate_and_create(db_session, invoice.id, product.id, 10, Decimal("1.00"))

        # Candidate shipments, their items, then the sold-out shipment again
        assert [name for name, _args, _kwargs in order.mock_calls] == ["shipments", "items", "shipments"]
        db_session.refresh(shipment)
        assert shipment.status == ShipmentStatus.CLOSED
