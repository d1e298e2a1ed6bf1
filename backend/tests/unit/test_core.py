"""
Unit Tests for settings, units of account, exceptions, logging and the transaction boundary
"""
import json
import logging
import pytest
from decimal import Decimal
from unittest.mock import MagicMock

import pydantic
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from shipment_ledger.core.quantities import cartons, kilograms, money, weight_of
from shipment_ledger.core.settings import Settings
from shipment_ledger.db.locking import atomic
from shipment_ledger.exceptions import (
    ConcurrencyError,
    ImmutableFieldError,
    InsufficientStockError,
    LockTimeoutError,
    TargetNotOpenError,
)
from shipment_ledger.logging_config import JsonFormatter

from tests.factories import create_test_shipment


class TestQuantities:

    def test_cartons_accepts_whole_numbers(self):
        assert cartons(3) == 3
        assert cartons(4.0) == 4

    @pytest.mark.parametrize("value", [2.5, True, float("inf"), float("nan")])
    def test_cartons_rejects_non_counts(self, value):
        with pytest.raises(TypeError):
            cartons(value)

    def test_weights_round_to_grams(self):
        assert kilograms("1.23456") == Decimal("1.235")
        assert weight_of(3, Decimal("2.5")) == Decimal("7.500")

    def test_money_rounds_half_up(self):
        assert money("2.345") == Decimal("2.35")
        assert money(Decimal("-0.005")) == Decimal("-0.01")


class TestSettings:

    def test_commission_rate_is_a_fraction(self):
        settings = Settings(COMPANY_COMMISSION_RATE=Decimal("7.5"))
        assert settings.commission_rate == Decimal("0.075")

    def test_commission_rate_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(COMPANY_COMMISSION_RATE=Decimal("150"))

    def test_lock_timeout_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(LOCK_TIMEOUT_MS=0)

    def test_database_url_override(self):
        assert Settings(DATABASE_URL="sqlite:///ledger.db").database_url == "sqlite:///ledger.db"

    def test_database_url_from_components(self):
        settings = Settings(DATABASE_URL=None, DB_HOST="db", DB_PORT=5433, DB_NAME="ledger",
                            DB_USER="u", DB_PASSWORD="p")
        assert settings.database_url == "postgresql+psycopg://u:p@db:5433/ledger"


class TestExceptions:

    def test_insufficient_stock_carries_shortfall(self):
        error = InsufficientStockError(7, requested=1000, available=40)
        payload = error.to_dict()

        assert payload["error"] == "INSUFFICIENT_STOCK"
        assert payload["category"] == "conflict"
        assert payload["retryable"] is False
        assert payload["details"]["shortfall"] == 960

    def test_state_errors_list_allowed_states(self):
        error = TargetNotOpenError(3, "closed")
        assert error.details["current_state"] == "closed"
        assert error.details["allowed_states"] == ["open"]

    def test_only_transient_errors_are_retryable(self):
        assert LockTimeoutError().retryable is True
        assert isinstance(LockTimeoutError(), ConcurrencyError)


class TestAtomic:

    def _session(self):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "sqlite"
        return db

    def test_commits_on_success(self):
        db = self._session()
        with atomic(db):
            pass
        db.commit.assert_called_once()
        db.rollback.assert_not_called()

    def test_rolls_back_and_reraises(self):
        db = self._session()
        with pytest.raises(ValueError):
            with atomic(db):
                raise ValueError("boom")
        db.rollback.assert_called_once()
        db.commit.assert_not_called()

    def test_stale_data_becomes_concurrency_error(self):
        db = self._session()
        with pytest.raises(ConcurrencyError):
            with atomic(db):
                raise StaleDataError("version mismatch")
        db.rollback.assert_called_once()

    def test_lock_wait_becomes_lock_timeout(self):
        db = self._session()
        with pytest.raises(LockTimeoutError):
            with atomic(db):
                raise OperationalError("UPDATE", {}, Exception("database is locked"))

    def test_other_operational_errors_propagate(self):
        db = self._session()
        with pytest.raises(OperationalError):
            with atomic(db):
                raise OperationalError("SELECT", {}, Exception("no such table: shipments"))
        db.rollback.assert_called_once()

    def test_sets_lock_timeout_on_postgresql(self):
        db = self._session()
        db.get_bind.return_value.dialect.name = "postgresql"
        with atomic(db):
            pass
        statement = db.execute.call_args[0][0]
        assert "lock_timeout" in str(statement)


class TestFifoSequence:

    def test_is_immutable_once_assigned(self, db_session):
        shipment = create_test_shipment(db_session)

        with pytest.raises(ImmutableFieldError):
            shipment.fifo_sequence = shipment.fifo_sequence + 10


class TestJsonFormatter:

    def test_renders_extra_context(self):
        record = logging.LogRecord("shipment_ledger.services", logging.INFO, __file__, 1,
                                   "Settled shipment %s", ("SHP-00001",), None)
        record.shipment_id = 7
        record.final_balance = Decimal("595.20")

        payload = json.loads(JsonFormatter(service="Shipment Ledger 1.0.0", environment="test").format(record))

        assert payload["message"] == "Settled shipment SHP-00001"
        assert payload["level"] == "INFO"
        assert payload["service"] == "Shipment Ledger 1.0.0"
        assert payload["shipment_id"] == 7
        assert payload["final_balance"] == "595.20"
