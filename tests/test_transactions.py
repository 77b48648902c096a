import importlib
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from pg_lesson import sqlstate_of

tx = importlib.import_module("01_transactions_and_isolation")


@pytest.fixture
def seeded(engine):
	tx.prepare(engine)
	yield engine
	with engine.begin() as conn:
		conn.execute(text("DROP TABLE IF EXISTS ffiec_reci;"))


@pytest.mark.integration
def test_commit_persists(seeded):
	assert tx.demo_commit(seeded) == Decimal("130000")


@pytest.mark.integration
def test_rollback_discards_update(seeded):
	inside, after = tx.demo_rollback(seeded)
	assert inside == 0
	assert after == Decimal("98000")


@pytest.mark.integration
def test_engine_begin_rolls_back_on_python_exception(seeded):
	assert tx.demo_context_transaction(seeded) == "AMENDED"


@pytest.mark.integration
def test_set_transaction_isolation_is_visible(seeded):
	seen = tx.show_isolation(seeded)
	assert seen["default"] in (
		"read uncommitted", "read committed", "repeatable read", "serializable")
	assert seen["READ COMMITTED"] == "read committed"
	assert seen["REPEATABLE READ"] == "repeatable read"
	assert seen["SERIALIZABLE"] == "serializable"


@pytest.mark.integration
def test_read_committed_sees_concurrent_commit(seeded):
	first, second, after = tx.demo_read_committed(seeded)
	assert first == Decimal("15500")
	assert second == Decimal("16500")
	assert after == Decimal("16500")


@pytest.mark.integration
def test_repeatable_read_keeps_snapshot(seeded):
	first, second, after = tx.demo_repeatable_read(seeded)
	assert first == second == Decimal("15500")
	assert after == Decimal("16500")


@pytest.mark.integration
def test_repeatable_read_refuses_lost_update(seeded):
	assert tx.demo_concurrent_update(seeded) == "40001"
	with seeded.connect() as conn:
		value = conn.execute(text(
			"SELECT RCON2365 FROM ffiec_reci WHERE rssd_id = 480228;")).scalar_one()
	assert value == Decimal("125250")


@pytest.mark.integration
def test_repeatable_read_allows_write_skew(seeded):
	res = tx.demo_write_skew(seeded, "REPEATABLE READ")
	assert res["failures"] == {}
	assert res["active_total"] == Decimal("55000")
	assert res["active_total"] < tx.SWEEP_FLOOR


@pytest.mark.integration
def test_serializable_blocks_write_skew(seeded):
	res = tx.demo_write_skew(seeded, "serializable")
	assert list(res["failures"].values()) == ["40001"]
	assert res["active_total"] == Decimal("65000")


def test_write_skew_rejects_unknown_level():
	with pytest.raises(ValueError):
		tx.demo_write_skew(None, "snapshot")


@pytest.mark.integration
def test_retry_recovers_from_serialization_failure(seeded):
	value, attempts = tx.demo_retry(seeded)
	assert attempts == 2
	assert value == Decimal("16001")


@pytest.mark.integration
def test_retry_propagates_other_errors_immediately(seeded):
	calls = []

	def divide(conn):
		calls.append(1)
		return conn.execute(text("SELECT 1 / 0;")).scalar_one()

	with pytest.raises(DBAPIError) as info:
		tx.run_with_retry(seeded, divide)
	assert sqlstate_of(info.value) == "22012"
	assert len(calls) == 1


@pytest.mark.integration
def test_retry_gives_up_after_attempts(seeded):
	calls = []

	def always_conflicts(conn):
		calls.append(1)
		conn.execute(text("""
			DO $$
			BEGIN
				RAISE EXCEPTION 'forced conflict' USING ERRCODE = 'serialization_failure';
			END$$;
		"""))

	with pytest.raises(DBAPIError) as info:
		tx.run_with_retry(seeded, always_conflicts, attempts=2)
	assert sqlstate_of(info.value) == "40001"
	assert len(calls) == 2


def test_retry_requires_an_attempt():
	with pytest.raises(ValueError):
		tx.run_with_retry(None, lambda conn: None, attempts=0)
