import importlib

import pytest
from sqlalchemy import text

sp = importlib.import_module("02_rollback_and_savepoints")

pytestmark = pytest.mark.integration


@pytest.fixture
def seeded(engine):
	sp.prepare(engine)
	yield engine
	with engine.begin() as conn:
		conn.execute(text("DROP TABLE IF EXISTS ffiec_reci;"))
		conn.execute(text("DROP TABLE IF EXISTS filing_log;"))


def _by_id(df):
	return df.set_index("rssd_id")


def test_rollback_to_savepoint_undoes_only_later_work(seeded):
	df = _by_id(sp.demo_savepoint_rollback(seeded))
	assert df.loc[480228, "field48"] == "AMENDED"
	assert df.loc[480228, "rconp752"] == 40000
	assert df.loc[852218, "rconp752"] == 35000
	assert df.loc[112837, "rconp752"] == 500


def test_error_aborts_transaction_until_rollback(seeded):
	seen = sp.demo_aborted_transaction(seeded)
	assert seen["first_error"] == "23514"
	assert seen["next_statement"] == "25P02"
	assert seen["recovered_field48"] == "REVIEWED"
	assert seen["committed_field48"] == "REVIEWED"


def test_released_savepoint_cannot_be_rolled_back_to(seeded):
	state, field48 = sp.demo_release_savepoint(seeded)
	assert state == "3B001"
	assert field48 == "AMENDED"


def test_outer_rollback_destroys_inner_savepoint(seeded):
	state, df = sp.demo_nested_savepoints(seeded)
	df = _by_id(df)
	assert state == "3B001"
	assert df.loc[480228, "rcon2365"] == 125000
	assert df.loc[852218, "rcon2365"] == 98000


def test_begin_nested_skips_bad_rows_only(seeded):
	res = sp.demo_begin_nested(seeded)
	assert res["inserted"] == [505050, 808080]
	assert res["skipped"] == [(480228, "23505"), (606060, "23514"), (707070, "23502")]

	with seeded.connect() as conn:
		count = conn.execute(text("SELECT count(*) FROM ffiec_reci;")).scalar_one()
	assert count == 6


def test_sequence_values_survive_rollback(seeded):
	assert sp.demo_sequence_gap(seeded) == [1, 3]
