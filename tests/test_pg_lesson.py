from types import SimpleNamespace

import pandas as pd
import psycopg2
import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

import pg_lesson
from pg_lesson import (
	DEFAULT_URL, autocommit_cursor, database_url, describe_error,
	drain_notices, execute_with_notices, isolation_clause, make_engine, pp,
	sqlstate_of,
)


class FakePgError(Exception):
	"""Stand-in for a psycopg2 error: pgcode + diag."""

	def __init__(self, msg, pgcode=None, **diag):
		super().__init__(msg)
		self.pgcode = pgcode
		fields = dict.fromkeys((
			"sqlstate", "message_primary", "message_detail", "message_hint",
			"context", "table_name", "column_name", "constraint_name"))
		fields.update(diag)
		self.diag = SimpleNamespace(**fields)


def test_database_url_defaults_to_lesson_db(monkeypatch):
	monkeypatch.delenv("PG_URL", raising=False)
	assert database_url() == DEFAULT_URL


def test_database_url_env_override(monkeypatch):
	monkeypatch.setenv("PG_URL", "postgresql+psycopg2://u:p@db.local/scratch")
	assert database_url() == "postgresql+psycopg2://u:p@db.local/scratch"


def test_make_engine_explicit_url():
	eng = make_engine("postgresql+psycopg2://u:p@db.local:6543/scratch")
	try:
		assert eng.url.host == "db.local"
		assert eng.url.port == 6543
		assert eng.url.database == "scratch"
	finally:
		eng.dispose()


@pytest.mark.parametrize("raw, expected", [
	("serializable", "SERIALIZABLE"),
	("repeatable_read", "REPEATABLE READ"),
	("  Read   Committed ", "READ COMMITTED"),
	("READ UNCOMMITTED", "READ UNCOMMITTED"),
])
def test_isolation_clause_normalises(raw, expected):
	assert isolation_clause(raw) == expected


@pytest.mark.parametrize("raw", ["snapshot", "", "SERIALIZABLE; DROP TABLE x"])
def test_isolation_clause_rejects_unknown(raw):
	with pytest.raises(ValueError, match="unknown isolation level"):
		isolation_clause(raw)


def test_describe_error_unwraps_sqlalchemy_error():
	orig = FakePgError(
		"new row violates check constraint",
		pgcode="23514",
		message_primary='new row for relation "patients" violates check constraint "patients_a1c_check"',
		message_detail="Failing row contains (1, Kai, 42.0, 130, f).",
		table_name="patients",
		constraint_name="patients_a1c_check",
	)
	err = DBAPIError("INSERT INTO patients ...", {}, orig)

	info = describe_error(err)

	assert info["sqlstate"] == "23514"
	assert info["condition"] == "CheckViolation"
	assert info["message"].startswith('new row for relation "patients"')
	assert info["detail"].startswith("Failing row contains")
	assert info["table"] == "patients"
	assert info["constraint"] == "patients_a1c_check"
	assert info["hint"] is None
	assert sqlstate_of(err) == "23514"


def test_describe_error_unknown_sqlstate_has_no_condition():
	info = describe_error(FakePgError("custom", pgcode="ZZ999"))
	assert info["sqlstate"] == "ZZ999"
	assert info["condition"] is None
	assert info["message"] == "custom"


def test_describe_error_plain_exception():
	info = describe_error(ValueError("boom"))
	assert info["sqlstate"] is None
	assert info["message"] == "boom"
	assert info["context"] is None
	assert sqlstate_of(ValueError("boom")) is None


def _single_connection_engine(engine):
	return make_engine(engine.url, pool_size=1, max_overflow=0)


@pytest.mark.integration
def test_execute_with_notices_returns_raise_notice_text(engine):
	with engine.begin() as conn:
		msgs = execute_with_notices(conn, """
			DO $$
			BEGIN
				RAISE NOTICE 'hello %', 42;
				RAISE NOTICE 'ratio: undefined';
			END$$;
		""")
		assert msgs == ["hello 42", "ratio: undefined"]
		assert drain_notices(conn) == []


@pytest.mark.integration
def test_conn_execute_notices_are_taken_by_sqlalchemy(engine):
	with engine.begin() as conn:
		conn.execute(text("DO $$BEGIN RAISE NOTICE 'routed to logger'; END$$;"))
		assert drain_notices(conn) == []


@pytest.mark.integration
def test_autocommit_cursor_restores_pooled_connection(engine):
	solo = _single_connection_engine(engine)
	try:
		with autocommit_cursor(solo) as cur:
			cur.execute("BEGIN;")
			cur.execute("SELECT 1;")

		assert solo.pool.checkedout() == 0
		raw = solo.raw_connection()
		try:
			assert raw.dbapi_connection.autocommit is False
		finally:
			raw.close()
	finally:
		solo.dispose()


@pytest.mark.integration
def test_autocommit_cursor_checks_in_after_python_error(engine):
	solo = _single_connection_engine(engine)
	try:
		with pytest.raises(RuntimeError, match="lesson failed"):
			with autocommit_cursor(solo) as cur:
				cur.execute("BEGIN;")
				raise RuntimeError("lesson failed")

		assert solo.pool.checkedout() == 0
		with solo.connect() as conn:
			assert conn.execute(text("SELECT 1;")).scalar_one() == 1
			assert conn.connection.dbapi_connection.autocommit is False
	finally:
		solo.dispose()


@pytest.mark.integration
def test_autocommit_cursor_keeps_error_of_dead_connection(engine):
	solo = _single_connection_engine(engine)
	try:
		with pytest.raises(psycopg2.OperationalError):
			with autocommit_cursor(solo) as cur:
				cur.execute("SELECT pg_terminate_backend(pg_backend_pid());")

		assert solo.pool.checkedout() == 0
		with solo.connect() as conn:
			assert conn.execute(text("SELECT 1;")).scalar_one() == 1
	finally:
		solo.dispose()


def test_pp_renders_grid(capsys):
	pp(pd.DataFrame({"rssd_id": [480228], "field48": ["ACTIVE"]}), "[ffiec] one row")
	out = capsys.readouterr().out
	assert "[ffiec] one row" in out
	assert "+" in out and "480228" in out and "ACTIVE" in out


def test_seed_rows_match_table_shape():
	assert len({row[0] for row in pg_lesson.FFIEC_ROWS}) == len(pg_lesson.FFIEC_ROWS)
	assert all(len(row) == 6 for row in pg_lesson.FFIEC_ROWS)
	assert all(row[3] >= 0 and row[4] >= 0 for row in pg_lesson.FFIEC_ROWS)
