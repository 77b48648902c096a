#!/usr/bin/env python3
r"""----------------------------------------------------------------------
	Basic PostgreSQL Commands (For CLI Interaction)

	0. 📆 Create a New Database
		# Connect using superuser and create DB
		set PGPASSWORD=1234
		psql -U postgres -c "CREATE DATABASE avengers;"

	1. 🔐 Login to PostgreSQL
		# Login to a specific DB
		set PGPASSWORD=1234
		psql -U postgres -d avengers

	2. 🔍 Investigate Databases or Schema Objects
		\dt+			-- List all tables and details in current schema
		\df+ log_error	-- Show a function's definition
		\errverbose		-- Full detail of the most recent error

----------------------------------------------------------------------

	PL/pgSQL Exception Handling & GET STACKED DIAGNOSTICS

	Goals:
		- 🗝 DO blocks with EXCEPTION WHEN <condition> handlers
		- 🗝 GET STACKED DIAGNOSTICS → custom log_error() function
		- 🗝 A failing block rolls back its own work, not the handler's
		- 🗝 Nested blocks, RAISE re-throw, catch-all WHEN others
		- 🗝 RAISE EXCEPTION ... USING ERRCODE / DETAIL / HINT read from Python

	Common condition names:

	| Condition             | SQLSTATE | psycopg2.errors class   |
	|-----------------------|----------|-------------------------|
	| not_null_violation    | 23502    | NotNullViolation        |
	| foreign_key_violation | 23503    | ForeignKeyViolation     |
	| unique_violation      | 23505    | UniqueViolation         |
	| check_violation       | 23514    | CheckViolation          |
	| division_by_zero      | 22012    | DivisionByZero          |
	| raise_exception       | P0001    | RaiseException          |
	| others                | (any)    | (catch-all, not QUERY_CANCELED) |

	GET STACKED DIAGNOSTICS items used here:
		RETURNED_SQLSTATE, MESSAGE_TEXT, PG_EXCEPTION_DETAIL,
		PG_EXCEPTION_HINT, PG_EXCEPTION_CONTEXT, CONSTRAINT_NAME

	🔑 A BEGIN ... EXCEPTION block runs as a subtransaction. When the
	   handler fires, everything the block did is already undone; rows
	   the handler inserts survive only if no outer block rolls back.
----------------------------------------------------------------------"""

# ── Core DB execution ───────────────────────────────────────────────
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
import psycopg2
import psycopg2.errors

# ── Lesson helpers ──────────────────────────────────────────────────
from pg_lesson import (
	autocommit_cursor, describe_error, execute_with_notices, make_engine, pp,
	section, timed_read_sql,
)

# ── Analysis / typing ───────────────────────────────────────────────
import math
import pandas as pd
from typing import Any, Dict, List, Optional, Tuple


# ════════════════════════════════════════════════════════════════════
# 0 Schema: patients, errors, log_error() 🗝
# ════════════════════════════════════════════════════════════════════
def setup_schema(engine) -> None:
	with engine.begin() as conn:
		print("\n[0-1] Recreate 'patients', 'errors' and log_error().")
		teardown_schema(conn)

		conn.execute(text("""
			CREATE TABLE patients (
				id      SERIAL PRIMARY KEY,
				name    TEXT NOT NULL,
				a1c     NUMERIC(4,1) CHECK (a1c BETWEEN 3 AND 20),
				glucose INT          CHECK (glucose > 0),
				fasting BOOLEAN NOT NULL DEFAULT false
			);
		"""))
		conn.execute(text("""
			CREATE TABLE errors (
				id              SERIAL PRIMARY KEY,
				state           TEXT,
				msg             TEXT,
				detail          TEXT,
				hint            TEXT,
				context         TEXT,
				constraint_name TEXT,
				logged_at       TIMESTAMP DEFAULT now()
			);
		"""))

		# Single place that knows the errors table layout
		conn.execute(text("""
			CREATE OR REPLACE FUNCTION log_error(
				p_state      TEXT,
				p_msg        TEXT,
				p_detail     TEXT,
				p_hint       TEXT,
				p_context    TEXT,
				p_constraint TEXT DEFAULT NULL
			) RETURNS void AS $$
			BEGIN
				INSERT INTO errors (state, msg, detail, hint, context, constraint_name)
				VALUES (p_state, p_msg, p_detail, p_hint, p_context, p_constraint);
			END$$ LANGUAGE plpgsql;
		"""))


def teardown_schema(conn) -> None:
	conn.execute(text(
		"DROP FUNCTION IF EXISTS add_patient(TEXT, NUMERIC, INT, BOOLEAN);"))
	conn.execute(text(
		"DROP FUNCTION IF EXISTS log_error(TEXT, TEXT, TEXT, TEXT, TEXT, TEXT);"))
	conn.execute(text("DROP TABLE IF EXISTS patients;"))
	conn.execute(text("DROP TABLE IF EXISTS errors;"))


def read_errors(conn) -> pd.DataFrame:
	df, _ = timed_read_sql(conn, """
		SELECT id, state, msg, detail, hint, constraint_name, context
		FROM   errors
		ORDER  BY id;
	""")
	return df


def read_patients(conn) -> pd.DataFrame:
	df, _ = timed_read_sql(conn, "SELECT * FROM patients ORDER BY id;")
	return df


# ════════════════════════════════════════════════════════════════════
# 1 not_null_violation → GET STACKED DIAGNOSTICS → log_error 🗝
# ════════════════════════════════════════════════════════════════════
def demo_not_null_violation(engine) -> pd.DataFrame:
	with engine.begin() as conn:
		print("\n[1-1] DO block: INSERT patient with NULL name.")
		conn.execute(text("""
			DO $$
			DECLARE
				v_state   TEXT;
				v_msg     TEXT;
				v_detail  TEXT;
				v_hint    TEXT;
				v_context TEXT;
			BEGIN
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES (NULL, 6.1, 110, true);
			EXCEPTION
				WHEN not_null_violation THEN
					GET STACKED DIAGNOSTICS
						v_state   = RETURNED_SQLSTATE,
						v_msg     = MESSAGE_TEXT,
						v_detail  = PG_EXCEPTION_DETAIL,
						v_hint    = PG_EXCEPTION_HINT,
						v_context = PG_EXCEPTION_CONTEXT;
					PERFORM log_error(v_state, v_msg, v_detail, v_hint, v_context);
			END$$;
		"""))
		df = read_errors(conn)
	pp(df, "[not_null_violation] logged to errors")
	return df


# Handler body shared by the remaining blocks --------------------------
LOG_HANDLER = """
					GET STACKED DIAGNOSTICS
						v_state      = RETURNED_SQLSTATE,
						v_msg        = MESSAGE_TEXT,
						v_detail     = PG_EXCEPTION_DETAIL,
						v_hint       = PG_EXCEPTION_HINT,
						v_context    = PG_EXCEPTION_CONTEXT,
						v_constraint = CONSTRAINT_NAME;
					PERFORM log_error(v_state, v_msg, v_detail, v_hint,
									  v_context, v_constraint);
"""

DIAG_DECLARE = """
				v_state      TEXT;
				v_msg        TEXT;
				v_detail     TEXT;
				v_hint       TEXT;
				v_context    TEXT;
				v_constraint TEXT;
"""


def guarded_do(body: str, condition: str = "others",
			   declare: str = "") -> str:
	"""
	DO block running *body*, with one handler for *condition* that logs
	the stacked diagnostics through log_error().
	"""
	return f"""
			DO $$
			DECLARE{DIAG_DECLARE}{declare}
			BEGIN
				{body}
			EXCEPTION
				WHEN {condition} THEN{LOG_HANDLER}
			END$$;
	"""


# ════════════════════════════════════════════════════════════════════
# 2 check_violation (with CONSTRAINT_NAME) 🗝
# ════════════════════════════════════════════════════════════════════
def demo_check_violation(engine) -> pd.DataFrame:
	with engine.begin() as conn:
		print("\n[2-1] DO block: A1C 42.0 breaks CHECK (a1c BETWEEN 3 AND 20).")
		conn.execute(text(guarded_do("""
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES ('Iris Novak', 42.0, 130, false);
		""", condition="check_violation")))
		df = read_errors(conn)
	pp(df, "[check_violation] CONSTRAINT_NAME captured")
	return df


# ════════════════════════════════════════════════════════════════════
# 3 WHEN others catch-all 🗝
# ════════════════════════════════════════════════════════════════════
def demo_catch_all(engine) -> pd.DataFrame:
	with engine.begin() as conn:
		print("\n[3-1] DO block: glucose/A1C ratio with A1C = 0 → division_by_zero.")
		conn.execute(text(guarded_do("""
				v_ratio := v_glucose / v_a1c;
				RAISE NOTICE 'ratio %', v_ratio;
		""", condition="others", declare="""
				v_glucose NUMERIC := 126;
				v_a1c     NUMERIC := 0;
				v_ratio   NUMERIC;
		""")))
		df = read_errors(conn)
	pp(df, "[others] catch-all logged division_by_zero")
	return df


# ════════════════════════════════════════════════════════════════════
# 4 The block's own work is rolled back, the handler's is kept 🗝
# ════════════════════════════════════════════════════════════════════
def demo_block_rollback(engine) -> Tuple[List[str], int]:
	"""
	First INSERT succeeds, second breaks a CHECK. The handler runs after
	the block's subtransaction is rolled back, so 'Ana Ruiz' is gone
	while the errors row written by the handler commits.
	Returns (patient names, number of error rows).
	"""
	with engine.begin() as conn:
		print("\n[4-1] DO block: valid INSERT, then invalid INSERT.")
		conn.execute(text(guarded_do("""
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES ('Ana Ruiz', 5.4, 92, true);
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES ('Ben Okafor', 25.0, 180, false);
		""", condition="check_violation")))

	with engine.connect() as conn:
		names = list(read_patients(conn)["name"])
		n_err = len(read_errors(conn))
	print(f"      patients = {names}, error rows = {n_err}")
	return names, n_err


# ════════════════════════════════════════════════════════════════════
# 5 Nested blocks + RAISE re-throw 🗝
# --------------------------------------------------------------------
# The inner handler logs and re-raises. The outer block then rolls back
# *including* the inner handler's log_error() row; only the outer log
# survives. PostgreSQL has no autonomous transactions, so a log row that
# must outlive a re-raise has to be written by the outermost handler
# (or through a separate connection, e.g. dblink).
# ════════════════════════════════════════════════════════════════════
def demo_nested_reraise(engine) -> pd.DataFrame:
	with engine.begin() as conn:
		print("\n[5-1] Outer block wraps inner block that re-raises.")
		conn.execute(text("""
			DO $$
			DECLARE
				v_state   TEXT;
				v_msg     TEXT;
				v_context TEXT;
			BEGIN
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES ('Cora Lind', 6.0, 101, true);

				BEGIN
					INSERT INTO patients (name, a1c, glucose, fasting)
					VALUES ('Dev Patel', 7.2, -5, false);
				EXCEPTION
					WHEN check_violation THEN
						GET STACKED DIAGNOSTICS
							v_state   = RETURNED_SQLSTATE,
							v_msg     = MESSAGE_TEXT,
							v_context = PG_EXCEPTION_CONTEXT;
						PERFORM log_error(v_state, 'inner: ' || v_msg,
										  NULL, NULL, v_context);
						RAISE;
				END;
			EXCEPTION
				WHEN others THEN
					GET STACKED DIAGNOSTICS
						v_state   = RETURNED_SQLSTATE,
						v_msg     = MESSAGE_TEXT,
						v_context = PG_EXCEPTION_CONTEXT;
					PERFORM log_error(v_state, 'outer: ' || v_msg,
									  NULL, NULL, v_context);
			END$$;
		"""))
		df = read_errors(conn)
	pp(df, "[nested] only the outer handler's row survived")
	return df


# ════════════════════════════════════════════════════════════════════
# 6 Reusable safe-insert function 🗝
# ════════════════════════════════════════════════════════════════════
def create_add_patient(engine) -> None:
	with engine.begin() as conn:
		conn.execute(text("""
			CREATE OR REPLACE FUNCTION add_patient(
				p_name    TEXT,
				p_a1c     NUMERIC,
				p_glucose INT,
				p_fasting BOOLEAN
			) RETURNS BOOLEAN AS $$
			DECLARE
				v_state      TEXT;
				v_msg        TEXT;
				v_detail     TEXT;
				v_hint       TEXT;
				v_context    TEXT;
				v_constraint TEXT;
			BEGIN
				INSERT INTO patients (name, a1c, glucose, fasting)
				VALUES (p_name, p_a1c, p_glucose, p_fasting);
				RETURN true;
			EXCEPTION
				WHEN not_null_violation OR check_violation THEN
					GET STACKED DIAGNOSTICS
						v_state      = RETURNED_SQLSTATE,
						v_msg        = MESSAGE_TEXT,
						v_detail     = PG_EXCEPTION_DETAIL,
						v_hint       = PG_EXCEPTION_HINT,
						v_context    = PG_EXCEPTION_CONTEXT,
						v_constraint = CONSTRAINT_NAME;
					PERFORM log_error(v_state, v_msg, v_detail, v_hint,
									  v_context, v_constraint);
					RETURN false;
			END$$ LANGUAGE plpgsql;
		"""))


INTAKE: List[Dict[str, Any]] = [
	{"name": "Elena Sousa", "a1c": 5.7,  "glucose": 99,  "fasting": True},
	{"name": "Farid Haddad", "a1c": 8.9, "glucose": 210, "fasting": False},
	{"name": None,           "a1c": 6.4, "glucose": 120, "fasting": True},
	{"name": "Greta Holm",  "a1c": 2.1,  "glucose": 75,  "fasting": True},
	{"name": "Hiro Tanaka", "a1c": 6.8,  "glucose": 0,   "fasting": False},
	{"name": "Ines Costa",  "a1c": 7.0,  "glucose": 140, "fasting": None},
	{"name": "Jon Berg",    "a1c": 6.2,  "glucose": 118, "fasting": True},
]


def demo_safe_insert_function(engine, rows: Optional[List[Dict[str, Any]]] = None
							  ) -> List[bool]:
	"""SELECT add_patient(...) per intake row → True/False per row."""
	rows = INTAKE if rows is None else rows
	print("\n[6-1] SELECT add_patient(...) for each intake row.")
	with engine.begin() as conn:
		results = [
			conn.execute(text("""
				SELECT add_patient(:name, :a1c, :glucose, :fasting);
			"""), row).scalar_one()
			for row in rows
		]
	for row, ok in zip(rows, results):
		print(f"      {str(row['name']):<14} → {'ok' if ok else 'logged'}")
	return results


# ════════════════════════════════════════════════════════════════════
# 7 RAISE EXCEPTION ... USING, read from Python 🗝
# ════════════════════════════════════════════════════════════════════
def demo_raise_custom(engine, a1c: float = 14.2) -> Optional[Dict[str, Optional[str]]]:
	"""
	An uncaught RAISE travels to the client. psycopg2 exposes the same
	fields GET STACKED DIAGNOSTICS would (err.orig.diag), and picks the
	exception class from the SQLSTATE.
	Returns describe_error() of the failure, or None when nothing raised.
	"""
	# DO blocks accept no bind parameters; the value is formatted in
	if not math.isfinite(float(a1c)):
		raise ValueError(f"A1C must be a finite number, got {a1c!r}")
	a1c_literal = repr(float(a1c))
	print(f"\n[7-1] DO block: RAISE EXCEPTION for A1C {a1c} (uncaught).")
	try:
		with engine.begin() as conn:
			conn.execute(text(f"""
				DO $$
				DECLARE
					v_a1c NUMERIC := {a1c_literal};
				BEGIN
					IF v_a1c > 12 THEN
						RAISE EXCEPTION 'A1C % exceeds review threshold', v_a1c
							USING ERRCODE = 'invalid_parameter_value',
								  DETAIL  = 'Values above 12 need clinician sign-off.',
								  HINT    = 'Confirm the lab result before resubmitting.';
					END IF;
				END$$;
			"""))
	except DBAPIError as err:
		info = describe_error(err)
		print(f"      {type(err.orig).__name__} → {info}")
		return info
	return None


def demo_sqlstate_classes(engine) -> Dict[str, str]:
	"""Catch server errors in Python by psycopg2.errors class."""
	caught: Dict[str, str] = {}
	statements = {
		"NULL name":   "INSERT INTO patients (name) VALUES (NULL);",
		"bad glucose": "INSERT INTO patients (name, glucose) VALUES ('Kai', -1);",
		"div by zero": "SELECT 126 / 0;",
	}
	print("\n[7-2] Catch by psycopg2.errors class.")
	with autocommit_cursor(engine) as cur:
		for label, sql in statements.items():
			try:
				cur.execute(sql)
			except psycopg2.errors.NotNullViolation as err:
				caught[label] = type(err).__name__
			except psycopg2.errors.CheckViolation as err:
				caught[label] = type(err).__name__
			except psycopg2.errors.DivisionByZero as err:
				caught[label] = type(err).__name__
			print(f"      {label:<12} → {caught.get(label)}")
	return caught


# ════════════════════════════════════════════════════════════════════
# 8 RAISE NOTICE collected by the client 🗝
# ════════════════════════════════════════════════════════════════════
def demo_notices(engine) -> List[str]:
	"""
	RAISE NOTICE never fails the statement; psycopg2 keeps the messages
	on connection.notices. The DO block goes through a raw cursor because
	conn.execute() would hand them to SQLAlchemy's logger first.
	"""
	with engine.begin() as conn:
		print("\n[8-1] DO block: RAISE NOTICE per patient.")
		msgs = execute_with_notices(conn, """
			DO $$
			DECLARE
				r RECORD;
			BEGIN
				FOR r IN SELECT name, a1c FROM patients ORDER BY id LOOP
					RAISE NOTICE 'patient % has A1C %', r.name, r.a1c;
				END LOOP;
				RAISE NOTICE 'scan complete';
			END$$;
		""")
	for m in msgs:
		print("      NOTICE:", m)
	return msgs


# ---------------------------------------------------------------------
def main() -> None:
	engine = make_engine()
	try:
		section("0. Schema")
		setup_schema(engine)

		section("1-3. EXCEPTION WHEN <condition>")
		demo_not_null_violation(engine)
		demo_check_violation(engine)
		demo_catch_all(engine)

		section("4. Block rollback")
		demo_block_rollback(engine)

		section("5. Nested blocks")
		demo_nested_reraise(engine)

		section("6. add_patient()")
		create_add_patient(engine)
		demo_safe_insert_function(engine)
		with engine.connect() as conn:
			pp(read_patients(conn), "[patients] accepted rows")

		section("7. Errors seen from Python")
		demo_raise_custom(engine)
		demo_sqlstate_classes(engine)

		section("8. Notices")
		demo_notices(engine)

		with engine.connect() as conn:
			pp(read_errors(conn), "[errors] full log")

		with engine.begin() as conn:
			teardown_schema(conn)

	except Exception as e:
		print("\nUnexpected error:", e)

	finally:
		engine.dispose()
		print("\nAll operations completed. Connection closed.")


if __name__ == "__main__":
	main()
