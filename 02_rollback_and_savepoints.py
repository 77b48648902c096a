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
		\l				-- List all databases
		\dt+			-- List all tables and details in current schema
		\d tablename	-- Describe structure of specific table

	3. 🧯 psql: survive errors inside a transaction
		\set ON_ERROR_ROLLBACK interactive
		-- psql then wraps every statement in an implicit SAVEPOINT

----------------------------------------------------------------------

	PostgreSQL Rollbacks & Savepoints

	Goals:
		- 🗝 SAVEPOINT / ROLLBACK TO SAVEPOINT undo part of a transaction
		- 🗝 Aborted-transaction state (SQLSTATE 25P02) and how to recover
		- 🗝 RELEASE SAVEPOINT keeps work but forgets the marker
		- 🗝 Nested savepoints: rolling back an outer one drops the inner
		- 🗝 SQLAlchemy begin_nested() = SAVEPOINT per row of a batch

	Key Concepts:
		| Command                     | Effect                                   |
		|-----------------------------|------------------------------------------|
		| SAVEPOINT sp                | mark a point inside the transaction      |
		| ROLLBACK TO SAVEPOINT sp    | undo after sp, keep sp, clear abort state|
		| RELEASE SAVEPOINT sp        | keep work, destroy sp (and later ones)   |
		| ROLLBACK                    | undo the whole transaction               |

	🔑 Sequences are non-transactional: nextval() consumed inside a
	   rolled-back savepoint leaves a gap in SERIAL ids.
----------------------------------------------------------------------"""

# ── Core DB execution ───────────────────────────────────────────────
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
import psycopg2

# ── Lesson helpers ──────────────────────────────────────────────────
from pg_lesson import (
	autocommit_cursor, make_engine, pp, read_ffiec, reset_ffiec_reci,
	section, sqlstate_of,
)

# ── Analysis / typing ───────────────────────────────────────────────
import pandas as pd
from typing import Any, Dict, List, Optional, Tuple


def prepare(engine) -> None:
	with engine.begin() as conn:
		reset_ffiec_reci(conn)


def _field48(cur, rssd_id: int) -> str:
	cur.execute("SELECT FIELD48 FROM ffiec_reci WHERE rssd_id = %s;", (rssd_id,))
	return cur.fetchone()[0]


# ════════════════════════════════════════════════════════════════════
# 1 SAVEPOINT + ROLLBACK TO SAVEPOINT 🗝
# ════════════════════════════════════════════════════════════════════
def demo_savepoint_rollback(engine) -> pd.DataFrame:
	"""
	An over-broad UPDATE after the savepoint is undone; the amendment
	before it and the corrected UPDATE after it both commit.
	"""
	with autocommit_cursor(engine) as cur:
		print("[1-1] BEGIN; amend 480228; SAVEPOINT before_sweep_fix;")
		cur.execute("BEGIN;")
		cur.execute("""
			UPDATE ffiec_reci SET FIELD48 = 'AMENDED'
			WHERE  rssd_id = 480228;
		""")
		cur.execute("SAVEPOINT before_sweep_fix;")

		print("[1-2] Oops: zero RCONP752 for *every* active filer.")
		cur.execute("UPDATE ffiec_reci SET RCONP752 = 0 WHERE FIELD48 = 'ACTIVE';")
		print(f"      rows touched: {cur.rowcount}")

		print("[1-3] ROLLBACK TO SAVEPOINT before_sweep_fix; fix one row; COMMIT;")
		cur.execute("ROLLBACK TO SAVEPOINT before_sweep_fix;")
		cur.execute("UPDATE ffiec_reci SET RCONP752 = 500 WHERE rssd_id = 112837;")
		cur.execute("COMMIT;")

	with engine.connect() as conn:
		df = read_ffiec(conn)
	pp(df, "[SAVEPOINT] only the amendment and the single fix survived")
	return df


# ════════════════════════════════════════════════════════════════════
# 2 Aborted transaction state 🗝
# ════════════════════════════════════════════════════════════════════
def demo_aborted_transaction(engine) -> Dict[str, Any]:
	"""
	Without a savepoint, one error poisons the transaction:
		ERROR: current transaction is aborted, commands ignored until
		       end of transaction block                         (25P02)
	With a savepoint, ROLLBACK TO clears the abort state.
	"""
	seen: Dict[str, Any] = {}
	with autocommit_cursor(engine) as cur:
		print("\n[2-1] BEGIN; UPDATE with negative RCON2365 (CHECK fails).")
		cur.execute("BEGIN;")
		try:
			cur.execute("UPDATE ffiec_reci SET RCON2365 = -1 WHERE rssd_id = 723112;")
		except psycopg2.Error as err:
			seen["first_error"] = err.pgcode
			print(f"      [{err.pgcode}] {err.diag.message_primary}")

		print("[2-2] Any next statement is refused.")
		try:
			cur.execute("SELECT 1;")
		except psycopg2.Error as err:
			seen["next_statement"] = err.pgcode
			print(f"      [{err.pgcode}] {err.diag.message_primary}")
		cur.execute("ROLLBACK;")

		print("\n[2-3] Same mistake guarded by SAVEPOINT guard.")
		cur.execute("BEGIN;")
		cur.execute("UPDATE ffiec_reci SET FIELD48 = 'REVIEWED' WHERE rssd_id = 723112;")
		cur.execute("SAVEPOINT guard;")
		try:
			cur.execute("UPDATE ffiec_reci SET RCON2365 = -1 WHERE rssd_id = 723112;")
		except psycopg2.Error as err:
			print(f"      [{err.pgcode}] caught, ROLLBACK TO SAVEPOINT guard;")
			cur.execute("ROLLBACK TO SAVEPOINT guard;")
		seen["recovered_field48"] = _field48(cur, 723112)
		cur.execute("COMMIT;")

	with autocommit_cursor(engine) as cur:
		seen["committed_field48"] = _field48(cur, 723112)
	return seen


# ════════════════════════════════════════════════════════════════════
# 3 RELEASE SAVEPOINT 🗝
# ════════════════════════════════════════════════════════════════════
def demo_release_savepoint(engine) -> Tuple[Optional[str], str]:
	"""
	RELEASE keeps the work done since the savepoint; the name is gone,
	so ROLLBACK TO it fails with 3B001 (invalid_savepoint_specification).
	A second savepoint lets the transaction recover and commit.
	Returns (sqlstate of the bad ROLLBACK TO, committed FIELD48).
	"""
	state = None
	with autocommit_cursor(engine) as cur:
		print("\n[3-1] BEGIN; SAVEPOINT s1; amend 852218; RELEASE SAVEPOINT s1;")
		cur.execute("BEGIN;")
		cur.execute("SAVEPOINT s1;")
		cur.execute("UPDATE ffiec_reci SET FIELD48 = 'AMENDED' WHERE rssd_id = 852218;")
		cur.execute("RELEASE SAVEPOINT s1;")

		cur.execute("SAVEPOINT retry_point;")
		print("[3-2] ROLLBACK TO SAVEPOINT s1; (already released)")
		try:
			cur.execute("ROLLBACK TO SAVEPOINT s1;")
		except psycopg2.Error as err:
			state = err.pgcode
			print(f"      [{err.pgcode}] {err.diag.message_primary}")
			cur.execute("ROLLBACK TO SAVEPOINT retry_point;")
		cur.execute("COMMIT;")

		value = _field48(cur, 852218)
	print(f"      FIELD48 after COMMIT = {value!r}")
	return state, value


# ════════════════════════════════════════════════════════════════════
# 4 Nested savepoints 🗝
# ════════════════════════════════════════════════════════════════════
def demo_nested_savepoints(engine) -> Tuple[Optional[str], pd.DataFrame]:
	"""
	ROLLBACK TO the outer savepoint undoes both updates and destroys the
	inner savepoint; the outer one survives and can be reused.
	"""
	state = None
	with autocommit_cursor(engine) as cur:
		print("\n[4-1] SAVEPOINT outer_sp → UPDATE → SAVEPOINT inner_sp → UPDATE")
		cur.execute("BEGIN;")
		cur.execute("SAVEPOINT outer_sp;")
		cur.execute("UPDATE ffiec_reci SET RCON2365 = 1 WHERE rssd_id = 480228;")
		cur.execute("SAVEPOINT inner_sp;")
		cur.execute("UPDATE ffiec_reci SET RCON2365 = 2 WHERE rssd_id = 852218;")

		print("[4-2] ROLLBACK TO SAVEPOINT outer_sp; then try inner_sp.")
		cur.execute("ROLLBACK TO SAVEPOINT outer_sp;")
		try:
			cur.execute("ROLLBACK TO SAVEPOINT inner_sp;")
		except psycopg2.Error as err:
			state = err.pgcode
			print(f"      [{err.pgcode}] {err.diag.message_primary}")
			cur.execute("ROLLBACK TO SAVEPOINT outer_sp;")
		cur.execute("COMMIT;")

	with engine.connect() as conn:
		df = read_ffiec(conn)
	pp(df, "[Nested] neither update committed")
	return state, df


# ════════════════════════════════════════════════════════════════════
# 5 SQLAlchemy begin_nested(): one SAVEPOINT per row 🗝
# ════════════════════════════════════════════════════════════════════
NEW_FILERS: List[Dict[str, Any]] = [
	{"rssd_id": 505050, "bank_name": "Lakeshore Bank",   "rcon2365": 2000,  "field48": "ACTIVE"},
	{"rssd_id": 480228, "bank_name": "Duplicate Prairie", "rcon2365": 10,   "field48": "ACTIVE"},
	{"rssd_id": 606060, "bank_name": "Negative Trust",   "rcon2365": -75,   "field48": "ACTIVE"},
	{"rssd_id": 707070, "bank_name": None,               "rcon2365": 300,   "field48": "ACTIVE"},
	{"rssd_id": 808080, "bank_name": "Summit Federal",   "rcon2365": 41000, "field48": "INACTIVE"},
]


def demo_begin_nested(engine, rows: Optional[List[Dict[str, Any]]] = None
					  ) -> Dict[str, Any]:
	"""
	Load a batch inside one transaction; each row gets its own SAVEPOINT
	so a constraint violation skips that row instead of the batch.
	"""
	rows = NEW_FILERS if rows is None else rows
	inserted: List[int] = []
	skipped: List[Tuple[int, Optional[str]]] = []

	print("\n[5-1] Insert batch with begin_nested() per row.")
	with engine.begin() as conn:
		for row in rows:
			try:
				with conn.begin_nested():
					conn.execute(text("""
						INSERT INTO ffiec_reci
							(rssd_id, bank_name, report_date, RCON2365, RCONP752, FIELD48)
						VALUES
							(:rssd_id, :bank_name, DATE '2024-06-30', :rcon2365, 0, :field48);
					"""), row)
				inserted.append(row["rssd_id"])
			except IntegrityError as err:
				skipped.append((row["rssd_id"], sqlstate_of(err)))
				print(f"      skip rssd {row['rssd_id']} [{sqlstate_of(err)}]")

	with engine.connect() as conn:
		pp(read_ffiec(conn), "[begin_nested] valid rows committed")
	return {"inserted": inserted, "skipped": skipped}


# ════════════════════════════════════════════════════════════════════
# 6 Sequences ignore rollback 🗝
# ════════════════════════════════════════════════════════════════════
def demo_sequence_gap(engine) -> List[int]:
	"""SERIAL ids drawn inside a rolled-back savepoint are not reused."""
	with engine.begin() as conn:
		conn.execute(text("DROP TABLE IF EXISTS filing_log;"))
		conn.execute(text("""
			CREATE TABLE filing_log (
				id   SERIAL PRIMARY KEY,
				note TEXT NOT NULL
			);
		"""))

	with autocommit_cursor(engine) as cur:
		print("\n[6-1] INSERT a; SAVEPOINT s; INSERT b; ROLLBACK TO s; INSERT c;")
		cur.execute("BEGIN;")
		cur.execute("INSERT INTO filing_log (note) VALUES ('received');")
		cur.execute("SAVEPOINT s;")
		cur.execute("INSERT INTO filing_log (note) VALUES ('withdrawn');")
		cur.execute("ROLLBACK TO SAVEPOINT s;")
		cur.execute("INSERT INTO filing_log (note) VALUES ('accepted');")
		cur.execute("COMMIT;")

		cur.execute("SELECT id FROM filing_log ORDER BY id;")
		ids = [r[0] for r in cur.fetchall()]

	print(f"      ids = {ids}  (gap where 'withdrawn' drew nextval)")
	return ids


# ---------------------------------------------------------------------
def main() -> None:
	engine = make_engine()
	try:
		section("1. SAVEPOINT / ROLLBACK TO SAVEPOINT")
		prepare(engine)
		demo_savepoint_rollback(engine)

		section("2. Aborted transaction")
		prepare(engine)
		for k, v in demo_aborted_transaction(engine).items():
			print(f"      {k:<18} → {v}")

		section("3. RELEASE SAVEPOINT")
		prepare(engine)
		demo_release_savepoint(engine)

		section("4. Nested savepoints")
		prepare(engine)
		demo_nested_savepoints(engine)

		section("5. begin_nested() batch")
		prepare(engine)
		res = demo_begin_nested(engine)
		print(f"      inserted = {res['inserted']}")
		print(f"      skipped  = {res['skipped']}")

		section("6. Sequence gap")
		demo_sequence_gap(engine)

		with engine.begin() as conn:
			for tbl in ("ffiec_reci", "filing_log"):
				conn.execute(text(f"DROP TABLE IF EXISTS {tbl};"))

	except Exception as e:
		print("\nUnexpected error:", e)

	finally:
		engine.dispose()
		print("\nAll operations completed. Connection closed.")


if __name__ == "__main__":
	main()
