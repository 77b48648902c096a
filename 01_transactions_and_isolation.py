#!/usr/bin/env python3
r"""----------------------------------------------------------------------
	Basic PostgreSQL Commands (For CLI Interaction)

	0. 📆 Create a New Database
		# Connect using superuser and create DB
		set PGPASSWORD=1234
		psql -U postgres -c "CREATE DATABASE avengers;"

	1. 🔐 Login to PostgreSQL
		# General login
		set PGPASSWORD=1234
		psql -U postgres

		# Login to a specific DB
		set PGPASSWORD=1234
		psql -U postgres -d avengers

	2. 🔍 Investigate Databases or Schema Objects
		\l				-- List all databases
		\dt+			-- List all tables and details in current schema
		\d tablename	-- Describe structure of specific table

	3. 🧭 Inspect the Current Transaction Settings
		SHOW transaction_isolation;
		SHOW default_transaction_isolation;
		SELECT txid_current_if_assigned();

----------------------------------------------------------------------

	PostgreSQL Transactions & Isolation Levels

	Goals:
		- 🗝 BEGIN / COMMIT / ROLLBACK typed exactly as in psql
		- 🗝 engine.begin() as an automatic commit-or-rollback block
		- 🗝 READ COMMITTED vs REPEATABLE READ snapshots (MVCC)
		- 🗝 SERIALIZABLE catching write skew that REPEATABLE READ allows
		- 🗝 Retrying serialization failures (SQLSTATE 40001)

	Key Concepts:
		- Autocommit cursor so literal BEGIN/COMMIT reach the server as-is
		- Two connections in one script = two concurrent sessions
		- `execution_options(isolation_level=...)` vs SET TRANSACTION
		- pandas + tabulate for human-readable output

	Isolation levels in PostgreSQL:

	| Level            | Dirty read | Non-repeatable | Phantom | Serialization anomaly |
	|------------------|------------|----------------|---------|-----------------------|
	| READ UNCOMMITTED | no (*)     | possible       | possible| possible              |
	| READ COMMITTED   | no         | possible       | possible| possible              |
	| REPEATABLE READ  | no         | no             | no (*)  | possible              |
	| SERIALIZABLE     | no         | no             | no      | no                    |

	(*) stricter than the SQL standard requires: PostgreSQL treats
	    READ UNCOMMITTED as READ COMMITTED, and its REPEATABLE READ
	    snapshot also hides phantoms.

	🔑 The snapshot of REPEATABLE READ / SERIALIZABLE is taken at the
	   first query of the transaction, not at BEGIN.
----------------------------------------------------------------------"""

# ── Core DB execution ───────────────────────────────────────────────
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

# ── Lesson helpers (engine URI, pretty-print, diagnostics) ─────────
from pg_lesson import (
	RETRYABLE_SQLSTATES, autocommit_cursor, isolation_clause, make_engine,
	pp, read_ffiec, reset_ffiec_reci, section, sqlstate_of,
)

# ── Utility / typing ────────────────────────────────────────────────
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

# Sweep deposits (RCONP752) across ACTIVE filers must not drop below this.
SWEEP_FLOOR = Decimal("60000")
SWEEP_WITHDRAWAL = Decimal("10000")


def prepare(engine) -> None:
	with engine.begin() as conn:
		reset_ffiec_reci(conn)


def _rcon2365(conn, rssd_id: int) -> Decimal:
	return conn.execute(
		text("SELECT RCON2365 FROM ffiec_reci WHERE rssd_id = :id;"),
		{"id": rssd_id}).scalar_one()


# ════════════════════════════════════════════════════════════════════
# 1 BEGIN / COMMIT / ROLLBACK 🗝
# ════════════════════════════════════════════════════════════════════
def demo_commit(engine) -> Decimal:
	"""BEGIN; UPDATE ...; COMMIT; → the change is durable."""
	with autocommit_cursor(engine) as cur:
		print("[1-1] BEGIN; UPDATE RCON2365 (+5000) for rssd 480228; COMMIT;")
		cur.execute("BEGIN;")
		cur.execute("""
			UPDATE ffiec_reci
			SET    RCON2365 = RCON2365 + 5000
			WHERE  rssd_id = 480228;
		""")
		cur.execute("COMMIT;")

	with engine.connect() as conn:
		return _rcon2365(conn, 480228)


def demo_rollback(engine) -> Tuple[Decimal, Decimal]:
	"""
	BEGIN; UPDATE ...; ROLLBACK;

	Inside the transaction the UPDATE is visible to its own session.
	After ROLLBACK the row is back to its previous value.
	"""
	with autocommit_cursor(engine) as cur:
		print("[1-2] BEGIN; UPDATE RCON2365 := 0 for rssd 852218; ROLLBACK;")
		cur.execute("BEGIN;")
		cur.execute("UPDATE ffiec_reci SET RCON2365 = 0 WHERE rssd_id = 852218;")
		cur.execute("SELECT RCON2365 FROM ffiec_reci WHERE rssd_id = 852218;")
		inside = cur.fetchone()[0]
		cur.execute("ROLLBACK;")

		cur.execute("SELECT RCON2365 FROM ffiec_reci WHERE rssd_id = 852218;")
		after = cur.fetchone()[0]

	print(f"      inside txn = {inside}, after ROLLBACK = {after}")
	return inside, after


def demo_context_transaction(engine) -> str:
	"""
	engine.begin() commits when the block exits normally and rolls back
	when an exception escapes it. Returns FIELD48 of rssd 852218.
	"""
	print("[1-3] engine.begin(): FIELD48 := 'AMENDED' (commits).")
	with engine.begin() as conn:
		conn.execute(text("""
			UPDATE ffiec_reci SET FIELD48 = 'AMENDED'
			WHERE  rssd_id = 852218;
		"""))

	print("[1-4] engine.begin(): FIELD48 := 'DRAFT' then raise (rolls back).")
	try:
		with engine.begin() as conn:
			conn.execute(text("""
				UPDATE ffiec_reci SET FIELD48 = 'DRAFT'
				WHERE  rssd_id = 852218;
			"""))
			raise RuntimeError("call report failed validation")
	except RuntimeError as err:
		print("\n[Python exception] block rolled back:", err)

	with engine.connect() as conn:
		return conn.execute(text(
			"SELECT FIELD48 FROM ffiec_reci WHERE rssd_id = 852218;"
		)).scalar_one()


# ════════════════════════════════════════════════════════════════════
# 2 Isolation levels 🗝
# ════════════════════════════════════════════════════════════════════
def show_isolation(engine) -> Dict[str, str]:
	"""
	SHOW transaction_isolation for the session default, then inside a
	transaction opened with SET TRANSACTION ISOLATION LEVEL <level>.

	SET TRANSACTION must be the first statement of the transaction.
	"""
	seen: Dict[str, str] = {}
	with engine.connect() as conn:
		seen["default"] = conn.execute(
			text("SHOW transaction_isolation;")).scalar_one()
		conn.rollback()

		for level in ("READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE"):
			with conn.begin():
				conn.execute(text(
					f"SET TRANSACTION ISOLATION LEVEL {isolation_clause(level)};"))
				seen[level] = conn.execute(
					text("SHOW transaction_isolation;")).scalar_one()
	return seen


def _snapshot_pair(engine, level: Optional[str]) -> Tuple[Decimal, Decimal, Decimal]:
	"""
	T1 reads rssd 112837 twice; between the reads T2 adds 1000 and commits.
	Returns (T1 first read, T1 second read, value after T1 ends).
	"""
	with engine.connect() as t1:
		if level:
			t1.execution_options(isolation_level=isolation_clause(level))
		with t1.begin():
			first = _rcon2365(t1, 112837)

			with engine.begin() as t2:
				t2.execute(text("""
					UPDATE ffiec_reci SET RCON2365 = RCON2365 + 1000
					WHERE  rssd_id = 112837;
				"""))

			second = _rcon2365(t1, 112837)

	with engine.connect() as conn:
		after = _rcon2365(conn, 112837)
	return first, second, after


def demo_read_committed(engine) -> Tuple[Decimal, Decimal, Decimal]:
	"""Each statement gets a fresh snapshot → non-repeatable read."""
	print("\n[2-2] READ COMMITTED: T1 reads, T2 commits +1000, T1 reads again.")
	res = _snapshot_pair(engine, "READ COMMITTED")
	print(f"      T1 first = {res[0]}, T1 second = {res[1]}  (changed)")
	return res


def demo_repeatable_read(engine) -> Tuple[Decimal, Decimal, Decimal]:
	"""One snapshot for the whole transaction → repeatable read."""
	print("\n[2-3] REPEATABLE READ: same interleaving.")
	res = _snapshot_pair(engine, "REPEATABLE READ")
	print(f"      T1 first = {res[0]}, T1 second = {res[1]}, "
		  f"after T1 = {res[2]}  (T1 kept its snapshot)")
	return res


def demo_concurrent_update(engine) -> Optional[str]:
	"""
	REPEATABLE READ T1 updates a row that T2 changed and committed after
	T1's snapshot. PostgreSQL refuses rather than overwrite the newer row:
		ERROR: could not serialize access due to concurrent update (40001)
	Returns the SQLSTATE raised (None if T1 committed).
	"""
	print("\n[2-4] REPEATABLE READ lost-update protection.")
	state = None
	with engine.connect() as t1:
		t1.execution_options(isolation_level="REPEATABLE READ")
		trans = t1.begin()
		try:
			_rcon2365(t1, 480228)	# snapshot taken here

			with engine.begin() as t2:
				t2.execute(text("""
					UPDATE ffiec_reci SET RCON2365 = RCON2365 + 250
					WHERE  rssd_id = 480228;
				"""))

			t1.execute(text("""
				UPDATE ffiec_reci SET RCON2365 = RCON2365 - 100
				WHERE  rssd_id = 480228;
			"""))
			trans.commit()
		except DBAPIError as err:
			state = sqlstate_of(err)
			print(f"\n[Serialization failure {state}] rolled back:", err.orig)
			trans.rollback()
	return state


def _active_sweep_total(conn) -> Decimal:
	return conn.execute(text("""
		SELECT COALESCE(SUM(RCONP752), 0)
		FROM   ffiec_reci
		WHERE  FIELD48 = 'ACTIVE';
	""")).scalar_one()


def demo_write_skew(engine, level: str = "SERIALIZABLE") -> Dict[str, Any]:
	"""
	Doctors-on-call style write skew on sweep deposits.

	Rule: SUM(RCONP752) over ACTIVE filers stays >= SWEEP_FLOOR.
	T1 and T2 both read the total, both see room for one withdrawal,
	and each withdraws from a *different* bank. No row is written twice,
	so REPEATABLE READ commits both and the rule is broken.
	SERIALIZABLE detects the read/write dependency cycle and fails one
	transaction with 40001.

	Returns {"failures": {session: sqlstate}, "active_total": Decimal}.
	"""
	level = isolation_clause(level)
	print(f"\n[2-5] Write skew under {level}.")
	failures: Dict[str, Optional[str]] = {}

	with engine.connect() as t1, engine.connect() as t2:
		sessions = {"T1": (t1, 480228), "T2": (t2, 852218)}
		txns = {}
		for name, (conn, _) in sessions.items():
			conn.execution_options(isolation_level=level)
			txns[name] = conn.begin()

		totals = {name: _active_sweep_total(conn)
				  for name, (conn, _) in sessions.items()}

		for name, (conn, rssd_id) in sessions.items():
			if totals[name] - SWEEP_WITHDRAWAL < SWEEP_FLOOR:
				print(f"      {name}: no room left, skipping withdrawal")
				continue
			try:
				conn.execute(text("""
					UPDATE ffiec_reci SET RCONP752 = RCONP752 - :amt
					WHERE  rssd_id = :id;
				"""), {"amt": SWEEP_WITHDRAWAL, "id": rssd_id})
			except DBAPIError as err:
				failures[name] = sqlstate_of(err)
				txns[name].rollback()

		for name in sessions:
			if name in failures:
				continue
			try:
				txns[name].commit()
				print(f"      {name}: COMMIT ok")
			except DBAPIError as err:
				failures[name] = sqlstate_of(err)
				print(f"      {name}: COMMIT failed [{failures[name]}]", err.orig)

	with engine.connect() as conn:
		total = _active_sweep_total(conn)
	print(f"      active sweep total = {total} (floor {SWEEP_FLOOR})")
	return {"failures": failures, "active_total": total}


# ════════════════════════════════════════════════════════════════════
# 3 Retrying serialization failures 🗝
# ════════════════════════════════════════════════════════════════════
def run_with_retry(engine, work: Callable[[Any], Any],
				   level: str = "SERIALIZABLE", attempts: int = 3) -> Any:
	"""
	Run work(conn) in its own transaction, retrying on 40001 / 40P01.

	Serialization failures are not bugs: the server asks the client to
	run the whole transaction again. Any other error propagates at once.
	"""
	if attempts < 1:
		raise ValueError("attempts must be >= 1")
	level = isolation_clause(level)

	last_err: Optional[DBAPIError] = None
	for attempt in range(1, attempts + 1):
		try:
			with engine.connect() as conn:
				conn.execution_options(isolation_level=level)
				with conn.begin():
					return work(conn)
		except DBAPIError as err:
			state = sqlstate_of(err)
			if state not in RETRYABLE_SQLSTATES:
				raise
			print(f"      attempt {attempt}/{attempts} failed [{state}], retrying")
			last_err = err
	raise last_err


def demo_retry(engine) -> Tuple[Decimal, int]:
	"""
	First attempt is sabotaged by a concurrent commit between the
	snapshot and the UPDATE; the second attempt succeeds.
	Returns (new RCON2365, attempts used).
	"""
	print("\n[3-1] run_with_retry() around a conflicting UPDATE.")
	calls = {"n": 0}

	def bump_brokered(conn) -> Decimal:
		calls["n"] += 1
		_rcon2365(conn, 112837)
		if calls["n"] == 1:
			with engine.begin() as other:
				other.execute(text("""
					UPDATE ffiec_reci SET RCON2365 = RCON2365 + 1
					WHERE  rssd_id = 112837;
				"""))
		return conn.execute(text("""
			UPDATE ffiec_reci SET RCON2365 = RCON2365 + 500
			WHERE  rssd_id = 112837
			RETURNING RCON2365;
		""")).scalar_one()

	value = run_with_retry(engine, bump_brokered)
	print(f"      RCON2365 = {value} after {calls['n']} attempt(s)")
	return value, calls["n"]


# ---------------------------------------------------------------------
def main() -> None:
	engine = make_engine()
	try:
		section("1. BEGIN / COMMIT / ROLLBACK")
		print("\n[1-0] Recreate and seed 'ffiec_reci'.")
		prepare(engine)
		with engine.connect() as conn:
			pp(read_ffiec(conn), "[ffiec_reci] seed rows")

		print(f"      RCON2365 after COMMIT = {demo_commit(engine)}")
		demo_rollback(engine)
		print(f"      FIELD48 = {demo_context_transaction(engine)!r}")

		section("2. Isolation levels")
		print("\n[2-1] SHOW transaction_isolation.")
		for k, v in show_isolation(engine).items():
			print(f"      {k:<16} → {v}")
		demo_read_committed(engine)
		demo_repeatable_read(engine)
		demo_concurrent_update(engine)

		prepare(engine)
		skew = demo_write_skew(engine, "REPEATABLE READ")
		print(f"      REPEATABLE READ failures: {skew['failures'] or 'none'} "
			  f"→ rule broken")
		prepare(engine)
		ser = demo_write_skew(engine, "SERIALIZABLE")
		print(f"      SERIALIZABLE failures: {ser['failures']}")

		section("3. Retry loop")
		demo_retry(engine)

		with engine.connect() as conn:
			pp(read_ffiec(conn), "[ffiec_reci] final rows")

		with engine.begin() as conn:
			conn.execute(text("DROP TABLE IF EXISTS ffiec_reci;"))

	except Exception as e:
		print("\nUnexpected error:", e)

	finally:
		engine.dispose()
		print("\nAll operations completed. Connection closed.")


if __name__ == "__main__":
	main()
