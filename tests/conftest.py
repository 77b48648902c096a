import pytest
from sqlalchemy.exc import OperationalError

from pg_lesson import make_engine


@pytest.fixture(scope="session")
def engine():
	"""Engine on PG_URL (or the lesson default); skip when unreachable."""
	eng = make_engine()
	try:
		with eng.connect():
			pass
	except OperationalError as err:
		eng.dispose()
		pytest.skip(f"PostgreSQL not reachable: {err.orig}")
	yield eng
	eng.dispose()
