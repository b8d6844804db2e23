"""
Conftest for TeamRoom tests.

Unit tests open their own in-memory databases. The HTTP tests go through
teamroom.main, which uses the shared connection from teamroom.db.database, so
point that at a throwaway file before any teamroom module reads its config.
"""
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="teamroom-test-")
os.environ["TEAMROOM_DB"] = os.path.join(_TEST_DIR, "teamroom_test.db")
os.environ.setdefault("TEAMROOM_RESTART_SETTLE", "0")
