import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from agent_turn_loop.store import SqliteSessionStore

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class SqliteStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = SqliteSessionStore(str(self._tmp_dir / "sessions.db"))

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _backdate(self, session_id: str, updated_at: str) -> None:
        self._store._conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (updated_at, session_id))
        self._store._conn.commit()
