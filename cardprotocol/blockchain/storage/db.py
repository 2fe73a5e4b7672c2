import sqlite3
import threading
from typing import Dict, Mapping, Optional


class StorageDB:
    """
    sqlite key/value store shared by the devnet chain, the coordinator and
    migration progress. Keys are namespaced by prefix (``acc:``, ``log:``,
    ``coordinator``, ``migration:``).
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._lock, self.conn:
            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')

    def get_state(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute('SELECT value FROM state WHERE key = ?', (key,)).fetchone()
            return row[0] if row else None

    def set_state(self, key: str, value: str):
        self.set_states({key: value})

    def set_states(self, items: Mapping[str, str]):
        """Writes several keys in one sqlite transaction."""
        if not items:
            return
        with self._lock, self.conn:
            self.conn.executemany('INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)', list(items.items()))

    def delete_state(self, key: str):
        with self._lock, self.conn:
            self.conn.execute('DELETE FROM state WHERE key = ?', (key,))

    def get_state_by_prefix(self, prefix: str) -> Dict[str, str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key, value FROM state WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (self._escape(prefix) + "%",),
            ).fetchall()
            return {key: value for key, value in rows}

    def close(self):
        with self._lock:
            self.conn.close()

    @staticmethod
    def _escape(prefix: str) -> str:
        # LIKE wildcards in a prefix match literally
        return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
