"""Device-local daily salt store (SQLite).

Gives the on-device Anonymizer the same get / get_or_create /
prune_before contract as the server SaltStore.
"""
import logging
import sqlite3
import threading
from datetime import date, datetime, timezone
from typing import Optional

from herotrack.shared.anonymizer import DailySalt, generate_salt
from herotrack.shared.database import RepositoryError

logger = logging.getLogger(__name__)


class LocalSaltStore:
    """One salt per calendar day, stored next to the event queue."""

    def __init__(self, path: str = ":memory:", busy_timeout: float = 5.0):
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, timeout=busy_timeout, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_salts (
                    salt_date   TEXT PRIMARY KEY,
                    salt        TEXT NOT NULL,
                    created_ts  REAL NOT NULL
                )
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _select(self, salt_date: date) -> Optional[DailySalt]:
        row = self._conn.execute(
            "SELECT salt, created_ts FROM daily_salts WHERE salt_date = ?",
            (salt_date.isoformat(),),
        ).fetchone()
        if row is None:
            return None
        return DailySalt(
            salt_date=salt_date,
            salt_value=row[0],
            created_at=datetime.fromtimestamp(row[1], timezone.utc),
        )

    def get(self, salt_date: date) -> Optional[DailySalt]:
        try:
            with self._lock:
                return self._select(salt_date)
        except sqlite3.Error as e:
            raise RepositoryError(f"Local salt read failed: {e}") from e

    def get_or_create(self, salt_date: date) -> DailySalt:
        candidate = DailySalt(salt_date=salt_date, salt_value=generate_salt())
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO daily_salts (salt_date, salt, created_ts)
                    VALUES (?, ?, ?)
                    ON CONFLICT (salt_date) DO NOTHING
                    """,
                    (
                        salt_date.isoformat(),
                        candidate.salt_value,
                        candidate.created_at.timestamp(),
                    ),
                )
                if cur.rowcount == 1:
                    logger.info(
                        "LOCAL_DAILY_SALT_CREATED",
                        extra={"salt_date": salt_date.isoformat()}
                    )
                return self._select(salt_date)
        except sqlite3.Error as e:
            raise RepositoryError(f"Local salt write failed: {e}") from e

    def prune_before(self, cutoff: date) -> int:
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "DELETE FROM daily_salts WHERE salt_date < ?", (cutoff.isoformat(),)
                )
                return cur.rowcount
        except sqlite3.Error as e:
            raise RepositoryError(f"Local salt prune failed: {e}") from e
