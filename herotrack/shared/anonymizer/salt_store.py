"""Durable storage for per-day hashing salts.

Exactly one salt exists per calendar day. Creation is insert-if-absent
followed by a re-read, so concurrent first callers for a new day all end
up with the same salt.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

from herotrack.shared.database import BaseRepository, ConnectionManager
from herotrack.shared.utils.clock import utc_now

logger = logging.getLogger(__name__)

SALT_BYTES = 32


def generate_salt() -> str:
    """New random salt: 64 hex characters."""
    return secrets.token_hex(SALT_BYTES)


@dataclass(frozen=True)
class DailySalt:
    """Secret used for one calendar day (UTC)."""
    salt_date: date
    salt_value: str
    created_at: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        return f"DailySalt(salt_date={self.salt_date.isoformat()}, salt_value=<redacted>)"


class SaltStore(BaseRepository[DailySalt]):
    """Server-side salt store backed by PostgreSQL or memory."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("anonymous_hash_salts", connection_manager)
        self._memory_store: Dict[date, DailySalt] = {}

    def _row_to_entity(self, row: tuple) -> DailySalt:
        return DailySalt(salt_date=row[0], salt_value=row[1], created_at=row[2])

    def _entity_to_params(self, entity: DailySalt) -> Dict[str, Any]:
        return {
            "salt_date": entity.salt_date,
            "salt": entity.salt_value,
            "created_at": entity.created_at,
        }

    def _memory_count(self) -> int:
        return len(self._memory_store)

    def get(self, salt_date: date) -> Optional[DailySalt]:
        """Return the salt for a day without creating one."""
        if not self.uses_postgres:
            with self._lock:
                return self._memory_store.get(salt_date)

        return self._fetchone(
            f"SELECT salt_date, salt, created_at FROM {self.table_name} WHERE salt_date = %s",
            (salt_date,),
        )

    def get_or_create(self, salt_date: date) -> DailySalt:
        """Return the day's salt, generating and storing it on first use.

        Args:
            salt_date: Calendar day (UTC)

        Returns:
            The single salt for that day

        Raises:
            RepositoryError: If the store cannot be read or written
        """
        candidate = DailySalt(salt_date=salt_date, salt_value=generate_salt())

        if not self.uses_postgres:
            with self._lock:
                existing = self._memory_store.get(salt_date)
                if existing is not None:
                    return existing
                self._memory_store[salt_date] = candidate
            logger.info("DAILY_SALT_CREATED", extra={"salt_date": salt_date.isoformat()})
            return candidate

        insert, values = self._insert_statement(candidate, conflict_target="salt_date")
        with self.transaction() as cur:
            cur.execute(insert, values)
            created = cur.rowcount == 1
            cur.execute(
                f"SELECT salt_date, salt, created_at FROM {self.table_name} WHERE salt_date = %s",
                (salt_date,),
            )
            row = cur.fetchone()

        if created:
            logger.info("DAILY_SALT_CREATED", extra={"salt_date": salt_date.isoformat()})
        return self._row_to_entity(row)

    def prune_before(self, cutoff: date) -> int:
        """Delete salts for days strictly before ``cutoff``.

        Returns:
            Number of salts deleted
        """
        if not self.uses_postgres:
            with self._lock:
                expired = [d for d in self._memory_store if d < cutoff]
                for d in expired:
                    del self._memory_store[d]
            return len(expired)

        with self.transaction() as cur:
            cur.execute(f"DELETE FROM {self.table_name} WHERE salt_date < %s", (cutoff,))
            return cur.rowcount
