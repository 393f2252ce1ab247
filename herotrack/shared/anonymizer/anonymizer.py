"""Subject anonymization with rotating daily salts.

A subject hash is HMAC-SHA256, keyed by the day's salt, over the subject's
local id and classroom scope. The same inputs on the same day give the same
digest; a different day uses a different salt, so hashes cannot be linked
across days. Once a day's salt is pruned the hash can no longer be
recomputed or checked for that day.

Used on the device at capture time and on the server for events that
arrive without a hash.
"""
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

from herotrack.shared.database import RepositoryError
from herotrack.shared.errors import SaltUnavailable
from herotrack.shared.models.events import SUBJECT_HASH_PATTERN
from herotrack.shared.utils.clock import utc_date, utc_now

logger = logging.getLogger(__name__)

_FIELD_SEPARATOR = "\x1f"


@dataclass(frozen=True)
class AnonymizerConfig:
    """Salt window settings.

    Salts exist for the last ``window_days`` days (today included) and up
    to ``future_days`` ahead to cover device clocks near midnight.
    """
    window_days: int = 7
    future_days: int = 1

    def __post_init__(self):
        if self.window_days < 1:
            raise ValueError("window_days must be at least 1")
        if self.future_days < 0:
            raise ValueError("future_days cannot be negative")

    @classmethod
    def from_env(cls) -> "AnonymizerConfig":
        return cls(
            window_days=int(os.getenv("HEROTRACK_SALT_WINDOW_DAYS", "7")),
            future_days=int(os.getenv("HEROTRACK_SALT_FUTURE_DAYS", "1")),
        )


def compute_subject_hash(subject_local_id: str, classroom_scope: str, salt: str) -> str:
    """Keyed one-way digest of a subject within a classroom.

    Returns:
        64 lowercase hex characters
    """
    message = f"{subject_local_id}{_FIELD_SEPARATOR}{classroom_scope}".encode("utf-8")
    return hmac.new(salt.encode("utf-8"), message, hashlib.sha256).hexdigest()


def is_valid_subject_hash(value: Optional[str]) -> bool:
    return isinstance(value, str) and SUBJECT_HASH_PATTERN.match(value) is not None


class Anonymizer:
    """Derives per-day subject hashes from a salt store.

    The salt store must provide ``get(day)``, ``get_or_create(day)`` and
    ``prune_before(day)``.
    """

    def __init__(
        self,
        salt_store,
        config: Optional[AnonymizerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.salt_store = salt_store
        self.config = config or AnonymizerConfig()
        self._clock = clock

    def _window(self):
        today = utc_date(self._clock())
        earliest = today - timedelta(days=self.config.window_days - 1)
        latest = today + timedelta(days=self.config.future_days)
        return earliest, latest

    def in_window(self, day: date) -> bool:
        earliest, latest = self._window()
        return earliest <= day <= latest

    def hash(
        self,
        subject_local_id: str,
        classroom_scope: str,
        day: Union[date, datetime],
    ) -> str:
        """Anonymize a subject for the given day.

        Args:
            subject_local_id: Device-local subject identifier (never stored)
            classroom_scope: Classroom the observation belongs to
            day: Capture day or timestamp

        Returns:
            64-hex-char subject hash

        Raises:
            ValueError: If the subject or scope is empty
            SaltUnavailable: If the day is outside the salt window or the
                salt store cannot provide a salt
        """
        if not subject_local_id or not classroom_scope:
            raise ValueError("subject_local_id and classroom_scope are required")

        if isinstance(day, datetime):
            day = utc_date(day)

        if not self.in_window(day):
            logger.critical(
                "SALT_UNAVAILABLE",
                extra={"salt_date": day.isoformat(), "cause": "outside_window"}
            )
            raise SaltUnavailable(f"No salt can exist for {day.isoformat()}")

        try:
            salt = self.salt_store.get_or_create(day)
        except RepositoryError as e:
            logger.critical(
                "SALT_UNAVAILABLE",
                extra={"salt_date": day.isoformat(), "cause": "store_error", "error": str(e)}
            )
            raise SaltUnavailable(f"Salt store failed for {day.isoformat()}") from e

        return compute_subject_hash(subject_local_id, classroom_scope, salt.salt_value)

    def verify(
        self,
        subject_hash: str,
        subject_local_id: str,
        classroom_scope: str,
        day: Union[date, datetime],
    ) -> bool:
        """Check a hash against the day's salt without creating one.

        Returns False once the day's salt has been pruned.
        """
        if isinstance(day, datetime):
            day = utc_date(day)
        if not is_valid_subject_hash(subject_hash):
            return False

        salt = self.salt_store.get(day)
        if salt is None:
            return False

        expected = compute_subject_hash(subject_local_id, classroom_scope, salt.salt_value)
        return hmac.compare_digest(expected, subject_hash)

    def prune_expired_salts(self) -> int:
        """Delete salts that fell out of the window.

        After this, raw identifiers for those days can no longer be
        linked to their hashes.
        """
        earliest, _ = self._window()
        pruned = self.salt_store.prune_before(earliest)

        logger.info(
            "SALTS_PRUNED",
            extra={"pruned": pruned, "cutoff": earliest.isoformat()}
        )
        return pruned
