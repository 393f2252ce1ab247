"""Tests for daily-salted subject anonymization."""
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

from herotrack.shared.anonymizer import (
    Anonymizer,
    AnonymizerConfig,
    SaltStore,
    compute_subject_hash,
    is_valid_subject_hash,
)
from herotrack.shared.database import RepositoryError
from herotrack.shared.errors import SaltUnavailable


NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)
TODAY = NOW.date()


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def store():
    return SaltStore()


@pytest.fixture
def anonymizer(store, clock):
    return Anonymizer(store, clock=clock)


class TestComputeSubjectHash:
    """Tests for the keyed digest."""

    def test_format(self):
        digest = compute_subject_hash("student-7", "class-a", "a" * 64)

        assert len(digest) == 64
        assert is_valid_subject_hash(digest)

    def test_depends_on_every_input(self):
        base = compute_subject_hash("student-7", "class-a", "salt-1")

        assert compute_subject_hash("student-8", "class-a", "salt-1") != base
        assert compute_subject_hash("student-7", "class-b", "salt-1") != base
        assert compute_subject_hash("student-7", "class-a", "salt-2") != base

    def test_field_boundary_is_unambiguous(self):
        assert compute_subject_hash("ab", "c", "s") != compute_subject_hash("a", "bc", "s")

    @pytest.mark.parametrize("value", [None, "", "A" * 64, "g" * 64, "a" * 63, 123])
    def test_invalid_hash_formats(self, value):
        assert is_valid_subject_hash(value) is False


class TestAnonymizer:
    """Tests for Anonymizer."""

    def test_deterministic_within_day(self, anonymizer):
        first = anonymizer.hash("student-7", "class-a", TODAY)
        second = anonymizer.hash("student-7", "class-a", NOW)

        assert first == second

    def test_changes_across_days(self, anonymizer):
        today = anonymizer.hash("student-7", "class-a", TODAY)
        yesterday = anonymizer.hash("student-7", "class-a", TODAY - timedelta(days=1))

        assert today != yesterday

    def test_first_call_creates_one_salt(self, anonymizer, store):
        anonymizer.hash("student-7", "class-a", TODAY)
        anonymizer.hash("student-8", "class-a", TODAY)

        assert store.count() == 1
        assert store.get(TODAY) is not None

    def test_rejects_day_outside_window(self, anonymizer):
        with pytest.raises(SaltUnavailable):
            anonymizer.hash("student-7", "class-a", TODAY - timedelta(days=7))
        with pytest.raises(SaltUnavailable):
            anonymizer.hash("student-7", "class-a", TODAY + timedelta(days=2))

    def test_window_edges_accepted(self, anonymizer):
        anonymizer.hash("student-7", "class-a", TODAY - timedelta(days=6))
        anonymizer.hash("student-7", "class-a", TODAY + timedelta(days=1))

    def test_store_failure_raises_salt_unavailable(self, clock):
        store = MagicMock()
        store.get_or_create.side_effect = RepositoryError("db down")
        anonymizer = Anonymizer(store, clock=clock)

        with pytest.raises(SaltUnavailable):
            anonymizer.hash("student-7", "class-a", TODAY)

    def test_requires_subject_and_scope(self, anonymizer):
        with pytest.raises(ValueError):
            anonymizer.hash("", "class-a", TODAY)
        with pytest.raises(ValueError):
            anonymizer.hash("student-7", "", TODAY)

    def test_verify(self, anonymizer):
        digest = anonymizer.hash("student-7", "class-a", TODAY)

        assert anonymizer.verify(digest, "student-7", "class-a", TODAY) is True
        assert anonymizer.verify(digest, "student-8", "class-a", TODAY) is False
        assert anonymizer.verify("not-a-hash", "student-7", "class-a", TODAY) is False

    def test_verify_does_not_create_salt(self, anonymizer, store):
        assert anonymizer.verify("a" * 64, "student-7", "class-a", TODAY) is False
        assert store.count() == 0

    def test_prune_makes_hash_unverifiable(self, anonymizer, clock):
        old_day = TODAY - timedelta(days=6)
        digest = anonymizer.hash("student-7", "class-a", old_day)
        anonymizer.hash("student-7", "class-a", TODAY)

        clock.now = NOW + timedelta(days=1)
        pruned = anonymizer.prune_expired_salts()

        assert pruned == 1
        assert anonymizer.verify(digest, "student-7", "class-a", old_day) is False

    def test_rotated_salt_gives_unrelated_hash(self, anonymizer, store, clock):
        day = TODAY
        before = anonymizer.hash("student-7", "class-a", day)

        clock.now = NOW + timedelta(days=8)
        anonymizer.prune_expired_salts()
        clock.now = NOW

        after = anonymizer.hash("student-7", "class-a", day)
        assert before != after


class TestAnonymizerConfig:
    """Tests for AnonymizerConfig."""

    def test_defaults(self):
        config = AnonymizerConfig()
        assert config.window_days == 7
        assert config.future_days == 1

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            AnonymizerConfig(window_days=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("HEROTRACK_SALT_WINDOW_DAYS", "3")
        config = AnonymizerConfig.from_env()
        assert config.window_days == 3
