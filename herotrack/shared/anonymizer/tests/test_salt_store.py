"""Tests for the server salt store."""
import threading
import pytest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

from herotrack.shared.anonymizer import DailySalt, SaltStore, generate_salt


class TestGenerateSalt:

    def test_length_and_uniqueness(self):
        salts = {generate_salt() for _ in range(20)}

        assert len(salts) == 20
        assert all(len(s) == 64 for s in salts)

    def test_repr_hides_value(self):
        salt = DailySalt(salt_date=date(2024, 3, 1), salt_value="f" * 64)
        assert "f" * 64 not in repr(salt)


class TestMemorySaltStore:
    """Tests for the in-memory backend."""

    def test_get_or_create_is_stable(self):
        store = SaltStore()
        day = date(2024, 3, 1)

        first = store.get_or_create(day)
        second = store.get_or_create(day)

        assert first.salt_value == second.salt_value

    def test_concurrent_creation_yields_one_salt(self):
        store = SaltStore()
        day = date(2024, 3, 1)
        results = []

        def worker():
            results.append(store.get_or_create(day).salt_value)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        assert store.count() == 1

    def test_prune_before(self):
        store = SaltStore()
        for d in (1, 2, 3, 4):
            store.get_or_create(date(2024, 3, d))

        pruned = store.prune_before(date(2024, 3, 3))

        assert pruned == 2
        assert store.get(date(2024, 3, 2)) is None
        assert store.get(date(2024, 3, 3)) is not None


class TestPostgresSaltStore:
    """Tests for SQL issued by the PostgreSQL backend."""

    @pytest.fixture
    def cursor(self):
        return MagicMock()

    @pytest.fixture
    def store(self, cursor):
        connection = MagicMock()
        connection.cursor.return_value.__enter__.return_value = cursor
        manager = MagicMock()
        manager.get_connection.return_value.__enter__.return_value = connection
        return SaltStore(manager)

    def test_get_or_create_inserts_do_nothing_then_rereads(self, store, cursor):
        day = date(2024, 3, 1)
        created = datetime(2024, 3, 1, tzinfo=timezone.utc)
        cursor.rowcount = 0
        cursor.fetchone.return_value = (day, "e" * 64, created)

        salt = store.get_or_create(day)

        insert_sql = cursor.execute.call_args_list[0].args[0]
        assert "ON CONFLICT (salt_date) DO NOTHING" in insert_sql
        assert "DO UPDATE" not in insert_sql
        assert salt.salt_value == "e" * 64

    def test_prune_before(self, store, cursor):
        cursor.rowcount = 3

        assert store.prune_before(date(2024, 3, 1)) == 3
        assert "DELETE FROM anonymous_hash_salts" in cursor.execute.call_args.args[0]
