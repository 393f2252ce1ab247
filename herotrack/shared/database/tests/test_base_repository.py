"""Tests for base repository pattern."""
import pytest
from unittest.mock import MagicMock
from dataclasses import dataclass
from typing import Any, Dict

import psycopg2

from herotrack.shared.database.repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)


@dataclass
class SampleEntity:
    """Entity used by repository tests."""
    id: str
    name: str
    value: int


class SampleRepository(BaseRepository[SampleEntity]):
    """Concrete repository for testing."""

    def __init__(self, connection_manager=None):
        super().__init__("sample_table", connection_manager)
        self._memory_store: Dict[str, SampleEntity] = {}

    def _row_to_entity(self, row: tuple) -> SampleEntity:
        return SampleEntity(id=row[0], name=row[1], value=row[2])

    def _entity_to_params(self, entity: SampleEntity) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "name": entity.name,
            "value": entity.value,
        }

    def _memory_count(self) -> int:
        return len(self._memory_store)


@pytest.fixture
def connection():
    return MagicMock()


@pytest.fixture
def cursor(connection):
    return connection.cursor.return_value.__enter__.return_value


@pytest.fixture
def connection_manager(connection):
    manager = MagicMock()
    manager.get_connection.return_value.__enter__.return_value = connection
    return manager


class TestRepositoryExceptions:
    """Tests for repository exception classes."""

    def test_repository_error(self):
        error = RepositoryError("Test error")
        assert str(error) == "Test error"

    def test_not_found_error(self):
        assert isinstance(NotFoundError("missing"), RepositoryError)

    def test_duplicate_error(self):
        assert isinstance(DuplicateError("duplicate"), RepositoryError)


class TestBaseRepository:
    """Tests for BaseRepository class."""

    def test_memory_backend_when_no_connection_manager(self):
        repository = SampleRepository()

        assert repository.uses_postgres is False
        assert repository.count() == 0

    def test_postgres_backend(self, connection_manager):
        repository = SampleRepository(connection_manager)

        assert repository.uses_postgres is True
        assert repository.table_name == "sample_table"

    def test_transaction_commits(self, connection_manager, connection, cursor):
        repository = SampleRepository(connection_manager)

        with repository.transaction() as cur:
            cur.execute("SELECT 1")

        cursor.execute.assert_called_once_with("SELECT 1")
        connection.commit.assert_called_once()
        connection.rollback.assert_not_called()

    def test_transaction_rolls_back_on_error(self, connection_manager, connection):
        repository = SampleRepository(connection_manager)

        with pytest.raises(KeyError):
            with repository.transaction():
                raise KeyError("boom")

        connection.rollback.assert_called_once()
        connection.commit.assert_not_called()

    def test_integrity_error_becomes_duplicate_error(self, connection_manager, connection, cursor):
        cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")
        repository = SampleRepository(connection_manager)

        with pytest.raises(DuplicateError):
            with repository.transaction() as cur:
                cur.execute("INSERT ...")

        connection.rollback.assert_called_once()

    def test_database_error_becomes_repository_error(self, connection_manager, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("connection lost")
        repository = SampleRepository(connection_manager)

        with pytest.raises(RepositoryError):
            repository.count()

    def test_count(self, connection_manager, cursor):
        cursor.fetchone.return_value = (3,)
        repository = SampleRepository(connection_manager)

        assert repository.count() == 3

    def test_fetchall_maps_rows(self, connection_manager, cursor):
        cursor.fetchall.return_value = [("a", "first", 1), ("b", "second", 2)]
        repository = SampleRepository(connection_manager)

        result = repository._fetchall("SELECT id, name, value FROM sample_table")

        assert [e.id for e in result] == ["a", "b"]
        assert result[1].value == 2

    def test_fetchone_none(self, connection_manager, cursor):
        cursor.fetchone.return_value = None
        repository = SampleRepository(connection_manager)

        assert repository._fetchone("SELECT 1 WHERE false") is None

    def test_insert_statement(self):
        repository = SampleRepository()
        query, values = repository._insert_statement(
            SampleEntity(id="x", name="n", value=5), conflict_target="id"
        )

        assert query.startswith("INSERT INTO sample_table (id, name, value)")
        assert query.endswith("ON CONFLICT (id) DO NOTHING")
        assert values == ["x", "n", 5]
