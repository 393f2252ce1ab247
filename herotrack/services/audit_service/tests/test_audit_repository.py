"""Tests for audit repository storage backends."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from herotrack.shared.database import RepositoryError
from herotrack.services.audit_service.audit_logger import (
    AuditAction,
    AuditEntity,
    AuditEntry,
)
from herotrack.services.audit_service.audit_repository import AuditRepository

NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)


@pytest.fixture
def repository():
    """Create repository with in-memory storage."""
    return AuditRepository()


def make_entry(entry_id="audit_test123", timestamp=NOW, previous_hash="genesis"):
    entry = AuditEntry(
        entry_id=entry_id,
        timestamp=timestamp,
        action=AuditAction.RETENTION_RUN,
        entity_type=AuditEntity.RETENTION_RUN,
        entity_id="run-1",
        actor_id="scheduler",
        actor_role="system",
        classroom_scope=None,
        details={"status": "completed"},
        previous_hash=previous_hash,
    )
    return replace(entry, entry_hash=entry.compute_hash())


@pytest.fixture
def connection_manager():
    manager = MagicMock()
    conn = MagicMock()
    manager.get_connection.return_value.__enter__.return_value = conn
    return manager


def cursor_of(connection_manager):
    conn = connection_manager.get_connection.return_value.__enter__.return_value
    return conn.cursor.return_value.__enter__.return_value


class TestAuditRepositoryMemory:
    def test_default_initialization(self):
        repo = AuditRepository()

        assert repo.connection_manager is None
        assert repo._memory_store == []

    def test_append_to_memory(self, repository):
        assert repository.append(make_entry()) is True
        assert len(repository.entries()) == 1

    def test_latest_hash(self, repository):
        assert repository.latest_hash() is None

        entry = make_entry()
        repository.append(entry)

        assert repository.latest_hash() == entry.entry_hash

    def test_query_by_date_range(self, repository):
        repository.append(make_entry("old", NOW - timedelta(days=10)))
        repository.append(make_entry("new", NOW))

        recent = repository.query(start_date=NOW - timedelta(days=1))

        assert [e.entry_id for e in recent] == ["new"]

    def test_entries_in_chain_order(self, repository):
        repository.append(make_entry("first"))
        repository.append(make_entry("second"))

        assert [e.entry_id for e in repository.entries()] == ["first", "second"]


class TestAuditRepositoryPostgres:
    def test_append_executes_insert(self, connection_manager):
        repo = AuditRepository(connection_manager=connection_manager)

        assert repo.append(make_entry()) is True

        cursor = cursor_of(connection_manager)
        query, params = cursor.execute.call_args[0]
        assert "INSERT INTO audit_entries" in query
        assert params[0] == "audit_test123"
        assert params[2] == "retention_run"

    def test_append_failure_raises_repository_error(self, connection_manager):
        cursor_of(connection_manager).execute.side_effect = Exception("disk full")
        repo = AuditRepository(connection_manager=connection_manager)

        with pytest.raises(RepositoryError):
            repo.append(make_entry())

    def test_query_builds_filters(self, connection_manager):
        cursor = cursor_of(connection_manager)
        cursor.fetchall.return_value = []
        repo = AuditRepository(connection_manager=connection_manager)

        repo.query(action=AuditAction.BATCH_REJECTED, classroom_scope="class-a", limit=5)

        query, params = cursor.execute.call_args[0]
        assert "action = %s" in query
        assert "classroom_scope = %s" in query
        assert params == ["batch_rejected", "class-a", 5]

    def test_rows_map_to_entries(self, connection_manager):
        entry = make_entry()
        cursor = cursor_of(connection_manager)
        cursor.fetchall.return_value = [(
            entry.entry_id, entry.timestamp, entry.action.value,
            entry.entity_type.value, entry.entity_id, entry.actor_id,
            entry.actor_role, entry.classroom_scope, entry.details,
            entry.previous_hash, entry.entry_hash,
        )]
        repo = AuditRepository(connection_manager=connection_manager)

        loaded = repo.entries()

        assert loaded == [entry]
        assert loaded[0].compute_hash() == entry.entry_hash
