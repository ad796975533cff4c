"""
Shared test fixtures.

Async services are driven with asyncio.run() inside ordinary tests.
"""

import sys
from pathlib import Path

# Add project root to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

import copy
import re
import pytest
from unittest.mock import patch
from typing import Generator, Optional

from models.matching import DirectoryEntry
from services.directory_service import InMemoryDirectory, DirectorySnapshot
from services.feedback_service import FeedbackService
from services.matching_oracle import NullMatchingOracle
from services.processing_service import ProcessingService
from services.record_store import InMemoryRecordStore

# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data=None, count: int = None):
        self.data = data if data is not None else []
        self.count = count if count is not None else (len(self.data) if isinstance(self.data, list) else 1)


def _ilike_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if c == "%":
            out.append(".*")
        elif c == "_":
            out.append(".")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$", re.IGNORECASE | re.DOTALL)


class MockSupabaseQuery:
    """
    Mock query builder with chainable methods.

    Filters apply to select, update and delete, so an update filtered on a
    stale state matches nothing, like the real compare-and-set.
    """

    def __init__(self, table: "MockSupabaseTable", op: str = "select", payload=None, on_conflict: Optional[str] = None):
        self._table = table
        self._op = op
        self._payload = payload
        self._on_conflict = on_conflict
        self._filters = []
        self._order = []
        self._limit = None
        self._range = None
        self._is_single = False

    def select(self, *args, **kwargs):
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        allowed = list(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def ilike(self, column, pattern):
        regex = _ilike_regex(pattern)
        self._filters.append(lambda row: row.get(column) is not None and bool(regex.match(str(row.get(column)))))
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self._order.append((column, desc))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def single(self):
        self._is_single = True
        return self

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def execute(self) -> MockSupabaseResponse:
        self._table.client.check_error(self._table.name, self._op)
        rows = self._table.rows

        if self._op == "insert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            for item in items:
                self._table.check_unique(item)
            inserted = [copy.deepcopy(item) for item in items]
            rows.extend(inserted)
            return MockSupabaseResponse(copy.deepcopy(inserted))

        if self._op == "upsert":
            key = self._on_conflict or "id"
            for i, row in enumerate(rows):
                if row.get(key) == self._payload.get(key):
                    rows[i] = {**row, **copy.deepcopy(self._payload)}
                    return MockSupabaseResponse([copy.deepcopy(rows[i])])
            rows.append(copy.deepcopy(self._payload))
            return MockSupabaseResponse([copy.deepcopy(self._payload)])

        if self._op == "update":
            updated = []
            for i, row in enumerate(rows):
                if self._matches(row):
                    rows[i] = {**row, **copy.deepcopy(self._payload)}
                    updated.append(copy.deepcopy(rows[i]))
            return MockSupabaseResponse(updated)

        if self._op == "delete":
            kept = [r for r in rows if not self._matches(r)]
            removed = [r for r in rows if self._matches(r)]
            rows[:] = kept
            return MockSupabaseResponse(removed)

        data = [copy.deepcopy(r) for r in rows if self._matches(r)]
        for column, desc in reversed(self._order):
            data.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=desc)
        if self._range is not None:
            data = data[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            data = data[:self._limit]

        if self._is_single:
            return MockSupabaseResponse(data=data[0] if data else None, count=1 if data else 0)
        return MockSupabaseResponse(data=data)


class MockSupabaseTable:
    """Mock Supabase table holding a shared list of rows."""

    def __init__(self, client: "MockSupabaseClient", name: str):
        self.client = client
        self.name = name

    @property
    def rows(self) -> list:
        return self.client._tables.setdefault(self.name, [])

    def check_unique(self, item: dict) -> None:
        for columns in self.client._unique.get(self.name, []):
            for row in self.rows:
                if all(row.get(c) == item.get(c) for c in columns):
                    raise Exception('duplicate key value violates unique constraint (23505)')

    def select(self, *args, **kwargs):
        return MockSupabaseQuery(self, "select")

    def insert(self, data):
        return MockSupabaseQuery(self, "insert", data)

    def upsert(self, data, on_conflict: Optional[str] = None, **kwargs):
        return MockSupabaseQuery(self, "upsert", data, on_conflict)

    def update(self, data):
        return MockSupabaseQuery(self, "update", data)

    def delete(self):
        return MockSupabaseQuery(self, "delete")


class MockStorageBucket:
    def __init__(self, objects: dict):
        self._objects = objects

    def upload(self, path, file, file_options=None):
        self._objects[path] = bytes(file)
        return {"Key": path}

    def download(self, path):
        if path not in self._objects:
            raise Exception(f"Object not found: {path}")
        return self._objects[path]

    def remove(self, paths):
        return [{"name": p} for p in paths if self._objects.pop(p, None) is not None]


class MockStorage:
    def __init__(self):
        self.buckets: dict[str, dict] = {}

    def from_(self, bucket: str) -> MockStorageBucket:
        return MockStorageBucket(self.buckets.setdefault(bucket, {}))


class MockSupabaseClient:
    """Mock Supabase client with in-memory tables and storage."""

    def __init__(self):
        self._tables: dict[str, list] = {}
        self._unique: dict[str, list[tuple]] = {}
        self._errors: dict[tuple[str, str], Exception] = {}
        self.storage = MockStorage()

    def set_table_data(self, table_name: str, data: list, count: int = None):
        """Configure mock data for a table."""
        self._tables[table_name] = [dict(row) for row in data]

    def add_unique(self, table_name: str, *columns: str):
        """Make inserts violating these columns raise like Postgres."""
        self._unique.setdefault(table_name, []).append(columns)

    def fail_on(self, table_name: str, op: str, error: Exception):
        """Make every `op` on the table raise `error`."""
        self._errors[(table_name, op)] = error

    def check_error(self, table_name: str, op: str):
        error = self._errors.get((table_name, op))
        if error is not None:
            raise error

    def table(self, name: str) -> MockSupabaseTable:
        """Get mock table."""
        return MockSupabaseTable(self, name)


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("directory_entries", [
                {"id": "1", "full_name": "Ana Lopez", ...}
            ])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """
    Patch the database client with mock.

    Usage:
        def test_something(mock_db, mock_supabase):
            store = SupabaseRecordStore()  # uses the mock
    """
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.record_store.get_supabase_client", return_value=mock_supabase):
            with patch("services.directory_service.get_supabase_client", return_value=mock_supabase):
                yield mock_supabase


@pytest.fixture
def directory_entries() -> list[DirectoryEntry]:
    """Small enrolled-person directory for one organization."""
    return [
        DirectoryEntry(id="p-001", full_name="John Smith", email="john.smith@x.edu", external_id="S1001", organization_id="org-1"),
        DirectoryEntry(id="p-002", full_name="Robert Garcia", email="rgarcia@x.edu", external_id="S1002", organization_id="org-1"),
        DirectoryEntry(id="p-003", full_name="Maria Fernández", email="maria.f@x.edu", external_id="S1003", organization_id="org-1"),
        DirectoryEntry(id="p-004", full_name="Elizabeth Turner", email="eturner@x.edu", external_id="S1004", organization_id="org-1"),
        DirectoryEntry(id="p-005", full_name="Wei Chen", email="wchen@x.edu", external_id="S1005", organization_id="org-1"),
        DirectoryEntry(id="p-900", full_name="Other Org Person", email="other@y.edu", external_id="Z9000", organization_id="org-2"),
    ]


@pytest.fixture
def directory(directory_entries) -> InMemoryDirectory:
    return InMemoryDirectory(directory_entries)


@pytest.fixture
def snapshot(directory) -> DirectorySnapshot:
    return DirectorySnapshot.load(directory, "org-1")


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def feedback_service(memory_store) -> FeedbackService:
    return FeedbackService(memory_store)


@pytest.fixture
def processing_service(memory_store, directory, feedback_service) -> ProcessingService:
    """Processing service over in-memory collaborators, oracle disabled."""
    return ProcessingService(
        store=memory_store,
        directory=directory,
        oracle=NullMatchingOracle(),
        feedback=feedback_service,
    )


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client(processing_service, feedback_service):
    """
    FastAPI test client wired to in-memory services.

    Background tasks run before each response returns, so an upload's job
    has already reached a terminal state when the request completes.
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.attendance.get_processing_service", return_value=processing_service):
        with patch("routes.attendance.get_feedback_service", return_value=feedback_service):
            yield TestClient(app)
