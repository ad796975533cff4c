"""
Unit tests for the directory backends and snapshots.

Run: pytest tests/unit/test_directory_service.py -v
"""

import pytest

from exceptions import DatabaseError, ValidationError
from services.directory_service import InMemoryDirectory, SupabaseDirectory, DirectorySnapshot
from tests.factories import DirectoryEntryFactory


class TestInMemoryDirectory:
    """Tests for InMemoryDirectory"""

    def test_lookup_is_case_insensitive(self, directory):
        entry = directory.lookup_by_exact("email", "  RGarcia@X.edu ")

        assert entry.id == "p-002"

    def test_lookup_by_external_id(self, directory):
        assert directory.lookup_by_exact("external_id", "s1004").id == "p-004"

    def test_lookup_respects_organization(self, directory):
        assert directory.lookup_by_exact("email", "other@y.edu", organization_id="org-1") is None
        assert directory.lookup_by_exact("email", "other@y.edu", organization_id="org-2").id == "p-900"

    def test_empty_value(self, directory):
        assert directory.lookup_by_exact("email", "  ") is None

    def test_invalid_field(self, directory):
        with pytest.raises(ValidationError) as exc_info:
            directory.lookup_by_exact("full_name", "John Smith")

        assert exc_info.value.code == "INVALID_LOOKUP_FIELD"

    def test_list_candidates_pages_by_id(self, directory):
        first = directory.list_candidates("org-1", offset=0, limit=2)
        second = directory.list_candidates("org-1", offset=2, limit=2)

        assert [e.id for e in first] == ["p-001", "p-002"]
        assert [e.id for e in second] == ["p-003", "p-004"]

    def test_unscoped_entries_are_visible_everywhere(self):
        directory = InMemoryDirectory([
            DirectoryEntryFactory.create(id="shared", organization_id=None),
            DirectoryEntryFactory.create(id="mine", organization_id="org-1"),
            DirectoryEntryFactory.create(id="theirs", organization_id="org-2"),
        ])

        assert [e.id for e in directory.list_candidates("org-1")] == ["mine", "shared"]

    def test_from_csv(self, tmp_path):
        path = tmp_path / "directory.csv"
        path.write_text(
            "ID,Full_Name,Email,External_ID,Organization_ID\n"
            "p-1,Ana Lopez,ana@x.edu,0042,org-1\n"
            "p-2,Bob Stone,,,org-1\n"
            ",Missing Id,,,org-1\n",
            encoding="utf-8",
        )

        directory = InMemoryDirectory.from_csv(path)
        entries = directory.list_candidates("org-1")

        assert [e.id for e in entries] == ["p-1", "p-2"]
        assert entries[0].external_id == "0042"
        assert entries[1].email is None

    def test_from_csv_missing_columns(self, tmp_path):
        path = tmp_path / "directory.csv"
        path.write_text("name,email\nAna,ana@x.edu\n", encoding="utf-8")

        with pytest.raises(ValidationError) as exc_info:
            InMemoryDirectory.from_csv(path)

        assert exc_info.value.code == "DIRECTORY_FILE_INVALID"

    def test_from_csv_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            InMemoryDirectory.from_csv(tmp_path / "absent.csv")


class TestDirectorySnapshot:
    """Tests for DirectorySnapshot"""

    def test_load_pages_until_short_page(self, directory):
        snapshot = DirectorySnapshot.load(directory, "org-1", page_size=2)

        assert len(snapshot) == 5
        assert [e.id for e in snapshot.entries] == ["p-001", "p-002", "p-003", "p-004", "p-005"]

    def test_exact_page_multiple(self):
        directory = InMemoryDirectory([
            DirectoryEntryFactory.create(id=f"e-{i}") for i in range(4)
        ])

        snapshot = DirectorySnapshot.load(directory, "org-1", page_size=2)

        assert len(snapshot) == 4

    def test_lookup(self, snapshot):
        assert snapshot.lookup_by_exact("email", "WCHEN@x.edu").id == "p-005"
        assert snapshot.lookup_by_exact("email", "other@y.edu") is None

    def test_first_entry_wins_shared_email(self):
        directory = InMemoryDirectory([
            DirectoryEntryFactory.create(id="b", email="same@x.edu"),
            DirectoryEntryFactory.create(id="a", email="same@x.edu"),
        ])

        snapshot = DirectorySnapshot.load(directory, "org-1")

        assert snapshot.lookup_by_exact("email", "same@x.edu").id == "a"

    def test_by_id(self, snapshot):
        assert snapshot.by_id["p-003"].full_name == "Maria Fernández"


class TestSupabaseDirectory:
    """Tests for SupabaseDirectory over the mock client."""

    @pytest.fixture
    def seeded(self, mock_db, directory_entries):
        mock_db.set_table_data("directory_entries", DirectoryEntryFactory.as_rows(directory_entries))
        return mock_db

    def test_lookup_is_case_insensitive(self, seeded):
        entry = SupabaseDirectory().lookup_by_exact("email", "John.Smith@X.EDU", organization_id="org-1")

        assert entry.id == "p-001"

    def test_lookup_scoped_to_organization(self, seeded):
        assert SupabaseDirectory().lookup_by_exact("email", "other@y.edu", organization_id="org-1") is None

    def test_wildcards_are_escaped(self, mock_db):
        """'_' in a value must not act as a single-character wildcard."""
        mock_db.set_table_data("directory_entries", [
            {"id": "p-1", "full_name": "Ana Lopez", "email": "anaxlopez@x.edu", "organization_id": "org-1"},
        ])

        assert SupabaseDirectory().lookup_by_exact("email", "ana_lopez@x.edu") is None

    def test_list_candidates_paginates(self, seeded):
        directory = SupabaseDirectory()

        page = directory.list_candidates("org-1", offset=2, limit=2)

        assert [e.id for e in page] == ["p-003", "p-004"]

    def test_snapshot_over_supabase(self, seeded):
        snapshot = DirectorySnapshot.load(SupabaseDirectory(), "org-1", page_size=2)

        assert len(snapshot) == 5

    def test_query_failure(self, seeded):
        seeded.fail_on("directory_entries", "select", Exception("boom"))

        with pytest.raises(DatabaseError):
            SupabaseDirectory().list_candidates("org-1")
