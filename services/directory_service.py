"""
Directory of enrolled people.

The directory is an external, read-only collaborator. Two backends exist:
a Supabase table and an in-memory list (optionally seeded from CSV). A
DirectorySnapshot pages through either once per job so matching sees one
consistent directory.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
import structlog

import pandas as pd

from config import get_supabase_client, settings
from exceptions import DatabaseError, ValidationError
from models.matching import DirectoryEntry

logger = structlog.get_logger(__name__)

EXACT_FIELDS = ("email", "external_id")


def _exact_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class Directory(ABC):
    """Narrow lookup interface over enrolled people."""

    @abstractmethod
    def lookup_by_exact(
        self,
        field: str,
        value: str,
        organization_id: Optional[str] = None,
    ) -> Optional[DirectoryEntry]:
        """Entry whose `field` equals `value` case-insensitively, if any."""

    @abstractmethod
    def list_candidates(
        self,
        organization_id: Optional[str],
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[DirectoryEntry]:
        """One page of entries, ordered by id."""


def _check_field(field: str) -> None:
    if field not in EXACT_FIELDS:
        raise ValidationError(
            message=f"Unsupported lookup field: {field}",
            code="INVALID_LOOKUP_FIELD",
            details={"provided": field, "valid": list(EXACT_FIELDS)}
        )


class SupabaseDirectory(Directory):
    """Directory backed by the `directory_entries` table."""

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "directory_entries"

    def lookup_by_exact(
        self,
        field: str,
        value: str,
        organization_id: Optional[str] = None,
    ) -> Optional[DirectoryEntry]:
        _check_field(field)
        key = _exact_key(value)
        if not key:
            return None

        try:
            # ilike without wildcards is a case-insensitive equality
            pattern = key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            query = self.db.table(self.table).select("*").ilike(field, pattern)
            if organization_id:
                query = query.eq("organization_id", organization_id)
            result = query.order("id").limit(1).execute()
        except Exception as e:
            logger.error("directory_lookup_failed", field=field, error=str(e))
            raise DatabaseError("directory lookup", str(e))

        if not result.data:
            return None
        return self._row_to_entry(result.data[0])

    def list_candidates(
        self,
        organization_id: Optional[str],
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[DirectoryEntry]:
        limit = limit or settings.directory_page_size

        try:
            query = self.db.table(self.table).select("*")
            if organization_id:
                query = query.eq("organization_id", organization_id)
            result = query.order("id").range(offset, offset + limit - 1).execute()
        except Exception as e:
            logger.error("directory_list_failed", organization_id=organization_id, error=str(e))
            raise DatabaseError("directory list", str(e))

        return [self._row_to_entry(row) for row in result.data]

    def _row_to_entry(self, row: dict) -> DirectoryEntry:
        """Convert database row to DirectoryEntry."""
        return DirectoryEntry(
            id=str(row["id"]),
            full_name=row["full_name"],
            email=row.get("email"),
            external_id=row.get("external_id"),
            organization_id=row.get("organization_id"),
        )


class InMemoryDirectory(Directory):
    """Directory held in process memory."""

    def __init__(self, entries: Optional[list[DirectoryEntry]] = None):
        self._entries = sorted(entries or [], key=lambda e: e.id)

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "InMemoryDirectory":
        """
        Load entries from a CSV with columns id, full_name, email,
        external_id, organization_id (the last three optional).
        """
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except Exception as e:
            logger.error("directory_csv_read_failed", path=str(path), error=str(e))
            raise ValidationError(
                message="Failed to read directory file",
                code="DIRECTORY_FILE_INVALID",
                details={"original_error": str(e)}
            )

        df.columns = [str(c).strip().lower() for c in df.columns]
        missing = [c for c in ("id", "full_name") if c not in df.columns]
        if missing:
            raise ValidationError(
                message=f"Directory file missing columns: {', '.join(missing)}",
                code="DIRECTORY_FILE_INVALID",
            )

        entries = [
            DirectoryEntry(
                id=row["id"],
                full_name=row["full_name"],
                email=row.get("email") or None,
                external_id=row.get("external_id") or None,
                organization_id=row.get("organization_id") or None,
            )
            for row in df.to_dict(orient="records")
            if row["id"] and row["full_name"]
        ]
        logger.info("directory_loaded", path=str(path), entries=len(entries))
        return cls(entries)

    def _visible(self, organization_id: Optional[str]) -> list[DirectoryEntry]:
        return [
            e for e in self._entries
            if organization_id is None
            or e.organization_id is None
            or e.organization_id == organization_id
        ]

    def lookup_by_exact(
        self,
        field: str,
        value: str,
        organization_id: Optional[str] = None,
    ) -> Optional[DirectoryEntry]:
        _check_field(field)
        key = _exact_key(value)
        if not key:
            return None
        for entry in self._visible(organization_id):
            if _exact_key(getattr(entry, field)) == key:
                return entry
        return None

    def list_candidates(
        self,
        organization_id: Optional[str],
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[DirectoryEntry]:
        limit = limit or settings.directory_page_size
        return self._visible(organization_id)[offset:offset + limit]


class DirectorySnapshot(Directory):
    """
    Every entry of one organization, loaded once.

    Exact lookups are served from per-field indexes. The first entry (by id)
    wins when two entries share an email or external id.
    """

    def __init__(self, organization_id: Optional[str], entries: list[DirectoryEntry]):
        self.organization_id = organization_id
        self.entries = sorted(entries, key=lambda e: e.id)
        self.by_id = {e.id: e for e in self.entries}
        self._indexes: dict[str, dict[str, DirectoryEntry]] = {f: {} for f in EXACT_FIELDS}
        for entry in self.entries:
            for field in EXACT_FIELDS:
                key = _exact_key(getattr(entry, field))
                if key:
                    self._indexes[field].setdefault(key, entry)

    @classmethod
    def load(
        cls,
        directory: Directory,
        organization_id: Optional[str],
        page_size: Optional[int] = None,
    ) -> "DirectorySnapshot":
        """Page through list_candidates until a short page."""
        page_size = page_size or settings.directory_page_size
        entries: list[DirectoryEntry] = []
        offset = 0
        while True:
            page = directory.list_candidates(organization_id, offset=offset, limit=page_size)
            entries.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        logger.info("directory_snapshot_loaded", organization_id=organization_id, entries=len(entries))
        return cls(organization_id, entries)

    def __len__(self) -> int:
        return len(self.entries)

    def lookup_by_exact(
        self,
        field: str,
        value: str,
        organization_id: Optional[str] = None,
    ) -> Optional[DirectoryEntry]:
        _check_field(field)
        key = _exact_key(value)
        if not key:
            return None
        return self._indexes[field].get(key)

    def list_candidates(
        self,
        organization_id: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[DirectoryEntry]:
        if limit is None:
            return self.entries[offset:]
        return self.entries[offset:offset + limit]


# Singleton instance
_directory: Optional[Directory] = None


def get_directory() -> Directory:
    """Get or create the configured Directory."""
    global _directory
    if _directory is None:
        if settings.storage_backend == "supabase":
            _directory = SupabaseDirectory()
        elif settings.directory_file:
            _directory = InMemoryDirectory.from_csv(settings.directory_file)
        else:
            _directory = InMemoryDirectory()
    return _directory
