"""
Unit tests for settings and the database helpers.

Run: pytest tests/unit/test_config.py -v
"""

import pytest
from pydantic import ValidationError

from config import settings, Settings, check_connection, reset_connection, get_supabase_client


class TestSettings:
    """Tests for Settings validation and computed properties"""

    def test_threshold_outside_clamp_rejected(self):
        with pytest.raises(ValidationError):
            Settings(match_confidence_threshold=0.99)

    def test_invalid_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(storage_backend="redis")

    def test_allowed_extensions(self):
        configured = Settings(allowed_file_types=" CSV, .xlsx ,,txt")

        assert configured.allowed_extensions == ["csv", "xlsx", "txt"]

    def test_oracle_configured(self):
        assert Settings(oracle_provider="claude", anthropic_api_key="k").oracle_configured is True
        assert Settings(oracle_provider="none", anthropic_api_key="k").oracle_configured is False
        assert Settings(oracle_provider="claude", anthropic_api_key="").oracle_configured is False


class TestCheckConnection:
    """Tests for check_connection()"""

    def test_memory_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "storage_backend", "memory")

        assert check_connection() == {"status": "healthy", "backend": "memory"}

    def test_supabase_backend(self, mock_db, monkeypatch):
        monkeypatch.setattr(settings, "storage_backend", "supabase")

        status = check_connection()

        assert status["status"] == "healthy"
        assert status["jobs_count"] == 0

    def test_supabase_unreachable(self, mock_db, monkeypatch):
        monkeypatch.setattr(settings, "storage_backend", "supabase")
        mock_db.fail_on("processing_jobs", "select", Exception("connection refused"))

        status = check_connection()

        assert status["status"] == "unhealthy"
        assert "connection refused" in status["error"]

    def test_reset_connection(self):
        reset_connection()

        assert get_supabase_client.cache_info().currsize == 0
