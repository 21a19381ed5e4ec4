"""Tests for settings loading."""

from insulin_ledger.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("INSULIN_LEDGER_TESTING", raising=False)
        settings = Settings(_env_file=None)

        assert settings.database_url.startswith("sqlite+aiosqlite://")
        assert settings.cache_length_hours == 24
        assert settings.device_log_max_entry_age_days == 7
        assert settings.reconciliation_freshness_minutes == 15
        assert settings.testing is False

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("INSULIN_LEDGER_CACHE_LENGTH_HOURS", "48")
        monkeypatch.setenv("INSULIN_LEDGER_PROVENANCE_IDENTIFIER", "org.example.loop")

        settings = Settings(_env_file=None)

        assert settings.cache_length_hours == 48
        assert settings.provenance_identifier == "org.example.loop"
