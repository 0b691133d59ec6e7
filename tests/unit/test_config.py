# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.
"""Unit tests for EHRSettings configuration."""

from ehr_data.core.config import EHRSettings


class TestEHRSettings:
    def test_defaults(self, monkeypatch):
        for name in ("TENANT_SCHEMA_PREFIX", "SHARED_SCHEMA", "NEUTRAL_SEARCH_PATH", "SCOPE_TIMEOUT", "DB_POOL_SIZE"):
            monkeypatch.delenv(name, raising=False)
        s = EHRSettings(_env_file=None)
        assert "postgresql" in s.DATABASE_URL
        assert s.TENANT_SCHEMA_PREFIX == "tenant_"
        assert s.SHARED_SCHEMA == "public"
        assert s.NEUTRAL_SEARCH_PATH == "public"
        assert s.SCOPE_TIMEOUT is None
        assert s.DB_POOL_SIZE == 10

    def test_custom_values(self):
        s = EHRSettings(
            _env_file=None,
            DATABASE_URL="postgresql+asyncpg://u:p@db:5432/ehr_test",
            DB_POOL_SIZE=3,
            SHARED_SCHEMA="reference",
            SCOPE_TIMEOUT=2.5,
        )
        assert s.DATABASE_URL.endswith("/ehr_test")
        assert s.DB_POOL_SIZE == 3
        assert s.SHARED_SCHEMA == "reference"
        assert s.SCOPE_TIMEOUT == 2.5

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("DB_POOL_SIZE", "4")
        monkeypatch.setenv("TENANT_SCHEMA_PREFIX", "org_")
        s = EHRSettings(_env_file=None)
        assert s.DB_POOL_SIZE == 4
        assert s.TENANT_SCHEMA_PREFIX == "org_"
