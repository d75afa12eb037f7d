# -*- coding: utf-8 -*-
"""
Test Suite for Policy Engine Configuration
==========================================

Environment overrides and the configuration singleton.
"""

import pytest

from insiderguard.policy_engine.config import (
    PolicyEngineConfig,
    get_config,
    reset_config,
    set_config,
)


class TestPolicyEngineConfig:
    """IG_POLICY_ENGINE_* overrides."""

    @pytest.fixture(autouse=True)
    def clean_singleton(self):
        reset_config()
        yield
        reset_config()

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("IG_POLICY_ENGINE_CACHE_TTL_SECONDS", raising=False)
        config = PolicyEngineConfig.from_env()
        assert config.cache_enabled is True
        assert config.cache_ttl_seconds == 300
        assert config.business_hours_start == 8
        assert config.business_hours_end == 18

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("IG_POLICY_ENGINE_CACHE_ENABLED", "no")
        monkeypatch.setenv("IG_POLICY_ENGINE_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("IG_POLICY_ENGINE_EXECUTION_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("IG_POLICY_ENGINE_LOG_ONLY_HANDLERS", "TRUE")
        monkeypatch.setenv("IG_POLICY_ENGINE_DATABASE_URL", "sqlite://")

        config = PolicyEngineConfig.from_env()
        assert config.cache_enabled is False
        assert config.cache_ttl_seconds == 60
        assert config.execution_timeout_seconds == 2.5
        assert config.log_only_handlers is True
        assert config.resolved_database_url() == "sqlite://"

    def test_invalid_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("IG_POLICY_ENGINE_MAX_POLICIES", "lots")
        assert PolicyEngineConfig.from_env().max_policies == 1000

    def test_default_database_under_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("IG_POLICY_ENGINE_DATABASE_URL", raising=False)
        monkeypatch.setenv("IG_POLICY_ENGINE_DB_PATH", str(tmp_path / "pe.db"))
        url = PolicyEngineConfig.from_env().resolved_database_url()
        assert url == f"sqlite:///{tmp_path / 'pe.db'}"

    def test_singleton(self):
        custom = PolicyEngineConfig(max_policies=5)
        set_config(custom)
        assert get_config() is custom
        reset_config()
        assert get_config() is not custom
