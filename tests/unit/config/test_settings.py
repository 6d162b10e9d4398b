"""
Tests for configuration loading.
"""

import os

from lognexus.config import OptimizerSettings, Settings, get_settings, load_config_file, reload_settings


class TestSettings:
    """Defaults, environment overrides and the YAML config file."""

    def test_defaults(self):
        settings = Settings()
        assert settings.optimizer.max_batch_size == 1000
        assert settings.optimizer.cache_ttl_ms == 300000
        assert settings.audit.hash_algorithm == "sha256"
        assert settings.loki.enabled is False

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOGNEXUS_OPTIMIZER_MAX_BATCH_SIZE", "25")
        assert OptimizerSettings().max_batch_size == 25

    def test_api_keys_parsed_from_json(self, monkeypatch):
        monkeypatch.setenv("LOGNEXUS_SECURITY_API_KEYS", '{"abc": {"name": "svc", "active": true}}')
        assert Settings().security.api_keys == {"abc": {"name": "svc", "active": True}}

    def test_loki_push_url(self):
        settings = Settings()
        assert settings.loki.push_url == "http://localhost:3100/loki/api/v1/push"

    def test_config_file_supplies_defaults(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "optimizer:\n"
            "  cache_size: 42\n"
            "audit:\n"
            "  max_memory_entries: 7\n"
        )
        monkeypatch.setenv("LOGNEXUS_CONFIG_FILE", str(config_file))
        monkeypatch.setenv("LOGNEXUS_AUDIT_MAX_MEMORY_ENTRIES", "9")
        monkeypatch.delenv("LOGNEXUS_OPTIMIZER_CACHE_SIZE", raising=False)

        assert load_config_file()["optimizer"]["cache_size"] == 42
        try:
            settings = reload_settings()

            assert settings.optimizer.cache_size == 42
            assert settings.audit.max_memory_entries == 9
        finally:
            os.environ.pop("LOGNEXUS_OPTIMIZER_CACHE_SIZE", None)
            get_settings.cache_clear()
