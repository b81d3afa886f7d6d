"""
Unit tests for configuration loading and validation.

Tests strict validation and environment overrides.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from memo_guard.config.loader import (
    DEFAULT_BASE_URL,
    ProviderConfig,
    QuotaConfig,
    Settings,
    load_config,
    load_settings,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        config_path = self._write_config({
            "database": {"path": "/tmp/memo.db"},
            "quota": {"daily_tokens": 1000, "monthly_tokens": 20000, "enforce_daily": True},
            "provider": {"strong_model": "qwen-plus", "timeout_seconds": 15},
        })

        settings = load_config(config_path)

        assert settings.db_path == "/tmp/memo.db"
        assert settings.quota.daily_tokens == 1000
        assert settings.quota.monthly_tokens == 20000
        assert settings.quota.enforce_daily is True
        assert settings.quota.max_tokens_hard_cap == 2048
        assert settings.provider.strong_model == "qwen-plus"
        assert settings.provider.cheap_model == "qwen-flash"
        assert settings.provider.timeout_seconds == 15.0

    def test_empty_file_uses_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        settings = load_config(config_path)
        assert settings.quota == QuotaConfig()
        assert settings.provider.base_url == DEFAULT_BASE_URL

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("quota: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"budget": {"daily": 1}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown quota keys"):
            load_config(self._write_config({"quota": {"dayly_tokens": 1}}))

    @pytest.mark.parametrize("quota", [
        {"daily_tokens": 0},
        {"monthly_tokens": -1},
        {"daily_tokens": "lots"},
        {"daily_tokens": True},
        {"default_max_tokens": 4096},
        {"enforce_daily": "yes"},
    ])
    def test_invalid_quota_values(self, quota):
        with pytest.raises(ValueError):
            load_config(self._write_config({"quota": quota}))

    @pytest.mark.parametrize("provider", [
        {"timeout_seconds": 0},
        {"timeout_seconds": "slow"},
        {"cheap_model": ""},
        {"base_url": 42},
    ])
    def test_invalid_provider_values(self, provider):
        with pytest.raises(ValueError):
            load_config(self._write_config({"provider": provider}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_config(self._write_config({"quota": [1, 2]}))


class TestLoadSettings:
    """Test environment overrides."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_without_file(self):
        settings = load_settings(environ={})
        assert settings == Settings()
        assert settings.encryption_key is None

    def test_environment_overrides(self):
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"database": {"path": "from-file.db"}, "quota": {"daily_tokens": 10}}, f)

        settings = load_settings(environ={
            "MEMO_GUARD_CONFIG": config_path,
            "MEMO_GUARD_DB": "from-env.db",
            "ENCRYPTION_KEY": "secret",
            "QWEN_API_KEY": "sk-env",
        })

        assert settings.db_path == "from-env.db"
        assert settings.quota.daily_tokens == 10
        assert settings.encryption_key == "secret"
        assert settings.plaintext_api_key == "sk-env"

    def test_secrets_not_in_repr(self):
        settings = load_settings(environ={"ENCRYPTION_KEY": "top-secret", "QWEN_API_KEY": "sk-env"})
        assert "top-secret" not in repr(settings)
        assert "sk-env" not in repr(settings)

    def test_provider_defaults(self):
        assert ProviderConfig().search_model == "qwen3-max"
