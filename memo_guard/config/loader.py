"""
Configuration management and loading.

Handles the YAML settings file and environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from memo_guard.storage.db import DEFAULT_DB_PATH

DEFAULT_BASE_URL = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"

CONFIG_ENV = "MEMO_GUARD_CONFIG"
DB_ENV = "MEMO_GUARD_DB"
ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
PLAINTEXT_KEY_ENV = "QWEN_API_KEY"


@dataclass(frozen=True)
class QuotaConfig:
    """Token quota windows and completion-token caps."""
    daily_tokens: int = 6000
    monthly_tokens: int = 140000
    max_tokens_hard_cap: int = 2048
    default_max_tokens: int = 1000
    enforce_daily: bool = False

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.daily_tokens <= 0:
            raise ValueError("daily_tokens must be > 0")
        if self.monthly_tokens <= 0:
            raise ValueError("monthly_tokens must be > 0")
        if self.max_tokens_hard_cap <= 0:
            raise ValueError("max_tokens_hard_cap must be > 0")
        if not 0 < self.default_max_tokens <= self.max_tokens_hard_cap:
            raise ValueError("default_max_tokens must be > 0 and <= max_tokens_hard_cap")


@dataclass(frozen=True)
class ProviderConfig:
    """Upstream OpenAI-compatible provider."""
    service: str = "qwen"
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 60.0
    cheap_model: str = "qwen-flash"
    strong_model: str = "qwen-max"
    search_model: str = "qwen3-max"

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        for name in ("service", "base_url", "cheap_model", "strong_model", "search_model"):
            if not getattr(self, name).strip():
                raise ValueError(f"{name} cannot be empty")


@dataclass(frozen=True)
class Settings:
    """Complete service configuration."""
    db_path: str = DEFAULT_DB_PATH
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    encryption_key: Optional[str] = field(default=None, repr=False)
    plaintext_api_key: Optional[str] = field(default=None, repr=False)


_SECTION_KEYS = {
    "database": {"path"},
    "quota": {"daily_tokens", "monthly_tokens", "max_tokens_hard_cap",
              "default_max_tokens", "enforce_daily"},
    "provider": {"service", "base_url", "timeout_seconds", "cheap_model",
                 "strong_model", "search_model"},
}


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _positive_int(data: Dict, key: str, path: str) -> Dict[str, int]:
    if key not in data:
        return {}
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return {key: value}


def load_config(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional and missing values take their defaults, but
    unknown keys and invalid values are rejected so a typo cannot silently
    loosen a quota.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object (without environment overrides)

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database_data = _section(raw_config, "database")
    db_path = database_data.get("path", DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")

    quota_data = _section(raw_config, "quota")
    quota_kwargs: Dict[str, Any] = {}
    for key in ("daily_tokens", "monthly_tokens", "max_tokens_hard_cap", "default_max_tokens"):
        quota_kwargs.update(_positive_int(quota_data, key, "quota"))
    if "enforce_daily" in quota_data:
        if not isinstance(quota_data["enforce_daily"], bool):
            raise ValueError("'enforce_daily' in quota must be a boolean")
        quota_kwargs["enforce_daily"] = quota_data["enforce_daily"]

    provider_data = _section(raw_config, "provider")
    provider_kwargs: Dict[str, Any] = {}
    for key, value in provider_data.items():
        if key == "timeout_seconds":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError("'timeout_seconds' in provider must be a number")
            provider_kwargs[key] = float(value)
        else:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in provider must be a string")
            provider_kwargs[key] = value

    return Settings(
        db_path=db_path,
        quota=QuotaConfig(**quota_kwargs),
        provider=ProviderConfig(**provider_kwargs)
    )


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Build settings from an optional YAML file plus the environment.

    The YAML path comes from ``path`` or ``MEMO_GUARD_CONFIG``. ``MEMO_GUARD_DB``
    overrides the database path; secrets come only from the environment.
    """
    env = os.environ if environ is None else environ
    config_path = path or env.get(CONFIG_ENV)
    settings = load_config(config_path) if config_path else Settings()

    return Settings(
        db_path=env.get(DB_ENV) or settings.db_path,
        quota=settings.quota,
        provider=settings.provider,
        encryption_key=env.get(ENCRYPTION_KEY_ENV) or None,
        plaintext_api_key=env.get(PLAINTEXT_KEY_ENV) or None
    )
