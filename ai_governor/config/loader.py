"""
Configuration management and loading.

Handles governance settings from YAML files, plain mappings and
environment variables. Invalid values fail loading instead of degrading
silently.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ai_governor.core.errors import ConfigurationError

# Tokens allowed per USD of daily cost limit when no explicit token limit is set
TOKENS_PER_USD = 1_000_000

# camelCase spellings accepted alongside the snake_case field names
KEY_ALIASES = {
    "dailyBudgetUsd": "daily_budget_usd",
    "userDailyCostLimitUsd": "user_daily_cost_limit_usd",
    "userDailyTokenLimit": "user_daily_token_limit",
    "defaultModel": "default_model",
    "fallbackModel": "fallback_model",
    "embeddingModel": "embedding_model",
    "cacheEnabled": "cache_enabled",
    "cacheDefaultTtlSeconds": "cache_default_ttl_seconds",
    "maxRetries": "max_retries",
    "requestTimeoutMs": "request_timeout_ms",
    "enableCostAlerts": "enable_cost_alerts",
    "budgetAlertThresholds": "budget_alert_thresholds",
}

ENV_VARS = {
    "AI_DAILY_BUDGET_USD": "daily_budget_usd",
    "AI_USER_DAILY_LIMIT_USD": "user_daily_cost_limit_usd",
    "AI_USER_DAILY_TOKEN_LIMIT": "user_daily_token_limit",
    "AI_DEFAULT_MODEL": "default_model",
    "AI_FALLBACK_MODEL": "fallback_model",
    "AI_EMBEDDING_MODEL": "embedding_model",
    "AI_CACHE_ENABLED": "cache_enabled",
    "AI_CACHE_TTL_SECONDS": "cache_default_ttl_seconds",
    "AI_MAX_RETRIES": "max_retries",
    "AI_TIMEOUT_MS": "request_timeout_ms",
    "AI_ENABLE_COST_ALERTS": "enable_cost_alerts",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class GovernorConfig:
    """Static options for the governance layer."""
    daily_budget_usd: float = 50.0
    user_daily_cost_limit_usd: float = 1.0
    user_daily_token_limit: Optional[int] = None
    default_model: str = "claude-sonnet-4-5-20250929"
    fallback_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    cache_enabled: bool = True
    cache_default_ttl_seconds: int = 86400
    max_retries: int = 3
    request_timeout_ms: int = 30000
    enable_cost_alerts: bool = True
    budget_alert_thresholds: Tuple[float, ...] = field(default=(0.8, 0.95, 1.0))

    def __post_init__(self):
        """Validate every value; misconfiguration is fatal at startup."""
        if self.daily_budget_usd < 0:
            raise ConfigurationError("daily_budget_usd cannot be negative")
        if self.user_daily_cost_limit_usd < 0:
            raise ConfigurationError("user_daily_cost_limit_usd cannot be negative")
        if self.user_daily_token_limit is not None and self.user_daily_token_limit < 0:
            raise ConfigurationError("user_daily_token_limit cannot be negative")
        if not self.default_model or not self.default_model.strip():
            raise ConfigurationError("default_model cannot be empty")
        if not self.fallback_model or not self.fallback_model.strip():
            raise ConfigurationError("fallback_model cannot be empty")
        if not self.embedding_model or not self.embedding_model.strip():
            raise ConfigurationError("embedding_model cannot be empty")
        if self.cache_default_ttl_seconds <= 0:
            raise ConfigurationError("cache_default_ttl_seconds must be > 0")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative")
        if self.request_timeout_ms <= 0:
            raise ConfigurationError("request_timeout_ms must be > 0")

        thresholds = tuple(self.budget_alert_thresholds)
        if not thresholds:
            raise ConfigurationError("budget_alert_thresholds cannot be empty")
        if any(t <= 0 for t in thresholds):
            raise ConfigurationError("budget_alert_thresholds must be > 0")
        if list(thresholds) != sorted(set(thresholds)):
            raise ConfigurationError("budget_alert_thresholds must be strictly ascending")
        object.__setattr__(self, "budget_alert_thresholds", thresholds)

    @property
    def effective_user_daily_token_limit(self) -> int:
        if self.user_daily_token_limit is not None:
            return self.user_daily_token_limit
        return int(self.user_daily_cost_limit_usd * TOKENS_PER_USD)

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GovernorConfig":
        """Build a config from a plain mapping.

        Accepts snake_case field names and their camelCase aliases. Absent
        keys fall back to the documented defaults; unknown keys are rejected.

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid
        """
        allowed = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = KEY_ALIASES.get(key, key)
            if name not in allowed:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            values[name] = _coerce(name, value)
        return cls(**values)


def load_governor_config(path: str) -> GovernorConfig:
    """Load and validate governance configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return GovernorConfig()
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    return GovernorConfig.from_mapping(raw_config)


def load_governor_config_from_env(environ: Optional[Mapping[str, str]] = None) -> GovernorConfig:
    """Build a config from `AI_*` environment variables."""
    environ = os.environ if environ is None else environ
    values = {
        name: environ[var]
        for var, name in ENV_VARS.items()
        if environ.get(var, "").strip()
    }
    return GovernorConfig.from_mapping(values)


def _coerce(name: str, value: Any) -> Any:
    """Convert YAML/env values to the field's type."""
    try:
        if name in ("daily_budget_usd", "user_daily_cost_limit_usd"):
            return _number(value)
        if name in ("cache_default_ttl_seconds", "max_retries", "request_timeout_ms"):
            return _integer(value)
        if name == "user_daily_token_limit":
            return None if value is None else _integer(value)
        if name in ("cache_enabled", "enable_cost_alerts"):
            return _boolean(value)
        if name == "budget_alert_thresholds":
            if isinstance(value, str):
                value = [part for part in value.split(",") if part.strip()]
            return tuple(_number(v) for v in value)
        if not isinstance(value, str):
            raise ValueError("expected a string")
        return value.strip()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r} ({e})") from e


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    return float(value)


def _integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError("expected an integer")
    return int(value)


def _boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError("expected a boolean")
