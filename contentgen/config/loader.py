"""
Configuration management and loading.

Handles application settings from an optional YAML file and environment
variables. Provider credentials are read from the environment only.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from ..core.options import DEFAULT_MODEL
from ..core.orchestrator import PersistenceFailurePolicy
from ..core.retry import RetryPolicy
from ..core.stats import DEFAULT_STATS_TTL
from ..providers.registry import DEFAULT_MAX_CONCURRENCY, ProviderCredentials
from ..storage.cache import DEFAULT_REDIS_URL
from ..storage.db import DEFAULT_DB_PATH


CREDENTIAL_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_AI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}
DB_PATH_ENV_VAR = "CONTENTGEN_DB_PATH"
REDIS_URL_ENV_VAR = "REDIS_URL"

_ALLOWED_KEYS = {
    "database": {"path"},
    "cache": {"url", "stats_ttl_seconds"},
    "generation": {
        "default_model",
        "request_timeout_seconds",
        "max_concurrency_per_provider",
        "strict_model_resolution",
        "persistence_failure_policy",
    },
    "retry": {"max_retries", "base_delay_seconds", "max_delay_seconds", "multiplier"},
}


@dataclass(frozen=True)
class Settings:
    """Validated runtime configuration."""
    db_path: str = DEFAULT_DB_PATH
    redis_url: str = DEFAULT_REDIS_URL
    stats_ttl_seconds: int = DEFAULT_STATS_TTL
    default_model: str = DEFAULT_MODEL
    request_timeout_seconds: Optional[float] = 60.0
    max_concurrency_per_provider: int = DEFAULT_MAX_CONCURRENCY
    strict_model_resolution: bool = False
    persistence_failure_policy: PersistenceFailurePolicy = PersistenceFailurePolicy.RETURN_CONTENT
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)

    def __post_init__(self):
        """Validate settings values."""
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if not self.redis_url:
            raise ValueError("redis_url cannot be empty")
        if self.stats_ttl_seconds <= 0:
            raise ValueError("stats_ttl_seconds must be > 0")
        if not self.default_model:
            raise ValueError("default_model cannot be empty")
        if self.request_timeout_seconds is not None and self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.max_concurrency_per_provider <= 0:
            raise ValueError("max_concurrency_per_provider must be > 0")


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings.

    Strict validation ensures no silent misconfiguration: unknown keys and
    wrongly typed values are rejected.

    Args:
        path: Optional path to a YAML configuration file
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If a config path is given but doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env
    raw_config = _read_yaml(path) if path else {}

    unknown_keys = set(raw_config.keys()) - set(_ALLOWED_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _ALLOWED_KEYS}
    database, cache, generation, retry = (
        sections["database"], sections["cache"], sections["generation"], sections["retry"]
    )

    kwargs = {}
    if "path" in database:
        kwargs["db_path"] = _expect(database["path"], str, "database.path")
    if "url" in cache:
        kwargs["redis_url"] = _expect(cache["url"], str, "cache.url")
    if "stats_ttl_seconds" in cache:
        kwargs["stats_ttl_seconds"] = _expect(cache["stats_ttl_seconds"], int, "cache.stats_ttl_seconds")
    if "default_model" in generation:
        kwargs["default_model"] = _expect(generation["default_model"], str, "generation.default_model")
    if "request_timeout_seconds" in generation:
        timeout = generation["request_timeout_seconds"]
        kwargs["request_timeout_seconds"] = (
            None if timeout is None
            else float(_expect(timeout, (int, float), "generation.request_timeout_seconds"))
        )
    if "max_concurrency_per_provider" in generation:
        kwargs["max_concurrency_per_provider"] = _expect(
            generation["max_concurrency_per_provider"], int, "generation.max_concurrency_per_provider"
        )
    if "strict_model_resolution" in generation:
        kwargs["strict_model_resolution"] = _expect(
            generation["strict_model_resolution"], bool, "generation.strict_model_resolution"
        )
    if "persistence_failure_policy" in generation:
        kwargs["persistence_failure_policy"] = _parse_policy(generation["persistence_failure_policy"])
    if retry:
        kwargs["retry"] = _parse_retry(retry)

    # Environment wins over the file for deployment-specific locations
    if env.get(DB_PATH_ENV_VAR):
        kwargs["db_path"] = env[DB_PATH_ENV_VAR]
    if env.get(REDIS_URL_ENV_VAR):
        kwargs["redis_url"] = env[REDIS_URL_ENV_VAR]

    kwargs["credentials"] = ProviderCredentials(**{
        provider: env.get(variable) or None
        for provider, variable in CREDENTIAL_ENV_VARS.items()
    })
    return Settings(**kwargs)


def _read_yaml(path: str) -> Dict:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _ALLOWED_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _expect(value, expected, path: str):
    # bool is an int subclass; only accept it where a bool is asked for
    if isinstance(value, bool) and expected is not bool:
        raise ValueError(f"'{path}' has an invalid type")
    if not isinstance(value, expected):
        raise ValueError(f"'{path}' has an invalid type")
    return value


def _parse_policy(value) -> PersistenceFailurePolicy:
    if not isinstance(value, str):
        raise ValueError("'generation.persistence_failure_policy' must be a string")
    try:
        return PersistenceFailurePolicy(value.lower())
    except ValueError:
        valid = [policy.value for policy in PersistenceFailurePolicy]
        raise ValueError(f"'generation.persistence_failure_policy' must be one of: {valid}")


def _parse_retry(data: Dict) -> RetryPolicy:
    defaults = RetryPolicy()
    return RetryPolicy(
        max_retries=_expect(data.get("max_retries", defaults.max_retries), int, "retry.max_retries"),
        base_delay=float(_expect(
            data.get("base_delay_seconds", defaults.base_delay), (int, float), "retry.base_delay_seconds"
        )),
        max_delay=float(_expect(
            data.get("max_delay_seconds", defaults.max_delay), (int, float), "retry.max_delay_seconds"
        )),
        multiplier=float(_expect(
            data.get("multiplier", defaults.multiplier), (int, float), "retry.multiplier"
        )),
    )
