"""
Configuration management.

Uses Pydantic Settings for environment variable handling and validation.
A YAML config file may supply defaults; environment variables override it.
"""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        config_path = os.environ.get("LOGNEXUS_CONFIG_FILE")

    if config_path is None:
        possible_paths = [
            "config.yaml",
            "../../config.yaml",
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


class SecuritySettings(BaseSettings):
    """HTTP surface authentication."""

    admin_token: str = Field(default="", description="Admin token for rule and audit management")
    api_keys: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Valid API keys with metadata")

    @field_validator("api_keys", mode="before")
    def parse_api_keys(cls, v: Any) -> Dict[str, Dict[str, Any]]:
        """Parse API keys from JSON string if needed."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        if isinstance(v, dict):
            return v
        return {}

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_SECURITY_")


class RuleSettings(BaseSettings):
    """Alert rule engine configuration."""

    rules: List[Dict[str, Any]] = Field(default_factory=list, description="Rules registered at startup")
    action_timeout_seconds: float = Field(default=10.0, description="Timeout for a single action dispatch")

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_RULES_")


def _default_retention_policies() -> List[Dict[str, Any]]:
    return [
        {"retention_days": 365, "archive_after_days": 90, "severities": ["high", "critical"]},
        {"retention_days": 90, "archive_after_days": 30},
    ]


class AuditSettings(BaseSettings):
    """Audit chain configuration."""

    enabled: bool = Field(default=True, description="Enable the audit chain")
    secret_key: str = Field(default="default-secret-key", description="HMAC key for entry hashes")
    hash_algorithm: Literal["sha256", "sha512"] = Field(default="sha256", description="HMAC digest")
    max_memory_entries: int = Field(default=10000, gt=0, description="Entries kept in memory")
    retention_policies: List[Dict[str, Any]] = Field(
        default_factory=_default_retention_policies,
        description="Retention policies applied on every append",
    )
    enable_integrity_verification: bool = Field(default=True, description="Enable verify()")
    auto_archive: bool = Field(default=True, description="Apply retention and archival on append")
    ingest_domains: Optional[List[str]] = Field(
        default=None,
        description="Record domains mirrored into the chain (None = every record)",
    )

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_AUDIT_")


class OptimizerSettings(BaseSettings):
    """Batch, cache and memory control configuration."""

    batch_size: int = Field(default=100, gt=0, description="Records per pipeline batch")
    batch_timeout_ms: int = Field(default=5000, gt=0, description="Batch completion timeout")
    max_batch_size: int = Field(default=1000, gt=0, description="Hard batch size limit")

    max_memory_bytes: int = Field(default=512 * 1024 * 1024, description="Memory ceiling (512MB)")
    memory_check_interval_ms: int = Field(default=30000, gt=0, description="Memory sampling interval")
    gc_threshold_percent: float = Field(default=80.0, description="Ceiling percentage that triggers GC")

    max_connections: int = Field(default=10, gt=0, description="Delivery connection pool size")

    cache_enabled: bool = Field(default=True, description="Enable the record cache")
    cache_size: int = Field(default=10000, gt=0, description="Maximum cache entries")
    cache_ttl_ms: int = Field(default=300000, gt=0, description="Cache entry time-to-live")

    enable_metrics: bool = Field(default=True, description="Run the metrics aggregation loop")
    metrics_interval_ms: int = Field(default=60000, gt=0, description="Metrics aggregation interval")
    slow_processing_threshold_ms: int = Field(default=1000, description="Slow record threshold")

    parallel_threshold: int = Field(default=50, description="High-priority fan-out threshold")
    parallel_chunks: int = Field(default=4, gt=0, description="Parallel chunk count")
    flush_interval_ms: int = Field(default=5000, gt=0, description="Pipeline buffer flush interval")

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_OPTIMIZER_")


class LokiSettings(BaseSettings):
    """Grafana Loki delivery sink configuration."""

    enabled: bool = Field(default=False, description="Deliver batches to Loki")
    base_url: str = Field(default="http://localhost:3100", description="Loki base URL")
    push_endpoint: str = Field(default="/loki/api/v1/push", description="Loki push endpoint")
    timeout_seconds: int = Field(default=30, description="Request timeout")

    @property
    def push_url(self) -> str:
        """Full Loki push URL."""
        return f"{self.base_url.rstrip('/')}{self.push_endpoint}"

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_LOKI_")


class Settings(BaseSettings):
    """Main application settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")
    log_format: Literal["console", "json"] = Field(default="console", description="Log renderer")

    security: SecuritySettings = Field(default_factory=SecuritySettings)
    rules: RuleSettings = Field(default_factory=RuleSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    loki: LokiSettings = Field(default_factory=LokiSettings)

    model_config = SettingsConfigDict(env_prefix="LOGNEXUS_", case_sensitive=False)


_SECTION_PREFIXES = {
    "server": "LOGNEXUS_",
    "security": "LOGNEXUS_SECURITY_",
    "rules": "LOGNEXUS_RULES_",
    "audit": "LOGNEXUS_AUDIT_",
    "optimizer": "LOGNEXUS_OPTIMIZER_",
    "loki": "LOGNEXUS_LOKI_",
}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for section, prefix in _SECTION_PREFIXES.items():
        values = config_data.get(section) or {}
        for key, value in values.items():
            env_var = f"{prefix}{key}".upper()
            if env_var in os.environ or value is None:
                continue
            if isinstance(value, (dict, list)):
                os.environ[env_var] = json.dumps(value)
            else:
                os.environ[env_var] = str(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
