"""
Configuration management using Pydantic Settings
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# config.py is at: backend/context_engine/core/config.py
_current_file = Path(__file__).resolve()
_backend_dir = _current_file.parent.parent.parent
_project_root = _backend_dir.parent
ENV_FILE = _project_root / ".env"
if not ENV_FILE.exists():
    ENV_FILE = _backend_dir / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    """Pipeline settings"""

    # Application
    app_name: str = "journey-context"
    app_env: str = Field(default="development", description="Application environment")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="json",
        description="Log format: 'json' for structured logging, 'text' for plain text"
    )
    log_module_levels: Optional[str] = Field(
        default=None,
        description='Module-specific log levels (JSON string, e.g., {"context_engine.core": "DEBUG"})'
    )
    log_file_enabled: bool = Field(default=False, description="Enable file logging")
    log_file_path: str = Field(
        default="logs/journey_context.log",
        description="Path to log file (relative to project root)"
    )
    log_file_retention: int = Field(default=14, ge=1, description="Number of days to keep log files")
    log_sensitive_data: bool = Field(
        default=False,
        description="Enable logging of sensitive data (api keys, tokens) - NOT RECOMMENDED"
    )

    # Model backend
    ollama_url: str = Field(default="http://localhost:11434", description="Model backend base URL")
    ollama_api_key: Optional[str] = Field(default=None, description="Optional bearer token for the backend")
    model_fast: str = Field(default="qwen3:4b", description="Model used for the 'fast' role")
    model_balanced: str = Field(default="qwen3:14b", description="Model used for the 'balanced' role")
    model_deep: str = Field(default="qwen3:32b", description="Model used for the 'deep' role")

    # LLM limits
    llm_timeout_seconds: float = Field(default=120.0, ge=1, le=1800, description="Per-call timeout (seconds)")
    llm_max_retries: int = Field(default=3, ge=1, le=10, description="Total attempts for transient errors")
    llm_retry_base_delay_seconds: float = Field(default=2.0, ge=0.0, description="Base backoff delay (seconds)")
    llm_retry_max_delay_seconds: float = Field(default=30.0, ge=0.0, description="Backoff ceiling (seconds)")
    llm_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature")
    deliberation_budget_default: int = Field(
        default=5000, ge=0, description="Default token budget for extended deliberation"
    )

    # Insight extraction
    insight_min_content_length: int = Field(
        default=100, ge=0, description="Stage text shorter than this yields no insights"
    )
    insight_max_tokens: int = Field(default=2000, ge=50, description="Output cap for extraction calls")

    # Quality scoring
    quality_revision_threshold: float = Field(
        default=6.0, ge=0.0, le=10.0, description="Overall score below which revision is flagged"
    )
    quality_max_tokens: int = Field(default=1000, ge=50, description="Output cap for evaluation calls")

    # Context summarization
    summary_cluster_size: int = Field(default=3, ge=1, description="Stages per cluster summary")
    summary_token_budget: int = Field(default=8000, ge=200, description="Approximate token budget")
    summary_budget_tolerance: float = Field(
        default=1.2, ge=1.0, description="Multiplier over the budget before compression kicks in"
    )
    summary_cadence: int = Field(default=3, ge=1, description="Rebuild the summary every N stages")

    # Tracing
    enable_tracing: bool = Field(default=False, description="Enable OpenTelemetry tracing")
    tracing_service_name: str = Field(default="journey-context", description="Service name for tracing")
    tracing_exporter: str = Field(default="console", description="Tracing exporter: 'console' or 'otlp'")
    tracing_otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP endpoint URL (e.g., http://localhost:4318/v1/traces)"
    )

    @field_validator("ollama_url", mode="before")
    @classmethod
    def normalize_url(cls, v):
        """Strip whitespace and a trailing slash or /v1 suffix"""
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            if v.endswith("/v1"):
                v = v[:-3]
        return v

    @property
    def module_levels(self) -> Dict[str, str]:
        """Parse module-specific levels from the JSON string setting"""
        if not self.log_module_levels:
            return {}
        try:
            parsed = json.loads(self.log_module_levels)
        except (json.JSONDecodeError, TypeError):
            return {}
        return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        protected_namespaces=(),
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance (entry points only; components take settings explicitly)"""
    return Settings()
