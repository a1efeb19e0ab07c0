# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Configuration module for the Wendao game service.

This module loads and validates configuration from environment variables.
All settings are validated at startup to fail fast if configuration is invalid.
The LLM endpoint settings here are only defaults: players can replace them at
runtime through the settings endpoint, and the replacement is persisted by the
save store.
"""

from functools import lru_cache
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_LLM_MODEL = "gemini-2.0-flash"


def normalize_base_url(url: str) -> str:
    """Normalize an OpenAI-compatible base URL.

    Strips surrounding whitespace, trailing slashes and an explicit
    ``/chat/completions`` suffix so the SDK can append its own paths.

    Args:
        url: Base URL or full chat-completions endpoint

    Returns:
        Normalized base URL
    """
    normalized = url.strip().rstrip('/')
    if normalized.endswith('/chat/completions'):
        normalized = normalized[:-len('/chat/completions')].rstrip('/')
    return normalized


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    """

    # LLM Endpoint Configuration
    llm_base_url: str = Field(
        default=DEFAULT_LLM_BASE_URL,
        description="Base URL of the OpenAI-compatible completion endpoint",
        examples=["https://api.openai.com/v1", "http://localhost:11434/v1"]
    )
    llm_api_key: str = Field(
        default="",
        description="API key for the completion endpoint (may be set at runtime instead)"
    )
    llm_model: str = Field(
        default=DEFAULT_LLM_MODEL,
        description="Model identifier sent with every completion request"
    )
    llm_timeout: int = Field(
        default=60,
        ge=1,
        le=600,
        description="HTTP timeout for completion requests in seconds"
    )
    llm_temperature: float = Field(
        default=0.8,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for completion requests"
    )
    llm_max_tokens: int = Field(
        default=4000,
        ge=1,
        description="Maximum completion tokens per request"
    )
    llm_max_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Retries for transient transport errors (0 disables retries)"
    )
    llm_stub_mode: bool = Field(
        default=False,
        description="Enable stub mode for offline development (no actual API calls)"
    )

    # Memory Compaction Configuration
    compaction_threshold: int = Field(
        default=20,
        ge=1,
        description="Number of uncompacted turn-log entries that triggers compaction"
    )
    compaction_safety_buffer: int = Field(
        default=5,
        ge=0,
        description="Most recent turn-log entries that are never compacted"
    )
    recent_history_window: int = Field(
        default=30,
        ge=1,
        le=200,
        description="Maximum number of recent turn-log entries sent as context"
    )

    # Persistence Configuration
    save_dir: str = Field(
        default="saves",
        description="Directory holding the save snapshot and persisted settings"
    )

    # Service Configuration
    service_name: str = Field(
        default="wendao",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )
    slow_request_ms: float = Field(
        default=30000.0,
        gt=0,
        description="Requests slower than this many milliseconds are logged as warnings"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    # Debug Configuration
    enable_debug_endpoints: bool = Field(
        default=False,
        description="Enable debug endpoints like /debug/parse (for local development only)"
    )

    @field_validator('llm_base_url')
    @classmethod
    def validate_llm_base_url(cls, v: str) -> str:
        """Validate completion endpoint URL format."""
        if not v or not v.strip():
            raise ValueError("llm_base_url cannot be empty")
        v = v.strip()
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError(
                f"llm_base_url must start with http:// or https://, got: {v}"
            )
        return normalize_base_url(v)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    Uses functools.lru_cache for thread-safe singleton pattern.
    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Check the LLM_* and service environment variables."
        ) from e
