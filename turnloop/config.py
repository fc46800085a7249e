"""Engine Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process
    - Iteration limits are positive; jitter factor lies in [0, 1]

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings: works out-of-the-box
    - Per-run ConversationOptions override the agent_* defaults; settings hold the rest
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from turnloop.core.error_classifier import BackoffPolicy


class Settings(BaseSettings):
    """Engine settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Anthropic
    anthropic_api_key: str = "sk-ant-placeholder"
    anthropic_model: str = "claude-sonnet-4-5"
    anthropic_max_tokens: int = 16_384
    anthropic_thinking_budget: int | None = None
    anthropic_timeout_seconds: int = 300
    anthropic_betas: list[str] = []

    # Retry
    retry_max_attempts: int = 5
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 60_000
    retry_jitter_factor: float = 0.1

    # Agent
    agent_max_iterations: int = 100
    agent_cost_budget: float | None = None
    agent_use_streaming: bool = True
    completion_tools: list[str] = ["report_complete", "task_complete"]
    completion_text_fallback: bool = False

    # Streaming
    stream_inactivity_timeout_seconds: float = 120.0
    stream_typewriter: bool = False
    stream_typewriter_delay_ms: int = 15
    stream_progress_interval_seconds: float = 2.0

    # Context window
    context_prune_threshold_tokens: int = 180_000
    context_keep_recent: int = 10

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("agent_max_iterations", "retry_max_attempts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("retry_jitter_factor")
    @classmethod
    def jitter_in_unit_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_factor=self.retry_jitter_factor,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
