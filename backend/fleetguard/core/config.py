"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    state_db_path: str = "./data/fleetguard.db"
    default_operator_id: str = "admin"
    default_operator_email: str = "admin@fleetguard.local"

    # Continuous simulation control
    poll_interval_seconds: float = 10.0
    tick_interval_seconds: float = 20.0
    tick_budget_seconds: float = 15.0
    reconciliation_enabled: bool = True
    simulation_seed: int | None = None

    # Activity ledger
    ledger_capacity: int = 50
    dedupe_window_seconds: float = 10.0

    # Risk analysis
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "deepseek/deepseek-chat-v3.1:free"
    openrouter_timeout_seconds: float = 25.0
    learning_examples_limit: int = 5
    alert_risk_threshold: int = 20
    threat_risk_threshold: int = 40

    @model_validator(mode="after")
    def _check_intervals(self) -> "Settings":
        # Operator intent must be observed before the next scheduled tick.
        if self.poll_interval_seconds <= 0 or self.tick_interval_seconds <= 0:
            raise ValueError("poll and tick intervals must be positive")
        if self.poll_interval_seconds > self.tick_interval_seconds:
            raise ValueError(
                f"poll_interval_seconds ({self.poll_interval_seconds}) must not exceed "
                f"tick_interval_seconds ({self.tick_interval_seconds})"
            )
        if self.ledger_capacity < 1:
            raise ValueError("ledger_capacity must be at least 1")
        return self

    def resolved_openrouter_key(self) -> str | None:
        key = (self.openrouter_api_key or "").strip()
        if not key or key == "sk-or-your-key-here":
            return None
        return key


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
