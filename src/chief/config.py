"""Configuration settings for the orchestration core."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the orchestration core."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    PROXY_PORT: int = 8787
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    SETTINGS_FILE: str = "./data/chief_settings.json"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Approval gating
    TOOL_APPROVAL_TTL_SECONDS: int = 15 * 60

    # Security scanners
    SECURITY_PATTERNS_FILE: str | None = None  # JSON overrides for the pattern tables

    # Usage tracking
    USAGE_PERSIST_DEBOUNCE_SECONDS: float = 2.0
    COST_HISTORY_MAX_DAYS: int = 90

    # Tier routing
    TIER_POWER_THRESHOLD: float = 0.45
    TIER_LUDICROUS_THRESHOLD: float = 0.90
    LUDICROUS_TIER_ENABLED: bool = False
    SESSION_TRAJECTORY_MAX: int = 8

    # Agent loop budgets
    MAX_AGENT_ITERATIONS: int = 10
    MAX_TOOL_RESULT_CHARS: int = 12000
    MAX_AGENT_MESSAGES_CHAR_BUDGET: int = 50000
    MIN_AGENT_MESSAGES_TO_KEEP: int = 6
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_DELAY_MS: int = 700
    PROVIDER_COOLDOWN_SECONDS: int = 60
    LLM_REQUEST_TIMEOUT_SECONDS: float = 90.0
    PII_SCRUB_ENABLED: bool = True

    # LLM Configuration
    DEFAULT_PROVIDER: str = "anthropic"  # Options: anthropic, openai, gemini, mistral
    ANTHROPIC_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    GEMINI_API_KEY: str | None = None
    MISTRAL_API_KEY: str | None = None

    # CORS proxy
    PROXY_ALLOWED_ORIGINS: List[str] = [
        "https://roamresearch.com",
        "https://www.roamresearch.com",
    ]
    PROXY_ALLOWED_TARGET_HOSTS: List[str] = [
        "mcp.composio.dev",
        "backend.composio.dev",
        "localhost",
        "127.0.0.1",
    ]
    PROXY_TIMEOUT_SECONDS: float = 30.0

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"

    def provider_api_keys(self) -> dict[str, str]:
        """Return the configured API keys keyed by provider name (blank keys omitted)."""
        keys = {
            "anthropic": self.ANTHROPIC_API_KEY,
            "openai": self.OPENAI_API_KEY,
            "gemini": self.GEMINI_API_KEY,
            "mistral": self.MISTRAL_API_KEY,
        }
        return {name: key for name, key in keys.items() if key}


settings = Settings()
