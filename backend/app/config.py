"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Todo Plan Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Todo server (action execution) Settings
    TODO_SERVER_URL: str = "http://localhost:3001/mcp"
    TODO_SERVER_TIMEOUT: float = 30.0
    TODO_SERVER_API_KEY: str = ""

    # Claude AI Settings (analysis steps)
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 1024
    CLAUDE_TEMPERATURE: float = 0.3
    CLAUDE_TIMEOUT: int = 120
    CLAUDE_MAX_RETRIES: int = 3
    CLAUDE_RETRY_DELAY: float = 1.0
    CLAUDE_SYSTEM_PROMPT: str = (
        "You are the analysis step of a todo assistant. "
        "Summarize what the current todo state means for the user's request. "
        "Be brief and concrete."
    )

    # Approval Settings
    APPROVAL_TIMEOUT_SECONDS: int = 300  # 5 minutes
    APPROVAL_EXPIRY_ACTION: str = "log"  # log (keep waiting) or deny
    APPROVAL_RETENTION_SECONDS: int = 3600

    # Bulk safety guard
    BULK_MAX_ITEMS: int = 10
    BULK_MAX_CONTEXTS: int = 2

    # Analysis step
    ANALYSIS_TODO_LIMIT: int = 50

    # Progress notifications
    PROGRESS_WEBHOOK_URL: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def deny_expired_approvals(self) -> bool:
        """Whether an expired pending approval counts as a denial."""
        return self.APPROVAL_EXPIRY_ACTION.lower() == "deny"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
