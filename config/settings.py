"""Application settings using Pydantic."""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///interview_signals.db",
        description="SQLAlchemy database URL",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level",
    )
    log_file: Optional[str] = Field(
        default="logs/interview_signals.log",
        description="Rotating log file path (empty disables file logging)",
    )

    # Gmail
    gmail_credentials_file: str = Field(
        default="credentials.json",
        description="Path to Gmail OAuth client secrets file",
    )
    gmail_sync_lookback_days: int = Field(
        default=30,
        description="How far back the first Gmail sync searches (days)",
    )
    gmail_sync_max_results: int = Field(
        default=200,
        description="Maximum messages fetched per sync",
    )

    # LLM providers
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key",
    )
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="Anthropic API key",
    )
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="Google Gemini API key",
    )
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server URL",
    )
    openai_model: str = Field(default="gpt-4o-mini", description="Default OpenAI model")
    anthropic_model: str = Field(default="claude-3-5-haiku-latest", description="Default Anthropic model")
    gemini_model: str = Field(default="gemini-1.5-flash", description="Default Gemini model")
    ollama_model: str = Field(default="llama3.1", description="Default Ollama model")

    # Scraping
    scraping_user_agent: str = Field(
        default="Mozilla/5.0 (compatible; InterviewSignalsBot/1.0)",
        description="User-Agent sent when fetching job listings",
    )
    scraping_timeout_seconds: int = Field(
        default=30,
        description="HTTP timeout for job listing fetches (seconds)",
    )
    html_cache_ttl_hours: int = Field(
        default=24,
        description="How long fetched HTML stays valid in the cache (hours)",
    )
    rendered_fetch_enabled: bool = Field(
        default=False,
        description="Render JavaScript-heavy pages with a headless browser",
    )
    scraping_max_retries: int = Field(
        default=3,
        description="Retries before a scraping attempt goes to the dead letter queue",
    )
    stuck_attempt_minutes: int = Field(
        default=10,
        description="Minutes without progress before an attempt is considered stuck",
    )

    # Signals pipeline
    signals_decision_execution_enabled: bool = Field(
        default=False,
        description="Run the decision planner/executor after signal extraction",
    )
    signals_email_facts_extraction_enabled: bool = Field(
        default=True,
        description="Use LLM email facts for decisioning instead of fallback facts",
    )

    # Billing
    lemon_squeezy_signing_secret: Optional[str] = Field(
        default=None,
        description="Lemon Squeezy webhook signing secret",
    )
    webhook_port: int = Field(
        default=8000,
        description="Port for the webhook API server",
    )

    # Scheduler intervals
    email_sync_interval_minutes: int = Field(
        default=15,
        description="How often to sync Gmail accounts (minutes)",
    )
    signal_extraction_interval_minutes: int = Field(
        default=5,
        description="How often to extract signals from pending emails (minutes)",
    )
    scraping_interval_minutes: int = Field(
        default=10,
        description="How often to scrape new job listings (minutes)",
    )
    scraping_retry_interval_minutes: int = Field(
        default=10,
        description="How often to retry failed scraping attempts (minutes)",
    )
    stuck_cleanup_interval_minutes: int = Field(
        default=5,
        description="How often to clean up stuck scraping attempts (minutes)",
    )

    # Paths
    config_dir: Path = Field(
        default=Path(__file__).parent,
        description="Configuration directory",
    )

    @property
    def prompts_path(self) -> Path:
        """Path to the prompts.yaml file."""
        return self.config_dir / "prompts.yaml"

    @property
    def project_root(self) -> Path:
        """Project root directory."""
        return self.config_dir.parent


# Global settings instance
settings = Settings()
