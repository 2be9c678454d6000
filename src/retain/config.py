"""
Retain Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from RETAIN_* environment variables and an optional .env file.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_data_dir() -> str:
    """
    Get XDG-compliant data directory for Retain.

    Follows XDG Base Directory Specification:
    - Uses $XDG_DATA_HOME/retain if XDG_DATA_HOME is set
    - Falls back to $HOME/.local/share/retain if not set
    - Returns relative path .retain if HOME not available (dev/testing)

    Returns:
        str: Path to data directory
    """
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "retain")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "share" / "retain")

    # Fallback for development/testing environments without HOME
    return ".retain"


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Retain logs.

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "retain" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "retain" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RETAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_path: str = ""  # SQLite file (defaults to XDG data dir if empty)
    database_busy_timeout_ms: int = 5000  # Wait this long for the writer lock
    database_echo: bool = False

    @property
    def database_url(self) -> str:
        """Construct the SQLite database URL."""
        if self.database_path:
            path = Path(self.database_path).expanduser()
        else:
            path = Path(get_xdg_data_dir()) / "retain.db"
        return f"sqlite:///{path}"

    # Analysis queue
    queue_max_attempts: int = 3
    queue_stale_claim_seconds: int = 600  # Must exceed worst-case backend latency
    queue_reaper_interval_seconds: int = 300
    queue_retention_days: int = 30
    queue_batch_size: int = 10

    # Analysis backend
    analysis_backend: str = "anthropic"  # openai or anthropic
    analysis_model: str = ""  # Empty = provider default
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    analysis_payload_mode: str = "minimized"  # minimized or expanded
    analysis_max_payload_bytes: int = 500_000
    analysis_max_tokens: int = 4000
    allow_cloud_analysis: bool = False  # Consent to send conversation content off-device

    # Learning extraction
    learning_min_confidence: float = 0.7
    learning_context_window: int = 3  # Prior messages kept as context
    learning_positive_feedback: bool = False

    # Scans
    scan_cancel_check_every: int = 25  # Items between cancellation checks

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    # LLM Logging
    llm_logging_enabled: bool = False  # Log analysis backend requests/responses

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())

    def api_key_for(self, backend: str) -> str:
        """Return the configured API key for an analysis backend."""
        if backend == "openai":
            return self.openai_api_key
        if backend == "anthropic":
            return self.anthropic_api_key
        return ""


# Global settings instance
settings = Settings()
