"""Configuration management using Pydantic Settings."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_kernel.models.reconciler import ReconcilerConfig


class Settings(BaseSettings):
    """Process settings loaded from GITOPS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Reconciler
    poll_interval_seconds: float = 180.0
    operation_timeout_seconds: float = 30.0
    apply_retries: int = 2
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    max_retries: int = 5

    # History
    history_db_path: str = ":memory:"

    # Source
    git_cache_dir: str = "./.gitops-cache"

    # Platform
    kube_api_url: Optional[str] = None      # Unset: in-memory platform
    kube_token: Optional[str] = None
    kube_verify_tls: bool = True

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    def reconciler_config(self) -> ReconcilerConfig:
        return ReconcilerConfig(
            poll_interval_seconds=self.poll_interval_seconds,
            operation_timeout_seconds=self.operation_timeout_seconds,
            apply_retries=self.apply_retries,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            max_retries=self.max_retries,
        )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
