"""
Configuration settings for the rollout controller.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="agrarian-rollout-controller", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Health and action API port")

    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="", description="Namespace to watch, empty for all namespaces")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")

    # Controller Configuration
    WORKERS: int = Field(default=10, description="Number of concurrent rollout workers")
    RESYNC_PERIOD_SECS: int = Field(default=900, description="Full resync period for all rollouts")
    VERIFY_RETRY_INTERVAL_SECS: int = Field(default=10, description="Requeue delay while a traffic weight is unverified")
    INVALID_SPEC_REQUEUE_SECS: int = Field(default=20, description="Requeue delay for rollouts with an invalid spec")
    RESTART_CHECK_INTERVAL_SECS: int = Field(default=30, description="Requeue delay while pods still need a restart")
    RECORD_EVENTS: bool = Field(default=True, description="Emit Kubernetes events for rollout transitions")

    # Analysis defaults
    ANALYSIS_SUCCESSFUL_HISTORY_LIMIT: int = Field(default=5, description="Successful analysis runs to keep")
    ANALYSIS_UNSUCCESSFUL_HISTORY_LIMIT: int = Field(default=5, description="Unsuccessful analysis runs to keep")

    # Service Configuration
    REQUEST_TIMEOUT_SECS: int = Field(default=30, description="Request timeout for traffic router webhooks")
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
