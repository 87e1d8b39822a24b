"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="ArangoDB Deployment Operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Optional[str] = Field(
        default=None, description="Log renderer (json/console); defaults to json in production"
    )

    # Dashboard server
    host: str = Field(default="0.0.0.0", description="Dashboard server host")
    port: int = Field(default=8528, ge=1, le=65535, description="Dashboard server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=True, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(default="default", description="Namespace watched for ArangoDeployments")

    # Custom resource coordinates
    crd_group: str = Field(default="database.arangodb.com", description="ArangoDeployment API group")
    crd_version: str = Field(default="v1alpha", description="ArangoDeployment API version")
    crd_plural: str = Field(default="arangodeployments", description="ArangoDeployment plural name")
    crd_kind: str = Field(default="ArangoDeployment", description="ArangoDeployment kind")

    # Reconciler
    reconcile_interval: int = Field(default=30, ge=1, le=3600, description="Periodic re-sync interval in seconds")
    pass_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Deadline of a single reconciliation pass in seconds"
    )
    retry_interval_seconds: float = Field(
        default=1.0, gt=0, description="Initial sleep between retry attempts in seconds"
    )
    retry_max_interval_seconds: float = Field(
        default=10.0, gt=0, description="Upper bound of the sleep between retry attempts in seconds"
    )
    status_update_max_attempts: int = Field(
        default=5, ge=1, le=50, description="Maximum status writes per pass on optimistic-concurrency conflicts"
    )

    # ArangoDB HTTP API
    database_scheme: str = Field(default="http", description="Scheme used to reach deployments (http/https)")
    database_port: int = Field(default=8529, ge=1, le=65535, description="ArangoDB client port")
    database_username: str = Field(default="root", description="ArangoDB user for health queries")
    database_password: str = Field(default="", description="ArangoDB password for health queries")
    database_request_timeout: float = Field(default=10.0, gt=0, description="HTTP timeout for health queries")
    database_verify_ssl: bool = Field(default=True, description="Verify TLS certificates of deployments")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if v.lower() not in ("json", "console"):
            raise ValueError("Log format must be json or console")
        return v.lower()

    @field_validator("database_scheme")
    @classmethod
    def validate_database_scheme(cls, v: str) -> str:
        if v.lower() not in ("http", "https"):
            raise ValueError("Database scheme must be http or https")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
