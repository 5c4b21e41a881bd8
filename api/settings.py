"""Application settings loaded from environment variables or .env file."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Rollout control plane settings.

    These are loaded from environment variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = "INFO"
    api_url: str = "http://localhost:8000"

    database_url: str = "sqlite:///./rollouts.db"
    config_storage_path: str = "config"

    # Pulumi settings
    pulumi_access_token: str = ""
    pulumi_org: str = ""
    pulumi_project: str = "eks-bluegreen"

    # Git settings for Pulumi Deployments
    git_repo_url: str = ""
    git_repo_branch: str = "main"
    git_repo_dir: str = "."
    github_token: str = ""

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "us-east-1"

    # Stack / cluster naming: stack "<stack_prefix>-<env>", cluster "<cluster_name_prefix>-<env>"
    stack_prefix: str = "eks-cluster"
    cluster_name_prefix: str = "acme"

    deployment_poll_interval_seconds: float = 30.0
    deployment_timeout_seconds: float = 3600.0

    # SSM parameters resolved before a rollout starts
    zone_name_parameter: str = "/eks-cdk-pipelines/zoneName"
    hosted_zone_id_parameter: str = "/eks-cdk-pipelines/hostZoneId"

    cutover_ttl_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
