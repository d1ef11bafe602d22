# stackpilot/models/settings.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class StackSettings(BaseSettings):
    """
    Pydantic settings shared, read-only, by every stack controller.
    By default, these fields map to environment variables prefixed with `STACKPILOT_`.
    For example, `STACKPILOT_TERRAFORM_BINARY`, `STACKPILOT_LOG_LEVEL`, etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKPILOT_", extra="ignore", frozen=True
    )

    terraform_binary: str = "terraform"
    # Falls back to the TF_TOKEN_<host> variables the engine itself reads.
    terraform_cloud_token: Optional[str] = None
    log_level: str = "INFO"
    plan_file_prefix: str = ".stackpilot-plan"
    parallelism: Optional[int] = None
    remote_poll_interval_seconds: float = 1.0
    remote_probe_timeout_seconds: float = 10.0
    request_retries: int = 3
