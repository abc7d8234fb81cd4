from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Used by background workflows (bypasses RLS)

    # Credential vault
    encryption_key: Optional[str] = None  # Overrides the key file below when set
    data_dir: str = ".data"

    # Provisioning tool
    terraform_binary: str = "terraform"
    workspaces_dir: str = ".terraform-workspaces"
    modules_dir: Optional[str] = None  # Defaults to the modules bundled with the package
    terraform_init_timeout_sec: int = 300
    terraform_plan_timeout_sec: int = 600
    terraform_apply_timeout_sec: int = 1800  # 30 minutes
    terraform_output_timeout_sec: int = 60

    # Orchestration
    max_concurrent_deployments: int = 8
    require_plan_approval: bool = False
    public_server_url: str = "http://localhost:8000"  # Injected into bootstrap templates
    error_message_max_length: int = 2000
    log_flush_interval_sec: float = 2.0
    retired_log_buffers: int = 200

    # Provider control API
    digitalocean_api_url: str = "https://api.digitalocean.com/v2"
    hetzner_api_url: str = "https://api.hetzner.cloud/v1"
    provider_api_timeout_sec: float = 30.0
    reboot_poll_interval_sec: float = 5.0
    reboot_max_attempts: int = 30

    # Live log streaming
    stream_poll_interval_sec: float = 1.0
    stream_max_polls: int = 3600

    # App
    app_name: str = "machina-orchestrator"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
