from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """Application settings and configuration."""

    # Application settings
    app_name: str = "TrainKeeper"
    app_version: str = "1.0.0"
    app_description: str = "Prepaid GPU fine-tuning job orchestrator"
    debug: bool = False

    # Server configuration
    port: int = Field(8001, alias="PORT")
    host: str = "0.0.0.0"

    # Database settings
    db_url: str = Field("sqlite://./trainkeeper.db", alias="DB_URL")

    # Worker partition tag - a worker only claims jobs with a matching tag
    training_environment: str = Field("production", alias="TRAINING_ENVIRONMENT")

    # Vast.ai API settings
    vast_api_key: str = Field("", alias="VAST_API_KEY")
    vast_api_base_url: str = "https://console.vast.ai/api/v0"
    instance_label_prefix: str = "trainkeeper"
    instance_image: str = "pytorch/pytorch:2.3.1-cuda12.1-cudnn8-devel"
    instance_disk_gb: int = 80
    offer_min_vram_gb: int = 24
    offer_max_price: Optional[float] = None
    offer_gpu_name: Optional[str] = None
    instance_ready_timeout_seconds: int = 600
    instance_ready_poll_seconds: int = 10

    # SSH settings
    ssh_key_path: str = Field("~/.ssh/id_ed25519", alias="SSH_KEY_PATH")
    ssh_key_password: Optional[str] = Field(None, alias="SSH_KEY_PASSWORD")
    ssh_public_key_path: Optional[str] = Field(None, alias="SSH_PUBLIC_KEY_PATH")
    ssh_username: str = "root"
    ssh_connect_timeout_seconds: int = 30

    # Ledger (billing) service
    ledger_base_url: str = Field("", alias="LEDGER_BASE_URL")
    ledger_api_key: str = Field("", alias="LEDGER_API_KEY")

    # Notifications (Telegram)
    telegram_bot_token: str = Field("", alias="TELEGRAM_BOT_TOKEN")
    telegram_ops_chat_id: str = Field("", alias="TELEGRAM_OPS_CHAT_ID")

    # Cost model
    cost_buffer_multiplier: float = 1.5
    platform_fee_percent: float = 20.0
    points_per_usd: int = 10000
    default_gpu_class: str = "24GB"
    gpu_class_rates: Dict[str, float] = {"24GB": 0.35, "48GB": 0.80, "80GB": 1.50}
    default_hourly_rate: float = 0.35

    # Remote execution resilience
    remote_command_timeout_seconds: int = 120
    remote_retry_backoff_seconds: List[float] = [5, 15, 30, 60, 120]
    remote_max_attempts: int = 5
    remote_workdir: str = "/workspace/trainkeeper"
    training_command: str = (
        "python -m trainer.run --base-model {base_model} --steps {steps} "
        "--dataset {dataset_dir} --output {output_dir} --name {model_name}"
    )
    artifact_glob: str = "*.safetensors"
    artifact_upload_command: Optional[str] = None

    # Termination
    termination_backoff_seconds: List[float] = [5, 15, 30, 60, 120]
    termination_max_attempts: int = 5

    # Monitoring / stall detection
    monitor_poll_interval_seconds: int = 60
    monitor_tail_lines: int = 200
    stall_min_samples: int = 4
    stall_window_size: int = 20
    stall_convergence_threshold: float = 0.5
    stall_speed_drop_threshold: float = 0.5
    stall_grace_period_seconds: int = 15 * 60

    # Orchestrator loop
    poll_interval_seconds: int = 30
    post_job_cooldown_seconds: int = 5
    shutdown_max_wait_seconds: int = 10 * 60

    # Sweeper
    sweeper_interval_seconds: int = 15 * 60
    stuck_job_threshold_seconds: int = 2 * 60 * 60
    overdue_grace_seconds: int = 30 * 60
    untracked_instance_grace_seconds: int = 10 * 60

    # Logging
    log_dir: str = "logs"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False  # Make environment variable names case-insensitive
        extra = "ignore"  # Ignore extra fields in .env that aren't in the model
        populate_by_name = True

    @property
    def ops_alerts_enabled(self) -> bool:
        """Whether ops alerts can actually be delivered."""
        return bool(self.telegram_bot_token and self.telegram_ops_chat_id)


# Create settings instance
settings = Settings()
