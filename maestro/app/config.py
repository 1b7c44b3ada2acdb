"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Storage
    store_backend: str = "memory"  # memory, redis
    redis_url: str = "redis://localhost:6379"

    # Orchestration cycle
    cycle_interval_seconds: float = 60.0
    scheduler_enabled: bool = True

    # Health monitoring
    stuck_agent_minutes: int = 30
    offline_minutes: int = 5
    recent_poll_minutes: int = 10
    healthy_score_threshold: int = 70

    # Assignment
    reassign_after_hours: float = 2.0
    assignment_lock_ttl_seconds: int = 30

    # Alerts
    alert_rate_limit_minutes: int = 10
    alert_retention_days: int = 7
    blocked_task_hours: int = 24
    error_rate_threshold: float = 0.5
    error_rate_min_sample: int = 10
    stuck_agents_alert_threshold: int = 3

    # Bottleneck detection
    bottleneck_backlog_threshold: int = 10
    bottleneck_utilization_threshold: float = 0.9
    tasks_per_agent_capacity: int = 3

    # Webhooks
    webhook_timeout_seconds: float = 30.0
    webhook_max_attempts: int = 3
    webhook_initial_delay_ms: int = 1000
    webhook_backoff_multiplier: float = 2.0
    webhook_delivery_retention_days: int = 7

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False
    )
