import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _resolve_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    environment = os.getenv("ENVIRONMENT", "").strip().lower()
    if environment == "development":
        return "postgresql+psycopg://localhost:5434/compliance_engine"

    raise ValueError(
        "DATABASE_URL is not set. Set DATABASE_URL for non-development "
        "environments or set ENVIRONMENT=development for local defaults."
    )


def _to_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int_list(value: str) -> tuple[int, ...]:
    return tuple(int(item) for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = _resolve_database_url()
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv(
        "CELERY_RESULT_BACKEND", "redis://localhost:6379/1"
    )
    celery_task_always_eager: bool = _to_bool(
        os.getenv("CELERY_TASK_ALWAYS_EAGER", "false")
    )

    # Compliance state
    risk_window_days: int = int(os.getenv("RISK_WINDOW_DAYS", "7"))
    default_timezone: str = os.getenv("DEFAULT_TIMEZONE", "Asia/Kolkata")
    default_penalty_per_day: str = os.getenv("DEFAULT_PENALTY_PER_DAY", "50")
    default_penalty_cap: str = os.getenv("DEFAULT_PENALTY_CAP", "5000")

    # Deadline scheduler
    scheduler_lookahead_days: int = int(os.getenv("SCHEDULER_LOOKAHEAD_DAYS", "90"))
    billing_day: int = int(os.getenv("BILLING_DAY", "1"))
    fiscal_year_start_month: int = int(os.getenv("FISCAL_YEAR_START_MONTH", "4"))
    default_reminder_days: tuple[int, ...] = _to_int_list(
        os.getenv("DEFAULT_REMINDER_DAYS", "7,3,1,0")
    )
    reminder_catchup_days: int = int(os.getenv("REMINDER_CATCHUP_DAYS", "0"))
    max_periods_per_run: int = int(os.getenv("MAX_PERIODS_PER_RUN", "24"))

    # Concurrency
    entity_lock_timeout_seconds: float = float(
        os.getenv("ENTITY_LOCK_TIMEOUT_SECONDS", "10")
    )
    lock_requeue_delay_seconds: int = int(os.getenv("LOCK_REQUEUE_DELAY_SECONDS", "30"))

    # Work queues
    queue_max_load_per_actor: int = int(os.getenv("QUEUE_MAX_LOAD_PER_ACTOR", "10"))

    # Notification delivery
    dispatch_max_retries: int = int(os.getenv("DISPATCH_MAX_RETRIES", "5"))
    dispatch_retry_base_seconds: int = int(
        os.getenv("DISPATCH_RETRY_BASE_SECONDS", "10")
    )
    dispatch_reconcile_after_minutes: int = int(
        os.getenv("DISPATCH_RECONCILE_AFTER_MINUTES", "5")
    )
    channel_gateway_url: str = os.getenv("CHANNEL_GATEWAY_URL", "")
    channel_gateway_token: str = os.getenv("CHANNEL_GATEWAY_TOKEN", "")
    channel_gateway_timeout_seconds: float = float(
        os.getenv("CHANNEL_GATEWAY_TIMEOUT_SECONDS", "15")
    )

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _to_bool(os.getenv("LOG_JSON", "true"))

    # Branding
    brand_name: str = os.getenv("BRAND_NAME", "DotMac Compliance")


settings = Settings()
