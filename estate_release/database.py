from datetime import datetime, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from pydantic_settings import BaseSettings
import os
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./estate_release.db")
    secret_key: str = os.getenv("SECRET_KEY", "dev-secret-key")
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    monitor_tick_seconds: int = int(os.getenv("MONITOR_TICK_SECONDS", "3600"))
    monitor_auto_start: bool = os.getenv("MONITOR_AUTO_START", "true").lower() == "true"
    monitor_max_workers: int = int(os.getenv("MONITOR_MAX_WORKERS", "1"))
    monitor_health_check_seconds: int = int(os.getenv("MONITOR_HEALTH_CHECK_SECONDS", "300"))
    monitor_auto_recovery: bool = os.getenv("MONITOR_AUTO_RECOVERY", "true").lower() == "true"
    monitor_alert_on_errors: bool = os.getenv("MONITOR_ALERT_ON_ERRORS", "true").lower() == "true"
    evaluation_tick_seconds: int = int(os.getenv("EVALUATION_TICK_SECONDS", "60"))
    evaluation_history_limit: int = int(os.getenv("EVALUATION_HISTORY_LIMIT", "100"))

    rate_limit_max_attempts: int = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "20"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600"))
    rate_limit_cleanup_seconds: int = int(os.getenv("RATE_LIMIT_CLEANUP_SECONDS", "600"))

    token_default_expiration_hours: int = int(os.getenv("TOKEN_DEFAULT_EXPIRATION_HOURS", "72"))
    token_default_max_uses: int = int(os.getenv("TOKEN_DEFAULT_MAX_USES", "10"))

    notification_webhook_url: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    notification_timeout_seconds: float = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = os.getenv("DEBUG", "false").lower() == "true"

settings = Settings()

def make_engine(database_url: str, **kwargs):
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
        **kwargs
    )

engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes converted to naive UTC; naive ones are taken as UTC already"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
