import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: Optional[str] = None
    amqp_url: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    jwt_secret: Optional[str] = None
    cache_ttl_seconds: int = 600
    write_retries: int = 3
    pending_order_timeout_minutes: int = 30
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(dotenv_path=ENV_PATH)

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            redis_url=os.getenv("REDIS_URL") or None,
            amqp_url=os.getenv("AMQP_URL") or None,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            cache_ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "600")),
            write_retries=int(os.getenv("WRITE_RETRIES", "3")),
            pending_order_timeout_minutes=int(os.getenv("PENDING_ORDER_TIMEOUT_MINUTES", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_flag(os.getenv("LOG_JSON", "true")),
        )
