"""
Runtime settings for the engagement engine and its apps.

Values come from environment variables (or a local .env file).
"""

import functools

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Infrastructure
    DATABASE_URL: str = "sqlite:///./engagement.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # text | json

    # Links rendered into messages
    FRONTEND_URL: str = "http://localhost:5173"

    # Delivery gateway
    DELIVERY_PROVIDER: str = "stub"  # sendpulse | stub
    FROM_EMAIL: str = "noreply@colorcompete.com"
    FROM_NAME: str = "ColorCompete"
    SENDPULSE_CLIENT_ID: str | None = None
    SENDPULSE_CLIENT_SECRET: str | None = None
    SENDPULSE_TOKEN_URL: str = "https://api.sendpulse.com/oauth/access_token"
    SENDPULSE_SEND_URL: str = "https://api.sendpulse.com/smtp/emails"

    # Gift card service
    GIFT_CARD_PROVIDER: str = "stub"  # tremendous | stub
    TREMENDOUS_API_KEY: str | None = None
    TREMENDOUS_BASE_URL: str = "https://testflight.tremendous.com/api/v2"
    TREMENDOUS_FUNDING_SOURCE_ID: str | None = None
    TREMENDOUS_CAMPAIGN_ID: str | None = None
    TREMENDOUS_MESSAGE_FIELD_ID: str | None = None

    # Dispatch throughput
    DISPATCH_MIN_INTERVAL_MS: int = 100
    DISPATCH_WORKERS: int = 1
    DISPATCH_QUEUE_SIZE: int = 100

    # Monthly drawing
    DRAWING_TIMEZONE: str = "America/New_York"
    DRAWING_PRIZE_LITE: float = 25.0
    DRAWING_PRIZE_PRO: float = 50.0
    DRAWING_PRIZE_CHAMP: float = 100.0
    DRAWING_LEASE_SECONDS: int = 300

    # Worker loop
    RECONCILE_INTERVAL_SEC: int = 3600
    STREAM_BATCH_SIZE: int = 50
    STREAM_BLOCK_MS: int = 5000
    RECLAIM_INTERVAL_SEC: int = 60
    RECLAIM_IDLE_MS: int = 60000
    WORKER_CONSUMER_NAME: str | None = None

    # Webhook receiver; when set, callers must send it as ?token= or X-Webhook-Token
    WEBHOOK_TOKEN: str | None = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def drawing_prizes(self) -> dict[str, float]:
        return {
            "lite": self.DRAWING_PRIZE_LITE,
            "pro": self.DRAWING_PRIZE_PRO,
            "champ": self.DRAWING_PRIZE_CHAMP,
        }


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
