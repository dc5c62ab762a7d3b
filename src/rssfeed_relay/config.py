"""Application configuration via environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rssfeed_relay.router import DEFAULT_TEMPLATE, DeliverySettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RSSBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    db_path: Path = Field(
        default=Path("data") / "rssfeed_relay.db",
        description="Path to SQLite document store",
    )

    # System bot
    bot_token: str = Field(default="", description="System default bot token")
    admin_id: str = Field(
        default="",
        description="Chat id used as destination when a subscription names none",
    )
    tg_api_base: str = Field(default="", description="Optional Bot API proxy base URL")

    # Polling
    default_interval: int = Field(
        default=30, ge=1, le=1440, description="Default polling interval in minutes"
    )
    fetch_timeout_seconds: float = Field(
        default=15.0, description="Upper bound for one feed fetch"
    )

    # Delivery
    send_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for one outbound message"
    )
    max_items_per_tick: int = Field(
        default=5, ge=1, description="Most items pushed per subscription per tick"
    )
    message_template: str = Field(default=DEFAULT_TEMPLATE)
    date_format: str = Field(default="%Y/%m/%d %H:%M:%S")
    custom_bot_token: str = Field(
        default="", description="Deployment-wide override bot token"
    )
    custom_chat_id: str = Field(
        default="", description="Deployment-wide override destination"
    )

    # History
    history_capacity: int = Field(default=200, ge=1)
    seen_items_per_subscription: int = Field(default=500, ge=1)

    # Startup
    startup_attempts: int = Field(default=5, ge=1)
    startup_backoff_seconds: float = Field(default=3.0, ge=0)

    def delivery(self) -> DeliverySettings:
        """Delivery settings consumed by the push router."""
        return DeliverySettings(
            message_template=self.message_template,
            date_format=self.date_format,
            custom_bot_token=self.custom_bot_token or None,
            custom_chat_id=self.custom_chat_id or None,
            max_items_per_tick=self.max_items_per_tick,
            send_timeout=self.send_timeout_seconds,
        )


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
