from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="duochat API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite+pysqlite:///./duochat.db",
        env="DATABASE_URL",
        description="SQLAlchemy URL of the message store",
    )

    chat_message_max_length: int = Field(default=1000, env="CHAT_MESSAGE_MAX_LENGTH")
    chat_history_default_limit: int = Field(default=200, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=1000, env="CHAT_HISTORY_MAX_LIMIT")
    chat_room_separator: str = Field(
        default="_",
        env="CHAT_ROOM_SEPARATOR",
        description="Separator joining the sorted user ids of a conversation room",
    )
    notification_preview_length: int = Field(
        default=50,
        env="NOTIFICATION_PREVIEW_LENGTH",
        description="Characters of message text included in notification previews",
    )
    chat_debug_events: bool = Field(
        default=False,
        env="CHAT_DEBUG_EVENTS",
        description="Answer debug_room_info events with registry diagnostics",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="Idle time before the server sends a keepalive ping",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=30,
        env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS",
        description="Minimum spacing between keepalive pings",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to relay realtime events between nodes",
    )
    realtime_namespace: str = Field(default="duochat.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")
    realtime_presence_interval_seconds: float = Field(
        default=15,
        env="REALTIME_PRESENCE_INTERVAL_SECONDS",
        description="How often each node republishes its online set; remote sets expire after three intervals",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("chat_room_separator")
    @classmethod
    def ensure_separator(cls, value: str) -> str:
        if not value:
            raise ValueError("chat_room_separator must not be empty")
        return value

    @field_validator("realtime_redis_url", mode="before")
    @classmethod
    def blank_redis_url(cls, value: str | None) -> str | None:
        if value in (None, "", Ellipsis):
            return None
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    return Settings()
