from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="PingPong Chat", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")
    configure_logging: bool = Field(
        default=True,
        description="Install the service logging configuration when chat services start",
    )

    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* fields",
    )
    database_user: str = Field(default="pingpong", validation_alias="DB_USER")
    database_password: str = Field(default="pingpong", validation_alias="DB_PASSWORD")
    database_host: str = Field(default="db", validation_alias="DB_HOST")
    database_port: int = Field(default=3306, validation_alias="DB_PORT")
    database_name: str = Field(default="pingpong", validation_alias="DB_NAME")

    realtime_redis_url: str | None = Field(
        default=None,
        description="Redis URL used for chat egress topics and cross-node fan-out",
    )
    realtime_nats_url: str | None = Field(
        default=None,
        description="Optional NATS URL used instead of Redis",
    )
    realtime_namespace: str = Field(
        default="pingpong.chat",
        description="Prefix applied to every broker channel or subject",
    )
    realtime_backend_preference: str = Field(
        default="redis",
        description="Broker used for publishing: 'redis' or 'nats'",
    )
    realtime_node_id: str | None = Field(
        default=None,
        description="Identifier of this instance; generated when omitted",
    )

    chat_direct_topic: str = Field(
        default="one-to-one-chat",
        description="Egress topic receiving point-to-point messages",
    )
    chat_broadcast_topic: str = Field(
        default="one-to-many-chat",
        description="Egress topic receiving group messages",
    )
    chat_room_destination_prefix: str = Field(
        default="/topic/chatRoom/",
        description="Prefix of the live subscriber destination for a conversation",
    )
    room_state_update_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Upper bound for one conversation summary update, lock wait included",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("realtime_backend_preference", mode="before")
    @classmethod
    def normalize_backend(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized not in {"redis", "nats"}:
            raise ValueError("realtime_backend_preference must be 'redis' or 'nats'")
        return normalized

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return str(value).strip().upper() or "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
