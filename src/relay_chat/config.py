from __future__ import annotations

from typing import Literal

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PORT: int = 4500
    NODE_ENV: Literal["development", "production", "test"] = "development"
    LOG_LEVEL: str | None = None

    CLIENT_ORIGIN: str = "*"

    JWT_SECRET: str = ""
    JWT_VERIFY_MODE: Literal["hs256", "jwks"] = "hs256"
    JWT_ALGORITHM: str = "HS256"
    JWKS_URL: str | None = None
    JWT_EXPIRES_DAYS: int = 7

    WS_HEARTBEAT_SECONDS: int = 25
    MAX_MESSAGE_LENGTH: int = 500

    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_SEND_MESSAGE: int = 30
    RATE_LIMIT_TOGGLE_REACTION: int = 60
    RATE_LIMIT_EDIT_MESSAGE: int = 20
    RATE_LIMIT_DELETE_MESSAGE: int = 20
    RATE_LIMIT_REPLY_TO_MESSAGE: int = 30
    RATE_LIMIT_CLEANUP_SECONDS: float = 300.0

    MESSAGE_STORE: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "relay"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CLIENT_ORIGIN.split(",") if o.strip()] or ["*"]

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "DEBUG" if self.NODE_ENV == "development" else "INFO"

    @property
    def rate_limits(self) -> dict[str, int]:
        return {
            "sendMessage": self.RATE_LIMIT_SEND_MESSAGE,
            "toggleReaction": self.RATE_LIMIT_TOGGLE_REACTION,
            "editMessage": self.RATE_LIMIT_EDIT_MESSAGE,
            "deleteMessage": self.RATE_LIMIT_DELETE_MESSAGE,
            "replyToMessage": self.RATE_LIMIT_REPLY_TO_MESSAGE,
        }

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()  # type: ignore[call-arg]
