from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    SERVER_URL: str = "http://localhost:4500"
    OUTBOX_PATH: str = "relay-outbox.sqlite3"

    RECONNECT_BASE_DELAY: float = 0.5
    RECONNECT_MAX_DELAY: float = 10.0
    RECONNECT_JITTER: float = 0.2
    HANDSHAKE_TIMEOUT: float = 10.0
    REQUEST_TIMEOUT: float = 10.0

    HISTORY_PAGE_SIZE: int = 20

    @property
    def ws_url(self) -> str:
        base = self.SERVER_URL.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/ws"

    @property
    def outbox_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.OUTBOX_PATH}"

    model_config = ConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        extra="ignore",
    )
