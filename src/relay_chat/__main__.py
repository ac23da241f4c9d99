"""Entrypoint: python -m relay_chat"""
from __future__ import annotations

import logging

import uvicorn

from relay_chat.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "relay_chat.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
