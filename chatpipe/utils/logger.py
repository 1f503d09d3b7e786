"""Logging setup."""

import sys

from loguru import logger


def setup_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
    )


def event(name: str, **fields: object) -> str:
    """Format a structured event line: ``channel.discord.denied sender_id=42``."""
    if not fields:
        return name
    parts = " ".join(f"{k}={v!r}" if isinstance(v, str) else f"{k}={v}" for k, v in fields.items())
    return f"{name} {parts}"
