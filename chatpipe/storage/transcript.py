"""Optional JSONL transcript log with size-based rotation."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_MAX_FILES = 3


class TranscriptLogger:
    """Append-only JSONL sink for conversation events.

    Disabled by default. With ``max_bytes`` set, a write that would push the
    primary file past the limit first rotates ``path`` -> ``path.1`` ->
    ... -> ``path.<max_files>``; the oldest file falls off the end.
    Single writer only: rotation takes no file lock.
    """

    def __init__(
        self,
        enabled: bool,
        path: str | Path,
        max_bytes: int | None = None,
        max_files: int | None = None,
    ):
        self.enabled = enabled
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.max_files = max_files or DEFAULT_MAX_FILES

    async def log(self, conversation_key: str, payload: dict[str, Any]) -> None:
        if not self.enabled:
            return

        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "conversationKey": conversation_key,
            **payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.max_bytes is not None and self._would_overflow(len(line.encode("utf-8"))):
            self._rotate()

        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def _would_overflow(self, incoming: int) -> bool:
        try:
            current = self.path.stat().st_size
        except FileNotFoundError:
            return False
        return current > 0 and current + incoming > self.max_bytes

    def _rotated(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{index}")

    def _rotate(self) -> None:
        oldest = self._rotated(self.max_files)
        oldest.unlink(missing_ok=True)
        for index in range(self.max_files - 1, 0, -1):
            src = self._rotated(index)
            if src.exists():
                src.replace(self._rotated(index + 1))
        if self.path.exists():
            self.path.replace(self._rotated(1))
        logger.debug(f"Transcript log rotated: {self.path} (keeping {self.max_files} file(s))")
