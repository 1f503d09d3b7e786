"""JSON-persisted map from conversation key to backend session id."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger


@dataclass
class SessionRecord:
    session_id: str
    updated_at: str


SessionMap = dict[str, SessionRecord]


class SessionStore:
    """Small read-through/write-through store for the session map."""

    def __init__(self, path: Path):
        self.path = path
        self._sessions: SessionMap | None = None

    def _load(self) -> SessionMap:
        if self._sessions is not None:
            return self._sessions
        sessions: SessionMap = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                for key, value in raw.items():
                    sessions[key] = SessionRecord(
                        session_id=str(value["sessionId"]),
                        updated_at=str(value.get("updatedAt", "")),
                    )
            except Exception as e:
                logger.warning(f"Failed to load session map {self.path}: {e}")
                sessions = {}
        self._sessions = sessions
        return sessions

    def _save(self) -> None:
        data = {
            key: {"sessionId": rec.session_id, "updatedAt": rec.updated_at}
            for key, rec in self._load().items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    def get(self, conversation_key: str) -> SessionRecord | None:
        return self._load().get(conversation_key)

    def set(self, conversation_key: str, session_id: str) -> SessionRecord:
        record = SessionRecord(
            session_id=session_id,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        self._load()[conversation_key] = record
        self._save()
        return record

    def clear(self, conversation_key: str) -> bool:
        removed = self._load().pop(conversation_key, None) is not None
        if removed:
            self._save()
        return removed

    def all(self) -> SessionMap:
        return dict(self._load())
