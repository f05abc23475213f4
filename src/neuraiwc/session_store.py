"""
Persistence of approved sessions across restarts.

Sessions are kept in memory and written to a JSON file on every change.
A store created without a path never touches the filesystem.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from neuraiwc.models import Session

STORE_VERSION = 1


class SessionStore:
    def __init__(self, path: Path | None = None):
        self.path = path
        self._sessions: dict[str, Session] = {}

    def load(self) -> list[Session]:
        """Load persisted sessions, skipping entries that no longer validate."""
        if self.path is None or not self.path.exists():
            return []

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Unreadable session store {self.path}, starting without sessions: {e}")
            return []
        if not isinstance(data, dict) or not isinstance(data.get("sessions", []), list):
            logger.error(f"Session store {self.path} has an unexpected layout, ignoring it")
            return []

        self._sessions = {}
        for raw in data.get("sessions", []):
            try:
                session = Session.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable persisted session: {e}")
                continue
            self._sessions[session.topic] = session

        logger.info(f"Loaded {len(self._sessions)} persisted session(s) from {self.path}")
        return list(self._sessions.values())

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": STORE_VERSION,
            "sessions": [session.model_dump(mode="json") for session in self._sessions.values()],
        }
        temp_path = self.path.with_suffix(".json.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self.path)

    def get(self, topic: str) -> Session | None:
        return self._sessions.get(topic)

    def put(self, session: Session) -> None:
        self._sessions[session.topic] = session
        self._save()

    def remove(self, topic: str) -> Session | None:
        session = self._sessions.pop(topic, None)
        if session is not None:
            self._save()
        return session

    def rekey(self, old_topic: str, session: Session) -> None:
        """Replace the session stored under old_topic with one under its new topic."""
        self._sessions.pop(old_topic, None)
        self._sessions[session.topic] = session
        self._save()

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def __contains__(self, topic: object) -> bool:
        return topic in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
