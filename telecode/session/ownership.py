"""Session ownership index: (chat, project) -> session and back."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from telecode.utils.helpers import read_json_file, write_json_file


@dataclass(frozen=True)
class SessionOwner:
    chat_id: int
    project_dir: str


class SessionStore:
    """
    Bidirectional map between (chat id, project directory) and backend
    session ids.

    Keeps the reverse index exact: replacing or clearing a session removes
    its owner entry. When ``store_path`` is given the forward map is written
    to that JSON file on every change and the reverse map is rebuilt on load.
    """

    def __init__(self, store_path: Path | None = None):
        self.store_path = store_path
        self._sessions: dict[tuple[int, str], str] = {}
        self._owners: dict[str, SessionOwner] = {}
        if store_path is not None:
            self._load()

    def _load(self) -> None:
        data = read_json_file(self.store_path, default=[])
        if not isinstance(data, list):
            logger.warning(f"Ignoring malformed session store at {self.store_path}")
            return
        for row in data:
            try:
                chat_id = int(row["chat_id"])
                project_dir = str(row["project_dir"])
                session_id = str(row["session_id"])
            except (KeyError, TypeError, ValueError):
                continue
            self._sessions[(chat_id, project_dir)] = session_id
            self._owners[session_id] = SessionOwner(chat_id=chat_id, project_dir=project_dir)

    def _save(self) -> None:
        if self.store_path is None:
            return
        rows: list[dict[str, Any]] = [
            {"chat_id": chat_id, "project_dir": project_dir, "session_id": session_id}
            for (chat_id, project_dir), session_id in self._sessions.items()
        ]
        try:
            write_json_file(self.store_path, rows)
        except OSError as e:
            logger.error(f"Failed to persist sessions to {self.store_path}: {e}")

    def get_session_id(self, chat_id: int, project_dir: str) -> str | None:
        return self._sessions.get((chat_id, project_dir))

    def set_session_id(self, chat_id: int, project_dir: str, session_id: str) -> None:
        key = (chat_id, project_dir)
        existing = self._sessions.get(key)
        if existing and existing != session_id:
            self._owners.pop(existing, None)
        previous = self._owners.get(session_id)
        if previous is not None and (previous.chat_id, previous.project_dir) != key:
            self._sessions.pop((previous.chat_id, previous.project_dir), None)
        self._sessions[key] = session_id
        self._owners[session_id] = SessionOwner(chat_id=chat_id, project_dir=project_dir)
        self._save()

    def clear_session(self, chat_id: int, project_dir: str) -> bool:
        existing = self._sessions.pop((chat_id, project_dir), None)
        if existing is None:
            return False
        self._owners.pop(existing, None)
        self._save()
        return True

    def clear_all(self) -> None:
        self._sessions.clear()
        self._owners.clear()
        self._save()

    def get_owner(self, session_id: str) -> SessionOwner | None:
        return self._owners.get(session_id)
