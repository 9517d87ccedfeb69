"""Project registry, active project per chat and pinned models."""

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from telecode.backend.base import ModelRef
from telecode.errors import (
    ProjectAliasError,
    ProjectAliasNotFoundError,
    ProjectAliasReservedError,
    ProjectPathError,
)
from telecode.utils.helpers import read_json_file, write_json_file

HOME_PROJECT_ALIAS = "home"


@dataclass(frozen=True)
class Project:
    alias: str
    path: str


def _normalize_alias(alias: str) -> str:
    normalized = alias.strip()
    if not normalized:
        raise ProjectAliasError("Project alias is required")
    return normalized


def resolve_project_path(raw_path: str) -> str:
    """Expand ``~``, make absolute and require an existing directory."""
    trimmed = raw_path.strip()
    if not trimmed:
        raise ProjectPathError("Project path is required")
    resolved = Path(trimmed).expanduser().resolve()
    if not resolved.exists():
        raise ProjectPathError(f"Project path does not exist: {resolved}")
    if not resolved.is_dir():
        raise ProjectPathError("Project path must be a directory")
    return str(resolved)


class ProjectStore:
    """
    Named project directories.

    The ``home`` alias always exists and points at the user's home directory;
    it cannot be added or removed.
    """

    def __init__(self, store_path: Path | None = None, home_dir: Path | None = None):
        self.store_path = store_path
        self.home_dir = str((home_dir or Path.home()).expanduser())
        self._projects: dict[str, str] = {}
        if store_path is not None:
            data = read_json_file(store_path, default={})
            if isinstance(data, dict):
                self._projects = {
                    str(k): str(v)
                    for k, v in data.items()
                    if isinstance(v, str) and k != HOME_PROJECT_ALIAS
                }
        self._projects[HOME_PROJECT_ALIAS] = self.home_dir

    def _save(self) -> None:
        if self.store_path is None:
            return
        data = {k: v for k, v in self._projects.items() if k != HOME_PROJECT_ALIAS}
        write_json_file(self.store_path, data)

    def list_projects(self) -> list[Project]:
        """Home first, then the rest by alias."""
        aliases = sorted(self._projects, key=lambda a: (a != HOME_PROJECT_ALIAS, a))
        return [Project(alias=a, path=self._projects[a]) for a in aliases]

    def get_project(self, alias: str) -> Project | None:
        normalized = _normalize_alias(alias)
        path = self._projects.get(normalized)
        return Project(alias=normalized, path=path) if path is not None else None

    def add_project(self, alias: str, project_path: str) -> Project:
        normalized = _normalize_alias(alias)
        if normalized == HOME_PROJECT_ALIAS:
            raise ProjectAliasReservedError(
                f"Cannot add project using reserved alias '{HOME_PROJECT_ALIAS}'"
            )
        if normalized in self._projects:
            raise ProjectAliasError(f"Project alias '{normalized}' already exists")
        resolved = resolve_project_path(project_path)
        self._projects[normalized] = resolved
        self._save()
        logger.info(f"Added project {normalized}: {resolved}")
        return Project(alias=normalized, path=resolved)

    def remove_project(self, alias: str) -> None:
        normalized = _normalize_alias(alias)
        if normalized == HOME_PROJECT_ALIAS:
            raise ProjectAliasReservedError("Cannot remove the home project")
        if normalized not in self._projects:
            raise ProjectAliasNotFoundError(f"Project alias '{normalized}' not found")
        del self._projects[normalized]
        self._save()
        logger.info(f"Removed project {normalized}")


class ChatProjectStore:
    """Active project alias per chat."""

    def __init__(self, store_path: Path | None = None):
        self.store_path = store_path
        self._active: dict[int, str] = {}
        if store_path is not None:
            data = read_json_file(store_path, default={})
            if isinstance(data, dict):
                for chat_id, alias in data.items():
                    try:
                        self._active[int(chat_id)] = str(alias)
                    except ValueError:
                        continue

    def _save(self) -> None:
        if self.store_path is None:
            return
        write_json_file(self.store_path, {str(k): v for k, v in self._active.items()})

    def get_active_alias(self, chat_id: int) -> str | None:
        return self._active.get(chat_id)

    def set_active_alias(self, chat_id: int, alias: str) -> None:
        self._active[chat_id] = alias
        self._save()

    def chats_using(self, alias: str) -> list[int]:
        return [chat_id for chat_id, active in self._active.items() if active == alias]


class ChatModelStore:
    """Pinned model per (chat, project directory)."""

    def __init__(self, store_path: Path | None = None):
        self.store_path = store_path
        self._models: dict[tuple[int, str], ModelRef] = {}
        if store_path is not None:
            data = read_json_file(store_path, default=[])
            for row in data if isinstance(data, list) else []:
                try:
                    key = (int(row["chat_id"]), str(row["project_dir"]))
                    self._models[key] = ModelRef(
                        provider_id=str(row["provider_id"]), model_id=str(row["model_id"])
                    )
                except (KeyError, TypeError, ValueError):
                    continue

    def _save(self) -> None:
        if self.store_path is None:
            return
        rows = [
            {
                "chat_id": chat_id,
                "project_dir": project_dir,
                "provider_id": model.provider_id,
                "model_id": model.model_id,
            }
            for (chat_id, project_dir), model in self._models.items()
        ]
        write_json_file(self.store_path, rows)

    def get_model(self, chat_id: int, project_dir: str) -> ModelRef | None:
        return self._models.get((chat_id, project_dir))

    def set_model(self, chat_id: int, project_dir: str, model: ModelRef) -> None:
        self._models[(chat_id, project_dir)] = model
        self._save()

    def clear_model(self, chat_id: int, project_dir: str) -> None:
        if self._models.pop((chat_id, project_dir), None) is not None:
            self._save()

    def clear_all(self) -> None:
        self._models.clear()
        self._save()


def resolve_active_project(
    chat_id: int,
    projects: ProjectStore,
    chat_projects: ChatProjectStore,
) -> Project | None:
    """The chat's active project, defaulting to ``home``."""
    alias = chat_projects.get_active_alias(chat_id) or HOME_PROJECT_ALIAS
    return projects.get_project(alias)
