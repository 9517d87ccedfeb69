"""Session ownership and project state."""

from telecode.session.ownership import SessionOwner, SessionStore
from telecode.session.projects import (
    HOME_PROJECT_ALIAS,
    ChatModelStore,
    ChatProjectStore,
    Project,
    ProjectStore,
    resolve_active_project,
)

__all__ = [
    "HOME_PROJECT_ALIAS",
    "ChatModelStore",
    "ChatProjectStore",
    "Project",
    "ProjectStore",
    "SessionOwner",
    "SessionStore",
    "resolve_active_project",
]
