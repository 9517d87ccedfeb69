"""Typed events parsed from the backend's global event stream."""

from dataclasses import dataclass, field
from typing import Any

from loguru import logger


@dataclass
class PermissionRequest:
    id: str
    session_id: str
    permission: str
    patterns: list[str] = field(default_factory=list)
    always: list[str] = field(default_factory=list)


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class QuestionItem:
    """One sub-question of a question request."""
    question: str
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multiple: bool = False
    custom: bool = True


@dataclass
class QuestionRequest:
    id: str
    session_id: str
    questions: list[QuestionItem] = field(default_factory=list)


@dataclass
class PermissionAsked:
    request: PermissionRequest
    directory: str


@dataclass
class QuestionAsked:
    request: QuestionRequest
    directory: str


@dataclass
class UnknownEvent:
    type: str
    directory: str = ""


BackendEvent = PermissionAsked | QuestionAsked | UnknownEvent


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int, float))]


def _parse_permission(props: dict[str, Any]) -> PermissionRequest:
    return PermissionRequest(
        id=str(props["id"]),
        session_id=str(props["sessionID"]),
        permission=str(props.get("permission") or ""),
        patterns=_str_list(props.get("patterns")),
        always=_str_list(props.get("always")),
    )


def _parse_question(props: dict[str, Any]) -> QuestionRequest:
    items: list[QuestionItem] = []
    for raw in props.get("questions") or []:
        if not isinstance(raw, dict):
            continue
        options = [
            QuestionOption(
                label=str(opt.get("label") or ""),
                description=str(opt.get("description") or ""),
            )
            for opt in raw.get("options") or []
            if isinstance(opt, dict) and opt.get("label")
        ]
        items.append(
            QuestionItem(
                question=str(raw.get("question") or ""),
                header=str(raw.get("header") or ""),
                options=options,
                multiple=bool(raw.get("multiple", False)),
                custom=raw.get("custom", True) is not False,
            )
        )
    return QuestionRequest(
        id=str(props["id"]),
        session_id=str(props["sessionID"]),
        questions=items,
    )


def parse_global_event(data: dict[str, Any]) -> BackendEvent:
    """
    Parse one global stream item of the form
    ``{"directory": ..., "payload": {"type": ..., "properties": {...}}}``.

    Malformed permission or question payloads degrade to ``UnknownEvent``.
    """
    directory = str(data.get("directory") or "")
    payload = data.get("payload")
    if not isinstance(payload, dict):
        return UnknownEvent(type="", directory=directory)

    event_type = str(payload.get("type") or "")
    props = payload.get("properties")
    if not isinstance(props, dict):
        return UnknownEvent(type=event_type, directory=directory)

    try:
        if event_type == "permission.asked":
            return PermissionAsked(request=_parse_permission(props), directory=directory)
        if event_type == "question.asked":
            return QuestionAsked(request=_parse_question(props), directory=directory)
    except (KeyError, TypeError, AttributeError) as e:
        logger.warning(f"Malformed {event_type} event: {e}")
    return UnknownEvent(type=event_type, directory=directory)
