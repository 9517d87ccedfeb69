"""Plain-text rendering, inline keyboards and callback data for the bridge."""

from dataclasses import dataclass
from typing import Iterable

from telecode.backend.base import ModelRef, PermissionDecision, ProviderInfo, TokenUsage
from telecode.backend.events import PermissionRequest
from telecode.bridge.interactions import PendingQuestion
from telecode.channels.base import Button, Keyboard
from telecode.session.projects import Project

PERMISSION_PREFIX = "perm"
QUESTION_PREFIX = "q"
PERMISSION_DECISIONS: tuple[PermissionDecision, ...] = ("once", "always", "reject")

STATUS_ANSWER_SENT = "Answer sent"
STATUS_CANCELLED = "Cancelled"

# Telegram rejects inline keyboard rows wider than this.
MAX_BUTTONS_PER_ROW = 8


@dataclass(frozen=True)
class PermissionCallback:
    request_id: str
    decision: PermissionDecision


@dataclass(frozen=True)
class QuestionCallback:
    request_id: str
    action: str  # "option", "next" or "cancel"
    option_index: int | None = None


# Permissions

def build_permission_summary(request: PermissionRequest) -> str:
    lines = ["OpenCode permission request", f"Permission: {request.permission}"]
    if request.patterns:
        lines.append(f"Patterns: {', '.join(request.patterns)}")
    if request.always:
        lines.append(f"Always scopes: {', '.join(request.always)}")
    return "\n".join(lines)


def build_permission_keyboard(request_id: str, include_always: bool) -> Keyboard:
    row = [Button("Approve once", f"{PERMISSION_PREFIX}:{request_id}:once")]
    if include_always:
        row.append(Button("Approve always", f"{PERMISSION_PREFIX}:{request_id}:always"))
    row.append(Button("Reject", f"{PERMISSION_PREFIX}:{request_id}:reject"))
    return [row]


def parse_permission_callback(data: str) -> PermissionCallback | None:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != PERMISSION_PREFIX or not parts[1]:
        return None
    if parts[2] not in PERMISSION_DECISIONS:
        return None
    return PermissionCallback(request_id=parts[1], decision=parts[2])  # type: ignore[arg-type]


def format_permission_decision(decision: PermissionDecision) -> str:
    if decision == "once":
        return "Approved (once)"
    if decision == "always":
        return "Approved (always)"
    return "Rejected"


def render_permission_decision(summary: str, decision: PermissionDecision) -> str:
    return f"{summary}\n\nDecision: {format_permission_decision(decision)}"


# Questions

def _question_title(question: PendingQuestion) -> str:
    total = len(question.questions)
    if total > 1:
        return f"OpenCode question ({question.index + 1}/{total})"
    return "OpenCode question"


def _question_prompt_lines(question: PendingQuestion) -> list[str]:
    item = question.current
    lines = [_question_title(question)]
    if item.header:
        lines.append(item.header)
    if item.question:
        lines.append(item.question)
    return lines


def render_question(question: PendingQuestion) -> str:
    item = question.current
    lines = _question_prompt_lines(question)

    if item.options:
        lines.append("")
        selected = set(question.selected())
        for i, option in enumerate(item.options, start=1):
            text = f"{i}) {option.label}"
            if option.description:
                text += f" - {option.description}"
            if item.multiple:
                marker = "[x]" if option.label in selected else "[ ]"
                text = f"{marker} {text}"
            lines.append(text)

    lines.append("")
    if item.multiple:
        hint = "Tap options to toggle them, then Submit."
    elif item.options:
        hint = "Tap a number to answer."
    else:
        hint = "Reply with your answer."
    if item.custom and item.options:
        hint += " You can also type an answer."
    lines.append(hint)
    return "\n".join(lines)


def build_question_keyboard(question: PendingQuestion) -> Keyboard:
    item = question.current
    request_id = question.request_id
    option_buttons = [
        Button(str(i + 1), f"{QUESTION_PREFIX}:{request_id}:opt:{i}")
        for i in range(len(item.options))
    ]
    keyboard: Keyboard = [
        option_buttons[start:start + MAX_BUTTONS_PER_ROW]
        for start in range(0, len(option_buttons), MAX_BUTTONS_PER_ROW)
    ]
    controls: list[Button] = []
    if item.multiple:
        controls.append(Button("Submit", f"{QUESTION_PREFIX}:{request_id}:next"))
    controls.append(Button("Cancel", f"{QUESTION_PREFIX}:{request_id}:cancel"))
    keyboard.append(controls)
    return keyboard


def render_question_status(question: PendingQuestion, status: str, reason: str | None = None) -> str:
    lines = _question_prompt_lines(question)
    label = f"{status} ({reason})" if reason else status
    lines.extend(["", f"Status: {label}"])
    return "\n".join(lines)


def parse_question_callback(data: str) -> QuestionCallback | None:
    parts = data.split(":")
    if len(parts) < 3 or parts[0] != QUESTION_PREFIX or not parts[1]:
        return None
    request_id, action = parts[1], parts[2]
    if action in ("next", "cancel"):
        if len(parts) != 3:
            return None
        return QuestionCallback(request_id=request_id, action=action)
    if action == "opt":
        if len(parts) != 4 or not parts[3].isdigit():
            return None
        return QuestionCallback(request_id=request_id, action="option", option_index=int(parts[3]))
    return None


# Listings

def format_model_list(providers: Iterable[ProviderInfo]) -> str:
    lines = ["Available models:"]
    entries: list[str] = []
    for provider in sorted(providers, key=lambda p: p.id):
        for model_id in sorted(provider.models):
            name = provider.models[model_id].name
            entry = f"{provider.id}/{model_id}"
            if name:
                entry += f" ({name})"
            entries.append(entry)
    lines.extend(entries or ["No models available."])
    return "\n".join(lines)


def format_project_list(projects: list[Project], active_alias: str) -> str:
    if not projects:
        return "No projects configured."
    lines = ["Projects (active marked with *):"]
    for project in projects:
        marker = "*" if project.alias == active_alias else " "
        lines.append(f"{marker} {project.alias}: {project.path}")
    return "\n".join(lines)


def format_status_reply(
    project: Project,
    model: ModelRef | None,
    session_id: str,
    tokens: TokenUsage | None,
    context_limit: int | None,
) -> str:
    lines = [
        f"Project: {project.alias}: {project.path}",
        f"Model: {model or 'unknown'}",
        f"Session: {session_id}",
    ]
    if tokens is None:
        context = "Context (input): unavailable (no assistant message yet)."
        if context_limit:
            context += f" Limit: {context_limit}"
        lines.append(context)
        return "\n".join(lines)

    if context_limit:
        percent = tokens.input / context_limit * 100
        lines.append(f"Context (input): {tokens.input} / {context_limit} ({percent:.1f}%)")
    else:
        lines.append(f"Context (input): {tokens.input} (limit unknown)")
    lines.append(
        f"Tokens (last assistant): in={tokens.input} out={tokens.output} "
        f"reasoning={tokens.reasoning} cache(r/w)={tokens.cache_read}/{tokens.cache_write}"
    )
    return "\n".join(lines)
