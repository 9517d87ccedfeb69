"""OpenCode backend client."""

from telecode.backend.base import (
    AssistantStats,
    Backend,
    FileAttachment,
    ModelRef,
    PermissionDecision,
    PromptInput,
    PromptResult,
    ProviderInfo,
    TokenUsage,
)
from telecode.backend.events import (
    BackendEvent,
    PermissionAsked,
    PermissionRequest,
    QuestionAsked,
    QuestionItem,
    QuestionOption,
    QuestionRequest,
    UnknownEvent,
)
from telecode.backend.opencode import OpenCodeBackend

__all__ = [
    "AssistantStats",
    "Backend",
    "BackendEvent",
    "FileAttachment",
    "ModelRef",
    "OpenCodeBackend",
    "PermissionAsked",
    "PermissionDecision",
    "PermissionRequest",
    "PromptInput",
    "PromptResult",
    "ProviderInfo",
    "QuestionAsked",
    "QuestionItem",
    "QuestionOption",
    "QuestionRequest",
    "TokenUsage",
    "UnknownEvent",
]
