"""Prompt guard, pending interactions, event fan-out and orchestration."""

from telecode.bridge.guard import (
    CancellationToken,
    GuardSnapshot,
    LoopScheduler,
    PromptGuard,
    Scheduler,
)
from telecode.bridge.interactions import (
    PendingPermission,
    PendingQuestion,
    PermissionRegistry,
    QuestionProgress,
    QuestionRegistry,
)
from telecode.bridge.multiplexer import EventMultiplexer
from telecode.bridge.orchestrator import PromptOrchestrator

__all__ = [
    "CancellationToken",
    "EventMultiplexer",
    "GuardSnapshot",
    "LoopScheduler",
    "PendingPermission",
    "PendingQuestion",
    "PermissionRegistry",
    "PromptGuard",
    "PromptOrchestrator",
    "QuestionProgress",
    "QuestionRegistry",
    "Scheduler",
]
