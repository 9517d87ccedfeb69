"""Pending backend questions and permission requests, addressed per chat."""

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from telecode.backend.base import Backend, PermissionDecision
from telecode.backend.events import QuestionItem
from telecode.errors import FreeformNotAllowedError, InvalidQuestionStateError


class QuestionProgress(str, Enum):
    ADVANCED = "advanced"
    SUBMITTED = "submitted"


@dataclass
class PendingQuestion:
    """
    A question request waiting on the user.

    ``answers`` has one slot per sub-question; a slot is ``None`` until the
    user answers it. Answers are option labels or typed text.
    """
    request_id: str
    chat_id: int
    directory: str
    questions: list[QuestionItem]
    message_id: int | None = None
    index: int = 0
    answers: list[list[str] | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.answers:
            self.answers = [None] * len(self.questions)

    @property
    def current(self) -> QuestionItem:
        return self.questions[self.index]

    def option_label(self, option_index: int) -> str | None:
        options = self.current.options
        if 0 <= option_index < len(options):
            return options[option_index].label
        return None

    def selected(self) -> list[str]:
        return list(self.answers[self.index] or [])


@dataclass
class PendingPermission:
    request_id: str
    chat_id: int
    directory: str
    summary: str
    message_id: int | None = None


class QuestionRegistry:
    """At most one open question per chat."""

    def __init__(self, backend: Backend):
        self.backend = backend
        self._by_id: dict[str, PendingQuestion] = {}
        self._by_chat: dict[int, str] = {}

    def register(self, question: PendingQuestion) -> None:
        if question.chat_id in self._by_chat:
            raise InvalidQuestionStateError(
                f"Chat {question.chat_id} already has an open question"
            )
        self._by_id[question.request_id] = question
        self._by_chat[question.chat_id] = question.request_id

    def get(self, request_id: str) -> PendingQuestion | None:
        return self._by_id.get(request_id)

    def get_for_chat(self, chat_id: int) -> PendingQuestion | None:
        request_id = self._by_chat.get(chat_id)
        return self._by_id.get(request_id) if request_id else None

    def has_open(self, chat_id: int) -> bool:
        return chat_id in self._by_chat

    def remove(self, request_id: str) -> PendingQuestion | None:
        question = self._by_id.pop(request_id, None)
        if question is not None and self._by_chat.get(question.chat_id) == request_id:
            del self._by_chat[question.chat_id]
        return question

    async def advance_or_submit(self, question: PendingQuestion) -> QuestionProgress:
        """Move to the next sub-question, or send all answers after the last one."""
        if question.index < len(question.questions) - 1:
            question.index += 1
            return QuestionProgress.ADVANCED

        if any(not answer for answer in question.answers):
            raise InvalidQuestionStateError(
                f"Question {question.request_id} has unanswered sub-questions"
            )
        answers = [list(answer or []) for answer in question.answers]
        await self.backend.reply_to_question(question.request_id, answers, question.directory)
        self.remove(question.request_id)
        logger.info(f"Answered question {question.request_id} for chat {question.chat_id}")
        return QuestionProgress.SUBMITTED

    def toggle_option(self, question: PendingQuestion, label: str) -> None:
        """Flip ``label`` in a multi-select sub-question, keeping option order."""
        chosen = set(question.selected())
        if label in chosen:
            chosen.remove(label)
        else:
            chosen.add(label)
        ordered = [opt.label for opt in question.current.options if opt.label in chosen]
        question.answers[question.index] = ordered or None

    async def select_option(self, question: PendingQuestion, label: str) -> QuestionProgress:
        question.answers[question.index] = [label]
        return await self.advance_or_submit(question)

    async def submit_typed_answer(self, question: PendingQuestion, text: str) -> QuestionProgress:
        if not question.current.custom:
            raise FreeformNotAllowedError("Please choose one of the options for this question.")
        question.answers[question.index] = [text]
        return await self.advance_or_submit(question)

    async def submit_selection(self, question: PendingQuestion) -> QuestionProgress | None:
        """Submit the multi-select choices; None when nothing is selected."""
        if not question.selected():
            return None
        return await self.advance_or_submit(question)

    async def cancel(self, question: PendingQuestion) -> None:
        """Reject the question on the backend, then drop it. Kept if the reject fails."""
        await self.backend.reject_question(question.request_id, question.directory)
        self.remove(question.request_id)
        logger.info(f"Rejected question {question.request_id} for chat {question.chat_id}")

    async def cancel_for_chat(self, chat_id: int) -> PendingQuestion | None:
        """Cancel the chat's open question, if any. The entry is dropped even if the reject fails."""
        question = self.get_for_chat(chat_id)
        if question is None:
            return None
        try:
            await self.cancel(question)
        except Exception as e:
            self.remove(question.request_id)
            logger.error(f"Failed to reject question {question.request_id}: {e}")
        return question


class PermissionRegistry:
    """Permission requests waiting on a decision, keyed by request id."""

    def __init__(self, backend: Backend):
        self.backend = backend
        self._pending: dict[str, PendingPermission] = {}

    def register(self, permission: PendingPermission) -> None:
        self._pending[permission.request_id] = permission

    def get(self, request_id: str) -> PendingPermission | None:
        return self._pending.get(request_id)

    def list_for_chat(self, chat_id: int) -> list[PendingPermission]:
        return [p for p in self._pending.values() if p.chat_id == chat_id]

    async def decide(
        self, request_id: str, decision: PermissionDecision
    ) -> PendingPermission | None:
        """
        Forward ``decision`` to the backend and forget the request.

        Returns None for unknown requests. If the backend call fails the
        request stays pending so the user can retry.
        """
        permission = self._pending.get(request_id)
        if permission is None:
            return None
        await self.backend.reply_to_permission(request_id, decision, permission.directory)
        self._pending.pop(request_id, None)
        logger.info(f"Permission {request_id} answered: {decision}")
        return permission
