"""Fan backend events out to the chats that own their sessions."""

import asyncio

from loguru import logger

from telecode.backend.base import Backend
from telecode.backend.events import BackendEvent, PermissionAsked, QuestionAsked
from telecode.bridge.guard import CancellationToken
from telecode.bridge.interactions import (
    PendingPermission,
    PendingQuestion,
    PermissionRegistry,
    QuestionRegistry,
)
from telecode.bridge.render import (
    build_permission_keyboard,
    build_permission_summary,
    build_question_keyboard,
    render_question,
)
from telecode.channels.base import BaseChannel
from telecode.session.ownership import SessionStore


class EventMultiplexer:
    """
    Consumes the backend's global event stream and routes permission and
    question requests to their owning chat.

    Events are handled one at a time in arrival order. When the stream ends
    or fails, the loop waits ``retry_delay_s`` and reconnects until stopped.
    """

    def __init__(
        self,
        backend: Backend,
        ownership: SessionStore,
        questions: QuestionRegistry,
        permissions: PermissionRegistry,
        transport: BaseChannel,
        retry_delay_s: float = 1.0,
    ):
        self.backend = backend
        self.ownership = ownership
        self.questions = questions
        self.permissions = permissions
        self.transport = transport
        self.retry_delay_s = retry_delay_s
        self._token = CancellationToken()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._token = CancellationToken()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._token.cancel()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        token = self._token
        while not token.cancelled:
            try:
                async for event in self.backend.open_event_stream(token):
                    if token.cancelled:
                        return
                    try:
                        await self.dispatch(event)
                    except Exception as e:
                        logger.error(f"Error handling backend event: {e}")
                logger.warning("OpenCode event stream ended")
            except asyncio.CancelledError:
                break
            except Exception as e:
                if token.cancelled:
                    break
                logger.warning(f"OpenCode event stream error: {e}")

            if await token.wait(self.retry_delay_s):
                break
            logger.info("Reconnecting to OpenCode event stream...")

    async def dispatch(self, event: BackendEvent) -> None:
        if isinstance(event, PermissionAsked):
            await self._on_permission(event)
        elif isinstance(event, QuestionAsked):
            await self._on_question(event)
        else:
            logger.debug(f"Ignoring backend event {event.type or '<untyped>'}")

    async def _on_permission(self, event: PermissionAsked) -> None:
        request = event.request
        owner = self.ownership.get_owner(request.session_id)
        if owner is None:
            logger.warning(
                f"Dropping permission {request.id}: no chat owns session {request.session_id}"
            )
            return

        summary = build_permission_summary(request)
        message_id = await self.transport.send_text(
            owner.chat_id,
            summary,
            buttons=build_permission_keyboard(request.id, include_always=bool(request.always)),
        )
        self.permissions.register(
            PendingPermission(
                request_id=request.id,
                chat_id=owner.chat_id,
                directory=event.directory or owner.project_dir,
                summary=summary,
                message_id=message_id,
            )
        )
        logger.info(f"Permission {request.id} ({request.permission}) sent to chat {owner.chat_id}")

    async def _on_question(self, event: QuestionAsked) -> None:
        request = event.request
        directory = event.directory
        owner = self.ownership.get_owner(request.session_id)
        if owner is None:
            logger.warning(
                f"Dropping question {request.id}: no chat owns session {request.session_id}"
            )
            return
        directory = directory or owner.project_dir

        if self.questions.has_open(owner.chat_id):
            logger.warning(
                f"Chat {owner.chat_id} already has an open question; rejecting {request.id}"
            )
            await self.backend.reject_question(request.id, directory)
            return

        if not request.questions:
            logger.warning(f"Question {request.id} has no sub-questions; rejecting")
            await self.backend.reject_question(request.id, directory)
            return

        question = PendingQuestion(
            request_id=request.id,
            chat_id=owner.chat_id,
            directory=directory,
            questions=request.questions,
        )
        try:
            question.message_id = await self.transport.send_text(
                owner.chat_id,
                render_question(question),
                buttons=build_question_keyboard(question),
            )
        except Exception as e:
            logger.error(f"Failed to send question {request.id} to chat {owner.chat_id}: {e}")
            await self.backend.reject_question(request.id, directory)
            return
        self.questions.register(question)
        logger.info(f"Question {request.id} sent to chat {owner.chat_id}")
