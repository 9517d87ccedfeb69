"""Prompt lifecycle: chat message in, OpenCode reply out."""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Coroutine

from loguru import logger

from telecode.backend.base import Backend, FileAttachment, PromptInput
from telecode.bridge.commands import BridgeCommands
from telecode.bridge.guard import CancellationToken, GuardSnapshot, PromptGuard
from telecode.bridge.interactions import (
    PendingQuestion,
    PermissionRegistry,
    QuestionProgress,
    QuestionRegistry,
)
from telecode.bridge.render import (
    STATUS_ANSWER_SENT,
    STATUS_CANCELLED,
    build_question_keyboard,
    format_permission_decision,
    parse_permission_callback,
    parse_question_callback,
    render_permission_decision,
    render_question,
    render_question_status,
)
from telecode.channels.base import (
    BaseChannel,
    CallbackPress,
    IncomingCommand,
    IncomingFile,
    IncomingText,
    Keyboard,
)
from telecode.config.schema import Config
from telecode.errors import (
    BackendRequestError,
    DownloadTimeoutError,
    FileDownloadError,
    FileTooLargeError,
    FreeformNotAllowedError,
    ModelCapabilityError,
    ModelFormatError,
    ModelModalitiesError,
)
from telecode.session.ownership import SessionStore
from telecode.session.projects import (
    ChatModelStore,
    ChatProjectStore,
    Project,
    ProjectStore,
    resolve_active_project,
)

BUSY_MESSAGE = "Your previous message has not been replied to yet. This message will be ignored."
MISSING_PROJECT_MESSAGE = "Missing project configuration."
GENERIC_ERROR_MESSAGE = "OpenCode error. Check server logs."
UNSUPPORTED_FILE_MESSAGE = "Unsupported file type. Send an image or a PDF."
DEFAULT_FILE_PROMPT = "See the attached file."

TIMEOUT_NO_SESSION = (
    "OpenCode request timed out. Nothing to abort yet (session not ready). "
    "You can send a new message."
)
TIMEOUT_ABORTED = "OpenCode request timed out. Server-side prompt aborted. You can send a new message."
TIMEOUT_NOT_ABORTED = (
    "OpenCode request timed out. Tried to abort the server-side prompt, but it was not aborted. "
    "You can send a new message."
)
TIMEOUT_ABORT_FAILED = (
    "OpenCode request timed out. Failed to abort the server-side prompt. You can send a new message."
)
ABORTING_MESSAGE = "Aborting response to this prompt..."
NOTHING_TO_ABORT_MESSAGE = "No prompt in flight."

_IMAGE_EXTENSIONS = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}


@dataclass
class PendingAttachment:
    """A file to download once the prompt is running."""
    file_id: str
    mime: str
    filename: str | None = None
    declared_size: int | None = None


def describe_error(error: BaseException) -> str:
    """User-facing text for a failed prompt."""
    if isinstance(error, FileTooLargeError):
        return str(error)
    if isinstance(error, DownloadTimeoutError):
        return "Failed to download file from Telegram (timed out)."
    if isinstance(error, FileDownloadError):
        return "Failed to download file from Telegram."
    if isinstance(
        error, (ModelCapabilityError, ModelFormatError, ModelModalitiesError, BackendRequestError)
    ):
        return str(error)
    return GENERIC_ERROR_MESSAGE


def attachment_for_file(msg: IncomingFile) -> PendingAttachment | None:
    """Accept photos, image documents and PDFs. Returns None for anything else."""
    if msg.kind == "photo":
        return PendingAttachment(file_id=msg.file_id, mime="image/jpeg", declared_size=msg.size)

    name = (msg.filename or "").lower()
    mime = msg.mime
    if mime:
        if mime.startswith("image/") or mime == "application/pdf":
            return PendingAttachment(msg.file_id, mime, msg.filename, msg.size)
        return None
    for ext, inferred in _IMAGE_EXTENSIONS.items():
        if name.endswith(ext):
            return PendingAttachment(msg.file_id, inferred, msg.filename, msg.size)
    if name.endswith(".pdf"):
        return PendingAttachment(msg.file_id, "application/pdf", msg.filename, msg.size)
    return None


class PromptOrchestrator:
    """
    Turns inbound chat units into backend prompts.

    Handlers return as soon as the guard has been claimed; the prompt itself
    runs in a tracked background task that always releases the guard.
    """

    def __init__(
        self,
        backend: Backend,
        transport: BaseChannel,
        guard: PromptGuard,
        ownership: SessionStore,
        projects: ProjectStore,
        chat_projects: ChatProjectStore,
        chat_models: ChatModelStore,
        questions: QuestionRegistry,
        permissions: PermissionRegistry,
        config: Config,
    ):
        self.backend = backend
        self.transport = transport
        self.guard = guard
        self.ownership = ownership
        self.projects = projects
        self.chat_projects = chat_projects
        self.chat_models = chat_models
        self.questions = questions
        self.permissions = permissions
        self.config = config
        self.commands = BridgeCommands(self)
        self._tasks: set[asyncio.Task[Any]] = set()

    # Inbound units

    async def handle_text(self, msg: IncomingText) -> None:
        question = self.questions.get_for_chat(msg.chat_id)
        if question is not None:
            await self._answer_with_text(msg, question)
            return
        await self._begin_prompt(msg.chat_id, msg.message_id, msg.text, [])

    async def handle_file(self, msg: IncomingFile) -> None:
        pending = attachment_for_file(msg)
        if pending is None:
            await self.send(msg.chat_id, UNSUPPORTED_FILE_MESSAGE, reply_to=msg.message_id)
            return
        text = msg.caption.strip() or DEFAULT_FILE_PROMPT
        await self._begin_prompt(msg.chat_id, msg.message_id, text, [pending])

    async def handle_command(self, cmd: IncomingCommand) -> None:
        await self.commands.dispatch(cmd)

    async def handle_callback(self, press: CallbackPress) -> str:
        """Handle an inline button press; the return value is shown as a toast."""
        if press.data.startswith("perm:"):
            return await self._on_permission_press(press)
        if press.data.startswith("q:"):
            return await self._on_question_press(press)
        logger.debug(f"Ignoring unknown callback data {press.data!r}")
        return "Unknown action."

    # Prompt lifecycle

    async def _begin_prompt(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        attachments: list[PendingAttachment],
    ) -> None:
        project = resolve_active_project(chat_id, self.projects, self.chat_projects)
        if project is None:
            await self.send(chat_id, MISSING_PROJECT_MESSAGE, reply_to=message_id)
            return

        token = self.guard.try_start(
            chat_id,
            message_id,
            lambda snapshot: self._spawn(self._on_timeout(chat_id, project.path, snapshot)),
        )
        if token is None:
            logger.debug(f"Chat {chat_id} busy, ignoring message {message_id}")
            await self.send(chat_id, BUSY_MESSAGE, reply_to=message_id)
            return

        self._spawn(self._run_prompt(chat_id, message_id, project, text, attachments, token))

    async def _run_prompt(
        self,
        chat_id: int,
        message_id: int,
        project: Project,
        text: str,
        attachments: list[PendingAttachment],
        token: CancellationToken,
    ) -> None:
        self.transport.start_typing(chat_id)
        try:
            if token.cancelled:
                return
            session_id = await self.ensure_session_id(chat_id, project.path)
            if token.cancelled:
                return
            self.guard.set_session_id(chat_id, token, session_id)

            files = [await self._download(pending) for pending in attachments]
            if token.cancelled:
                return

            pinned = self.chat_models.get_model(chat_id, project.path)
            result = await self.backend.prompt(
                session_id,
                project.path,
                PromptInput(text=text, files=files),
                cancel_token=token,
                model=pinned,
            )

            if pinned is None and result.model is not None:
                self.chat_models.set_model(chat_id, project.path, result.model)
                logger.info(f"Pinned model {result.model} for chat {chat_id} in {project.alias}")
            if token.cancelled:
                logger.debug(f"Dropping late reply for chat {chat_id} message {message_id}")
                return
            await self.send(chat_id, result.reply, reply_to=message_id)
        except Exception as e:
            if token.cancelled:
                logger.debug(f"Prompt for chat {chat_id} ended after cancellation: {e}")
                return
            reply = describe_error(e)
            if reply == GENERIC_ERROR_MESSAGE:
                logger.error(f"OpenCode prompt failed for chat {chat_id}: {e}")
            else:
                logger.warning(f"Prompt for chat {chat_id} failed: {e}")
            await self.send(chat_id, reply, reply_to=message_id)
        finally:
            self.guard.finish(chat_id, token)
            if not self.guard.is_in_flight(chat_id):
                self.transport.stop_typing(chat_id)

    async def ensure_session_id(self, chat_id: int, project_dir: str) -> str:
        existing = self.ownership.get_session_id(chat_id, project_dir)
        if existing:
            return existing
        session_id = await self.backend.create_session(project_dir, f"Telegram chat {chat_id}")
        self.ownership.set_session_id(chat_id, project_dir, session_id)
        return session_id

    async def _download(self, pending: PendingAttachment) -> FileAttachment:
        max_bytes = self.config.telegram.max_file_bytes
        if pending.declared_size is not None and pending.declared_size > max_bytes:
            raise FileTooLargeError(pending.declared_size, max_bytes)
        try:
            data = await asyncio.wait_for(
                self.transport.download_file(pending.file_id),
                timeout=self.config.telegram.download_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise DownloadTimeoutError(f"Timed out downloading {pending.file_id}") from e
        except Exception as e:
            raise FileDownloadError(f"Failed to download {pending.file_id}: {e}") from e
        if len(data) > max_bytes:
            raise FileTooLargeError(len(data), max_bytes)
        encoded = base64.b64encode(data).decode("ascii")
        return FileAttachment(
            mime=pending.mime,
            data_url=f"data:{pending.mime};base64,{encoded}",
            filename=pending.filename,
        )

    async def _on_timeout(self, chat_id: int, project_dir: str, snapshot: GuardSnapshot) -> None:
        if not self.guard.is_in_flight(chat_id):
            self.transport.stop_typing(chat_id)
        await self._cancel_question(chat_id, "timed out")

        reply_to = snapshot.reply_to_message_id
        if not snapshot.session_id:
            await self.send(chat_id, TIMEOUT_NO_SESSION, reply_to=reply_to)
            return
        try:
            aborted = await self.backend.abort_session(snapshot.session_id, project_dir)
        except Exception as e:
            logger.error(f"Failed to abort session {snapshot.session_id}: {e}")
            await self.send(chat_id, TIMEOUT_ABORT_FAILED, reply_to=reply_to)
            return
        await self.send(chat_id, TIMEOUT_ABORTED if aborted else TIMEOUT_NOT_ABORTED, reply_to=reply_to)

    async def abort_prompt(self, chat_id: int, message_id: int) -> None:
        """User-requested abort of the chat's in-flight prompt."""
        snapshot = self.guard.abort(chat_id)
        await self._cancel_question(chat_id, "aborted")
        if snapshot is None:
            await self.send(chat_id, NOTHING_TO_ABORT_MESSAGE, reply_to=message_id)
            return

        self.transport.stop_typing(chat_id)
        await self.send(chat_id, ABORTING_MESSAGE, reply_to=snapshot.reply_to_message_id)
        if not snapshot.session_id:
            return
        owner = self.ownership.get_owner(snapshot.session_id)
        project_dir = owner.project_dir if owner else None
        if project_dir is None:
            project = resolve_active_project(chat_id, self.projects, self.chat_projects)
            project_dir = project.path if project else ""
        try:
            aborted = await self.backend.abort_session(snapshot.session_id, project_dir)
            logger.info(f"Abort of session {snapshot.session_id}: {'ok' if aborted else 'not aborted'}")
        except Exception as e:
            logger.error(f"Failed to abort session {snapshot.session_id}: {e}")

    # Questions

    async def _cancel_question(self, chat_id: int, reason: str) -> None:
        question = await self.questions.cancel_for_chat(chat_id)
        if question is not None and question.message_id is not None:
            await self._safe_edit(
                chat_id,
                question.message_id,
                render_question_status(question, STATUS_CANCELLED, reason),
            )

    async def _show_progress(self, question: PendingQuestion, progress: QuestionProgress) -> None:
        if question.message_id is None:
            return
        if progress == QuestionProgress.SUBMITTED:
            await self._safe_edit(
                question.chat_id,
                question.message_id,
                render_question_status(question, STATUS_ANSWER_SENT),
            )
        else:
            await self._safe_edit(
                question.chat_id,
                question.message_id,
                render_question(question),
                build_question_keyboard(question),
            )

    async def _answer_with_text(self, msg: IncomingText, question: PendingQuestion) -> None:
        try:
            progress = await self.questions.submit_typed_answer(question, msg.text)
        except FreeformNotAllowedError as e:
            await self.send(msg.chat_id, str(e), reply_to=msg.message_id)
            return
        except Exception as e:
            logger.error(f"Failed to answer question {question.request_id}: {e}")
            await self.send(msg.chat_id, "Failed to send response.", reply_to=msg.message_id)
            return
        await self._show_progress(question, progress)

    async def _on_question_press(self, press: CallbackPress) -> str:
        parsed = parse_question_callback(press.data)
        if parsed is None:
            return "Unknown action."
        question = self.questions.get(parsed.request_id)
        if question is None or question.chat_id != press.chat_id:
            return "Question not found."

        try:
            if parsed.action == "cancel":
                await self.questions.cancel(question)
                await self._safe_edit(
                    question.chat_id,
                    press.message_id,
                    render_question_status(question, STATUS_CANCELLED),
                )
                return "Cancelled."

            if parsed.action == "next":
                progress = await self.questions.submit_selection(question)
                if progress is None:
                    return "Select at least one option or type an answer."
                await self._show_progress(question, progress)
                return ""

            label = question.option_label(parsed.option_index)
            if label is None:
                return "Option not found."
            if question.current.multiple:
                self.questions.toggle_option(question, label)
                await self._show_progress(question, QuestionProgress.ADVANCED)
                return ""
            progress = await self.questions.select_option(question, label)
            await self._show_progress(question, progress)
            return ""
        except Exception as e:
            logger.error(f"Failed to handle question {question.request_id}: {e}")
            return "Failed to send response."

    # Permissions

    async def _on_permission_press(self, press: CallbackPress) -> str:
        parsed = parse_permission_callback(press.data)
        if parsed is None:
            return "Unknown action."
        permission = self.permissions.get(parsed.request_id)
        if permission is None:
            return "Permission request not found."
        try:
            await self.permissions.decide(parsed.request_id, parsed.decision)
        except Exception as e:
            logger.error(f"Failed to reply to permission {parsed.request_id}: {e}")
            return "Failed to send response."
        await self._safe_edit(
            press.chat_id,
            permission.message_id or press.message_id,
            render_permission_decision(permission.summary, parsed.decision),
        )
        return format_permission_decision(parsed.decision)

    # Transport helpers

    async def send(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        buttons: Keyboard | None = None,
    ) -> int | None:
        """Send text; failures are logged and never raised."""
        try:
            return await self.transport.send_text(chat_id, text, reply_to=reply_to, buttons=buttons)
        except Exception as e:
            logger.error(f"Error sending message to chat {chat_id}: {e}")
            return None

    async def _safe_edit(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        buttons: Keyboard | None = None,
    ) -> None:
        try:
            await self.transport.edit_message(chat_id, message_id, text, buttons)
        except Exception as e:
            logger.error(f"Error editing message {message_id} in chat {chat_id}: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
