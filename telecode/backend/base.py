"""Backend interface the bridge talks to."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Literal

from telecode.errors import ModelFormatError

if TYPE_CHECKING:
    from telecode.backend.events import BackendEvent
    from telecode.bridge.guard import CancellationToken


PermissionDecision = Literal["once", "always", "reject"]


@dataclass(frozen=True)
class ModelRef:
    """A model addressed as provider/model."""
    provider_id: str
    model_id: str

    @classmethod
    def parse(cls, value: str) -> "ModelRef":
        parts = value.strip().split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ModelFormatError(f"Unexpected OpenCode model format: {value}")
        return cls(provider_id=parts[0], model_id=parts[1])

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass
class FileAttachment:
    """A file inlined into a prompt as a data: URL."""
    mime: str
    data_url: str
    filename: str | None = None


@dataclass
class PromptInput:
    text: str
    files: list[FileAttachment] = field(default_factory=list)


@dataclass
class PromptResult:
    reply: str
    model: ModelRef | None = None


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    context_limit: int | None = None


@dataclass
class ProviderInfo:
    """A provider and the models it serves, as listed by the backend."""
    id: str
    name: str = ""
    models: dict[str, ModelInfo] = field(default_factory=dict)
    raw_models: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass
class AssistantStats:
    """Model and token counts of the newest assistant message in a session."""
    model: ModelRef | None = None
    tokens: TokenUsage | None = None


class Backend(ABC):
    """
    Capabilities the bridge needs from a coding-agent server.

    Implementations raise ``OperationCancelledError`` from calls that accept a
    cancellation token once the token fires.
    """

    @abstractmethod
    async def create_session(self, project_dir: str, title: str) -> str:
        """Create a session in ``project_dir`` and return its id."""
        pass

    @abstractmethod
    async def prompt(
        self,
        session_id: str,
        project_dir: str,
        prompt_input: PromptInput,
        cancel_token: "CancellationToken | None" = None,
        model: ModelRef | None = None,
    ) -> PromptResult:
        """Send a prompt and wait for the final reply."""
        pass

    @abstractmethod
    async def abort_session(self, session_id: str, project_dir: str) -> bool:
        """Ask the server to stop the running prompt. Returns whether it did."""
        pass

    @abstractmethod
    async def list_models(self, project_dir: str) -> list[ProviderInfo]:
        pass

    @abstractmethod
    async def get_latest_assistant_stats(self, session_id: str, project_dir: str) -> AssistantStats:
        """Empty stats when the session has no assistant message yet."""
        pass

    @abstractmethod
    async def reply_to_permission(
        self,
        request_id: str,
        decision: PermissionDecision,
        directory: str | None = None,
    ) -> bool:
        pass

    @abstractmethod
    async def reply_to_question(
        self,
        request_id: str,
        answers: list[list[str]],
        directory: str | None = None,
    ) -> bool:
        pass

    @abstractmethod
    async def reject_question(self, request_id: str, directory: str | None = None) -> bool:
        pass

    @abstractmethod
    def open_event_stream(
        self, cancel_token: "CancellationToken | None" = None
    ) -> AsyncIterator["BackendEvent"]:
        """Open the global event stream. Ends when the connection closes."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
