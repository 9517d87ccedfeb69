"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

MAX_MESSAGE_LENGTH = 4096


@dataclass(frozen=True)
class Button:
    """An inline button; ``data`` comes back in a ``CallbackPress``."""
    text: str
    data: str


Keyboard = list[list[Button]]


@dataclass
class IncomingText:
    chat_id: int
    user_id: int
    message_id: int
    text: str


@dataclass
class IncomingFile:
    """A photo or document sent to the bot."""
    chat_id: int
    user_id: int
    message_id: int
    file_id: str
    kind: str  # "photo" or "document"
    mime: str | None = None
    filename: str | None = None
    size: int | None = None
    caption: str = ""


@dataclass
class IncomingCommand:
    chat_id: int
    user_id: int
    message_id: int
    command: str  # without the leading slash or @botname
    args: list[str]


@dataclass
class CallbackPress:
    chat_id: int
    user_id: int
    message_id: int
    data: str


class InboundHandler(Protocol):
    """What a channel forwards authorized updates to."""

    async def handle_text(self, msg: IncomingText) -> None: ...

    async def handle_file(self, msg: IncomingFile) -> None: ...

    async def handle_command(self, cmd: IncomingCommand) -> None: ...

    async def handle_callback(self, press: CallbackPress) -> str: ...


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """
    Hard-split ``text`` into chunks of at most ``limit`` characters.

    The chunks concatenate back to ``text``; empty text yields no chunks.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    return [text[i:i + limit] for i in range(0, len(text), limit)]


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Subclasses deliver single chunks; ``send_text`` takes care of splitting,
    reply threading (first chunk only) and buttons (last chunk only).
    """

    name: str = "base"

    def __init__(self, config: Any, message_limit: int = MAX_MESSAGE_LENGTH):
        self.config = config
        self.message_limit = message_limit
        self.handler: InboundHandler | None = None
        self._running = False

    def set_handler(self, handler: InboundHandler) -> None:
        self.handler = handler

    @abstractmethod
    async def start(self) -> None:
        """Connect and deliver updates to the handler until stopped."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def _send_chunk(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None,
        buttons: Keyboard | None,
    ) -> int | None:
        """Send one message and return its id."""
        pass

    @abstractmethod
    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        buttons: Keyboard | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def download_file(self, file_id: str) -> bytes:
        pass

    async def send_text(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        buttons: Keyboard | None = None,
    ) -> int | None:
        """Send ``text`` in as many chunks as needed. Returns the last message id."""
        chunks = split_message(text, self.message_limit)
        last_id: int | None = None
        for index, chunk in enumerate(chunks):
            last_id = await self._send_chunk(
                chat_id,
                chunk,
                reply_to if index == 0 else None,
                buttons if index == len(chunks) - 1 else None,
            )
        if len(chunks) > 1:
            logger.debug(f"Sent {len(chunks)} chunks to chat {chat_id}")
        return last_id

    def start_typing(self, chat_id: int) -> None:
        pass

    def stop_typing(self, chat_id: int) -> None:
        pass

    def is_allowed(self, user_id: int) -> bool:
        """Only the configured user may talk to the bot."""
        allowed = getattr(self.config, "allowed_user_id", None)
        return allowed is not None and int(user_id) == int(allowed)
