"""Per-chat prompt guard with its own timeout and cancellation token."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from telecode.errors import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation flag.

    Cancelling is idempotent. Registered callbacks run synchronously inside
    ``cancel()``; coroutines waiting on the token are woken on the next loop
    iteration.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Run ``callback`` on cancel (immediately if already cancelled). Returns a remover."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or ``timeout`` elapses. Returns True if cancelled."""
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When the token wins, the underlying task is cancelled and
        ``OperationCancelledError`` is raised. A result that is already
        available when both complete together is returned.
        """
        task = asyncio.ensure_future(awaitable)
        if self._cancelled:
            task.cancel()
            raise OperationCancelledError("Operation cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        raise OperationCancelledError("Operation cancelled")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Schedules a callback after a delay and hands back a cancellable handle."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


@dataclass
class GuardSnapshot:
    """State captured from an in-flight entry when it is aborted or times out."""
    token: CancellationToken
    reply_to_message_id: int | None
    session_id: str | None


@dataclass
class _InFlight:
    token: CancellationToken
    timer: TimerHandle
    reply_to_message_id: int | None
    session_id: str | None = None


TimeoutCallback = Callable[[GuardSnapshot], None]


class PromptGuard:
    """
    At most one in-flight prompt per chat.

    Each entry owns a cancellation token and a timer. The timer only acts if
    the entry it was created for is still the live one, so a stale timer can
    never release or cancel a newer prompt for the same chat.
    """

    def __init__(self, timeout_s: float, scheduler: Scheduler | None = None):
        self.timeout_s = timeout_s
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self._in_flight: dict[int, _InFlight] = {}

    def try_start(
        self,
        chat_id: int,
        reply_to_message_id: int | None,
        on_timeout: TimeoutCallback,
    ) -> CancellationToken | None:
        """Claim the chat. Returns None when a prompt is already in flight."""
        if chat_id in self._in_flight:
            return None

        token = CancellationToken()

        def _fire() -> None:
            entry = self._in_flight.get(chat_id)
            if entry is None or entry.token is not token:
                return
            del self._in_flight[chat_id]
            token.cancel()
            logger.info(f"Prompt for chat {chat_id} timed out after {self.timeout_s}s")
            on_timeout(
                GuardSnapshot(
                    token=token,
                    reply_to_message_id=entry.reply_to_message_id,
                    session_id=entry.session_id,
                )
            )

        timer = self.scheduler.call_later(self.timeout_s, _fire)
        self._in_flight[chat_id] = _InFlight(
            token=token,
            timer=timer,
            reply_to_message_id=reply_to_message_id,
        )
        return token

    def set_session_id(self, chat_id: int, token: CancellationToken, session_id: str) -> None:
        entry = self._in_flight.get(chat_id)
        if entry is None or entry.token is not token:
            return
        entry.session_id = session_id

    def abort(self, chat_id: int) -> GuardSnapshot | None:
        entry = self._in_flight.pop(chat_id, None)
        if entry is None:
            return None
        entry.timer.cancel()
        entry.token.cancel()
        return GuardSnapshot(
            token=entry.token,
            reply_to_message_id=entry.reply_to_message_id,
            session_id=entry.session_id,
        )

    def finish(self, chat_id: int, token: CancellationToken | None = None) -> None:
        """
        Release the chat. Idempotent.

        With ``token`` the entry is only released if it still belongs to that
        token.
        """
        entry = self._in_flight.get(chat_id)
        if entry is None:
            return
        if token is not None and entry.token is not token:
            return
        entry.timer.cancel()
        del self._in_flight[chat_id]

    def is_in_flight(self, chat_id: int) -> bool:
        return chat_id in self._in_flight
