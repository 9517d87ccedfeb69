import asyncio

from fakes import HOME, Bridge, wait_until
from telecode.backend.events import (
    PermissionAsked,
    PermissionRequest,
    QuestionAsked,
    QuestionItem,
    QuestionOption,
    QuestionRequest,
    UnknownEvent,
)

CHAT = 10


def _permission(request_id: str, session_id: str = "session-1") -> PermissionAsked:
    return PermissionAsked(
        request=PermissionRequest(id=request_id, session_id=session_id, permission="edit"),
        directory=HOME,
    )


def _question(request_id: str, session_id: str = "session-1", items=None) -> QuestionAsked:
    if items is None:
        items = [QuestionItem(question="Go?", options=[QuestionOption("yes")])]
    return QuestionAsked(
        request=QuestionRequest(id=request_id, session_id=session_id, questions=items),
        directory=HOME,
    )


async def test_events_for_unowned_sessions_are_dropped() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")

    await bridge.multiplexer.dispatch(_permission("perm-x", session_id="unknown"))
    await bridge.multiplexer.dispatch(_question("q-x", session_id="unknown"))

    assert bridge.channel.sent == []
    assert bridge.permissions.get("perm-x") is None
    assert bridge.questions.get("q-x") is None
    assert bridge.backend.question_rejects == []


async def test_second_question_for_chat_is_rejected() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")

    await bridge.multiplexer.dispatch(_question("q-1"))
    await bridge.multiplexer.dispatch(_question("q-2"))

    assert bridge.backend.question_rejects == [("q-2", HOME)]
    assert bridge.questions.get_for_chat(CHAT).request_id == "q-1"
    assert len(bridge.channel.sent) == 1


async def test_question_without_items_is_rejected() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")

    await bridge.multiplexer.dispatch(_question("q-empty", items=[]))

    assert bridge.backend.question_rejects == [("q-empty", HOME)]
    assert not bridge.questions.has_open(CHAT)


async def test_question_message_carries_keyboard() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")

    await bridge.multiplexer.dispatch(_question("q-1"))

    sent = bridge.channel.sent[0]
    assert sent["text"].startswith("OpenCode question\nGo?")
    assert [[b.data for b in row] for row in sent["buttons"]] == [["q:q-1:opt:0"], ["q:q-1:cancel"]]
    assert bridge.questions.get("q-1").message_id == sent["message_id"]


async def test_unknown_events_are_ignored() -> None:
    bridge = Bridge()

    await bridge.multiplexer.dispatch(UnknownEvent(type="session.updated", directory=HOME))

    assert bridge.channel.sent == []


async def test_run_routes_streamed_events_in_order() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.backend.streams = [[_permission("perm-1"), UnknownEvent("x"), _permission("perm-2")]]

    bridge.multiplexer.start()
    await wait_until(lambda: bridge.permissions.get("perm-2") is not None)
    await bridge.multiplexer.stop()

    assert [p.request_id for p in bridge.permissions.list_for_chat(CHAT)] == ["perm-1", "perm-2"]


async def test_run_reconnects_after_stream_error() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.backend.streams = [RuntimeError("connection refused"), [_permission("perm-1")]]

    bridge.multiplexer.start()
    await wait_until(lambda: bridge.permissions.get("perm-1") is not None)
    await bridge.multiplexer.stop()

    assert bridge.backend.stream_opens >= 2


async def test_dispatch_failure_does_not_stop_the_stream() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.channel.fail_sends = True
    bridge.backend.streams = [[_permission("perm-1"), _question("q-1")]]

    bridge.multiplexer.start()
    await wait_until(lambda: bridge.backend.stream_opens >= 2)
    await bridge.multiplexer.stop()

    assert bridge.permissions.get("perm-1") is None
    assert bridge.questions.get("q-1") is None


async def test_stop_interrupts_retry_wait() -> None:
    bridge = Bridge()
    bridge.multiplexer.retry_delay_s = 60
    bridge.backend.streams = [RuntimeError("down")]

    task = bridge.multiplexer.start()
    await wait_until(lambda: bridge.backend.stream_opens == 1)
    await asyncio.wait_for(bridge.multiplexer.stop(), timeout=1)

    assert task.done()
    assert bridge.backend.stream_opens == 1


async def test_question_is_rejected_when_it_cannot_be_delivered() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.channel.fail_sends = True

    await bridge.multiplexer.dispatch(_question("q-1"))

    assert bridge.backend.question_rejects == [("q-1", HOME)]
    assert not bridge.questions.has_open(CHAT)
