from pathlib import Path

from fakes import HOME, Bridge
from telecode.backend.base import AssistantStats, ModelInfo, ModelRef, ProviderInfo, TokenUsage
from telecode.bridge.commands import MODEL_SET_USAGE, MODEL_USAGE, PROJECT_USAGE
from telecode.channels.base import IncomingCommand, IncomingText

CHAT = 10


def _cmd(command: str, *args: str, message_id: int = 70) -> IncomingCommand:
    return IncomingCommand(chat_id=CHAT, user_id=1, message_id=message_id, command=command, args=list(args))


async def _run(bridge: Bridge, command: str, *args: str) -> str:
    await bridge.orchestrator.handle_command(_cmd(command, *args))
    return bridge.channel.sent[-1]["text"]


def _with_models(bridge: Bridge) -> None:
    bridge.backend.providers = [
        ProviderInfo(id="openai", name="OpenAI", models={"gpt-5": ModelInfo("gpt-5", "GPT-5")}),
    ]


async def test_start_greets() -> None:
    bridge = Bridge()
    assert "Send a message to prompt OpenCode." in await _run(bridge, "start")


async def test_reset_clears_session_and_pinned_model() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.chat_models.set_model(CHAT, HOME, ModelRef("openai", "gpt-5"))

    assert await _run(bridge, "reset") == "Session reset for home."
    assert bridge.ownership.get_session_id(CHAT, HOME) is None
    assert bridge.ownership.get_owner("session-1") is None
    assert bridge.chat_models.get_model(CHAT, HOME) is None

    assert await _run(bridge, "reset") == "No active session to reset for home."


async def test_status_without_session_skips_backend() -> None:
    bridge = Bridge()

    text = await _run(bridge, "status")

    assert text.startswith("No OpenCode session yet")
    assert bridge.backend.stats_calls == []


async def test_status_reports_context_usage_of_last_reply() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.backend.providers = [
        ProviderInfo(id="openai", models={"gpt-5": ModelInfo("gpt-5", context_limit=8000)}),
    ]
    bridge.backend.assistant_stats = AssistantStats(
        model=ModelRef("openai", "gpt-5"),
        tokens=TokenUsage(input=1000, output=200),
    )

    text = await _run(bridge, "status")

    assert bridge.backend.stats_calls == [("session-1", HOME)]
    assert text.splitlines() == [
        f"Project: home: {HOME}",
        "Model: openai/gpt-5",
        "Session: session-1",
        "Context (input): 1000 / 8000 (12.5%)",
        "Tokens (last assistant): in=1000 out=200 reasoning=0 cache(r/w)=0/0",
    ]


async def test_status_before_first_reply_uses_pinned_model_limit() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.chat_models.set_model(CHAT, HOME, ModelRef("openai", "gpt-5"))
    bridge.backend.providers = [
        ProviderInfo(id="openai", models={"gpt-5": ModelInfo("gpt-5", context_limit=8192)}),
    ]

    text = await _run(bridge, "status")

    assert text.endswith("Context (input): unavailable (no assistant message yet). Limit: 8192")


async def test_status_reports_listing_failure() -> None:
    bridge = Bridge()
    bridge.ownership.set_session_id(CHAT, HOME, "session-1")
    bridge.backend.assistant_stats = AssistantStats(model=ModelRef("openai", "gpt-5"))
    bridge.backend.list_models_error = RuntimeError("boom")

    assert await _run(bridge, "status") == "Failed to fetch session status. Check server logs."


async def test_model_current_before_and_after_pinning() -> None:
    bridge = Bridge()

    assert await _run(bridge, "model") == "Model unavailable. Send a prompt first or use /model set."

    bridge.chat_models.set_model(CHAT, HOME, ModelRef("openai", "gpt-5"))
    assert await _run(bridge, "model", "current") == "Current model: openai/gpt-5"


async def test_model_list_is_threaded_to_command() -> None:
    bridge = Bridge()
    _with_models(bridge)

    text = await _run(bridge, "model", "list")

    assert text == "Available models:\nopenai/gpt-5 (GPT-5)"
    assert bridge.channel.sent[-1]["reply_to"] == 70


async def test_model_set_validation_order() -> None:
    bridge = Bridge()
    _with_models(bridge)

    assert await _run(bridge, "model", "set") == MODEL_SET_USAGE
    assert await _run(bridge, "model", "set", "gpt-5") == (
        "Model must be in provider/model format. Use /model list."
    )
    assert await _run(bridge, "model", "set", "mistral/large") == (
        "Model provider 'mistral' not found. Use /model list."
    )
    assert await _run(bridge, "model", "set", "openai/gpt-9") == (
        "Model 'openai/gpt-9' not found. Use /model list."
    )
    assert bridge.chat_models.get_model(CHAT, HOME) is None

    assert await _run(bridge, "model", "set", "openai/gpt-5") == "Current model set to openai/gpt-5."
    assert bridge.chat_models.get_model(CHAT, HOME) == ModelRef("openai", "gpt-5")


async def test_model_set_reports_listing_failure() -> None:
    bridge = Bridge()
    bridge.backend.list_models_error = RuntimeError("offline")

    assert await _run(bridge, "model", "set", "openai/gpt-5") == (
        "Unexpected error when changing model. Check server logs."
    )
    assert await _run(bridge, "model", "frobnicate") == MODEL_USAGE


async def test_project_add_set_and_remove(tmp_path: Path) -> None:
    bridge = Bridge()
    project_dir = tmp_path / "api"
    project_dir.mkdir()

    assert await _run(bridge, "project", "add", "api", str(project_dir)) == f"Added api: {project_dir.resolve()}"
    assert await _run(bridge, "project", "set", "api") == "Active project: api"
    assert await _run(bridge, "project", "current") == f"api: {project_dir.resolve()}"
    assert await _run(bridge, "project") == (
        f"Projects (active marked with *):\n  home: {HOME}\n* api: {project_dir.resolve()}"
    )

    assert await _run(bridge, "project", "remove", "api") == "Removed api"
    assert bridge.chat_projects.get_active_alias(CHAT) == "home"


async def test_project_errors_are_shown_verbatim(tmp_path: Path) -> None:
    bridge = Bridge()

    assert await _run(bridge, "project", "add", "home", str(tmp_path)) == (
        "Cannot add project using reserved alias 'home'"
    )
    assert (await _run(bridge, "project", "add", "x", str(tmp_path / "nope"))).startswith(
        "Project path does not exist:"
    )
    assert await _run(bridge, "project", "set", "ghost") == "Project alias 'ghost' not found"
    assert await _run(bridge, "project", "remove", "ghost") == "Project alias 'ghost' not found"
    assert await _run(bridge, "project", "remove", "home") == "Cannot remove the home project"
    assert await _run(bridge, "project", "add", "only-alias") == "Usage: /project add <alias> <path>"
    assert await _run(bridge, "project", "rename") == PROJECT_USAGE


async def test_prompt_after_project_switch_uses_project_directory(tmp_path: Path) -> None:
    bridge = Bridge()
    bridge.projects.add_project("api", str(tmp_path))
    bridge.chat_projects.set_active_alias(CHAT, "api")

    await bridge.orchestrator.handle_text(IncomingText(CHAT, 1, 80, "hi"))
    await bridge.orchestrator.wait_idle()

    assert bridge.backend.sessions_created == [str(tmp_path.resolve())]
    assert bridge.ownership.get_owner("session-1").project_dir == str(tmp_path.resolve())
