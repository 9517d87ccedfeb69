"""OpenCode HTTP API client."""

import json
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx
from loguru import logger

from telecode.backend.base import (
    AssistantStats,
    Backend,
    ModelInfo,
    ModelRef,
    PermissionDecision,
    PromptInput,
    PromptResult,
    ProviderInfo,
    TokenUsage,
)
from telecode.backend.events import BackendEvent, parse_global_event
from telecode.config.schema import OpenCodeConfig
from telecode.errors import (
    BackendRequestError,
    ModelCapabilityError,
    ModelFormatError,
    ModelModalitiesError,
    OperationCancelledError,
)

if TYPE_CHECKING:
    from telecode.bridge.guard import CancellationToken

DEFAULT_TIMEOUT_S = 30.0


def extract_text(parts: list[dict[str, Any]]) -> str:
    """Join the non-empty text parts of a reply."""
    texts = [
        str(part.get("text") or "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text"
    ]
    return "\n".join(t for t in texts if t.strip()).strip()


def _format_provider_error(error: Any) -> str | None:
    if not isinstance(error, dict):
        return None
    data = error.get("data") if isinstance(error.get("data"), dict) else {}
    message = str(data.get("message") or error.get("message") or error.get("name") or "").strip()
    if not message:
        return None
    status = data.get("statusCode")
    if status is not None:
        return f"OpenCode provider error ({status}): {message}"
    return f"OpenCode provider error: {message}"


def extract_provider_error(response: dict[str, Any]) -> str | None:
    """Find a provider failure in a retry part or in the message info."""
    for part in response.get("parts") or []:
        if isinstance(part, dict) and part.get("type") == "retry":
            formatted = _format_provider_error(part.get("error"))
            if formatted:
                return formatted
    info = response.get("info")
    if isinstance(info, dict):
        return _format_provider_error(info.get("error"))
    return None


def _find_model(providers: list[ProviderInfo], model: ModelRef) -> dict[str, Any] | None:
    for provider in providers:
        if provider.id == model.provider_id:
            info = provider.raw_models.get(model.model_id)
            return info if isinstance(info, dict) else None
    return None


def model_supports_image(providers: list[ProviderInfo], model: ModelRef) -> bool:
    info = _find_model(providers, model)
    if info is None:
        return False
    capabilities = info.get("capabilities") or {}
    return bool((capabilities.get("input") or {}).get("image"))


def model_supports_pdf(providers: list[ProviderInfo], model: ModelRef) -> bool:
    info = _find_model(providers, model)
    if info is None:
        return False
    modalities = info.get("modalities")
    if not isinstance(modalities, dict) or not isinstance(modalities.get("input"), list):
        raise ModelModalitiesError("Model does not expose modalities, can't check for PDF support")
    return "pdf" in modalities["input"]


def _context_limit(model: Any) -> int | None:
    limit = model.get("limit") if isinstance(model, dict) else None
    value = limit.get("context") if isinstance(limit, dict) else None
    return value if isinstance(value, int) and value > 0 else None


def _count(value: Any) -> int:
    return value if isinstance(value, int) else 0


def parse_assistant_stats(messages: Any) -> AssistantStats:
    """Stats of the last assistant message in a ``/session/{id}/message`` listing."""
    for message in reversed(messages if isinstance(messages, list) else []):
        info = message.get("info") if isinstance(message, dict) else None
        if not isinstance(info, dict) or info.get("role") != "assistant":
            continue
        model = None
        if info.get("providerID") and info.get("modelID"):
            model = ModelRef(provider_id=str(info["providerID"]), model_id=str(info["modelID"]))
        tokens = None
        raw = info.get("tokens")
        if isinstance(raw, dict):
            cache = raw.get("cache") if isinstance(raw.get("cache"), dict) else {}
            tokens = TokenUsage(
                input=_count(raw.get("input")),
                output=_count(raw.get("output")),
                reasoning=_count(raw.get("reasoning")),
                cache_read=_count(cache.get("read")),
                cache_write=_count(cache.get("write")),
            )
        return AssistantStats(model=model, tokens=tokens)
    return AssistantStats()


class OpenCodeBackend(Backend):
    """
    Talks to an OpenCode server over HTTP.

    Every call carries the project directory as the ``directory`` query
    parameter; Basic auth is added when a server password is configured.
    """

    def __init__(self, config: OpenCodeConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        auth = None
        if config.server_password:
            auth = httpx.BasicAuth(config.server_username, config.server_password)
        self._client = httpx.AsyncClient(
            base_url=config.server_url,
            auth=auth,
            timeout=DEFAULT_TIMEOUT_S,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        label: str,
        directory: str | None = None,
        body: Any = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT,
    ) -> Any:
        params = {"directory": directory} if directory else None
        try:
            response = await self._client.request(
                method, path, params=params, json=body, timeout=timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendRequestError(
                f"OpenCode {label} failed ({e.response.status_code})"
            ) from e
        except httpx.HTTPError as e:
            raise BackendRequestError(f"OpenCode {label} failed: {e}") from e
        if not response.content:
            raise BackendRequestError(f"OpenCode {label} failed")
        try:
            data = response.json()
        except ValueError as e:
            raise BackendRequestError(f"OpenCode {label} returned invalid JSON") from e
        if data is None:
            raise BackendRequestError(f"OpenCode {label} failed")
        return data

    async def create_session(self, project_dir: str, title: str) -> str:
        data = await self._request(
            "POST", "/session", "session.create", directory=project_dir, body={"title": title}
        )
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise BackendRequestError("OpenCode session.create failed")
        logger.info(f"Created OpenCode session {session_id} in {project_dir}")
        return str(session_id)

    async def _resolve_model(self, project_dir: str, model: ModelRef | None) -> ModelRef:
        if model is not None:
            return model
        config = await self._request("GET", "/config", "config.get", directory=project_dir)
        value = config.get("model") if isinstance(config, dict) else None
        if not value:
            raise ModelFormatError("OpenCode config has no default model configured")
        return ModelRef.parse(str(value))

    async def _check_capabilities(
        self, project_dir: str, prompt_input: PromptInput, model: ModelRef | None
    ) -> None:
        needs_image = any(f.mime.startswith("image/") for f in prompt_input.files)
        needs_pdf = any(f.mime == "application/pdf" for f in prompt_input.files)
        resolved = await self._resolve_model(project_dir, model)
        providers = await self.list_models(project_dir)
        if needs_image and not model_supports_image(providers, resolved):
            raise ModelCapabilityError(f"Model {resolved} does not support image input.")
        if needs_pdf and not model_supports_pdf(providers, resolved):
            raise ModelCapabilityError(f"Model {resolved} does not support PDF input.")

    async def _prompt(
        self,
        session_id: str,
        project_dir: str,
        prompt_input: PromptInput,
        model: ModelRef | None,
    ) -> PromptResult:
        if prompt_input.files:
            await self._check_capabilities(project_dir, prompt_input, model)

        parts: list[dict[str, Any]] = [{"type": "text", "text": prompt_input.text}]
        for f in prompt_input.files:
            part: dict[str, Any] = {"type": "file", "mime": f.mime, "url": f.data_url}
            if f.filename:
                part["filename"] = f.filename
            parts.append(part)

        body: dict[str, Any] = {"parts": parts}
        if model is not None:
            body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}

        response = await self._request(
            "POST",
            f"/session/{session_id}/message",
            "session.prompt",
            directory=project_dir,
            body=body,
            timeout=self.config.request_timeout_s,
        )
        if not isinstance(response, dict):
            raise BackendRequestError("OpenCode session.prompt failed")

        reply = extract_text(response.get("parts") or [])
        if not reply:
            provider_error = extract_provider_error(response)
            if provider_error:
                raise BackendRequestError(provider_error)
            raise BackendRequestError("OpenCode returned no text output.")

        info = response.get("info")
        used: ModelRef | None = None
        if isinstance(info, dict) and info.get("providerID") and info.get("modelID"):
            used = ModelRef(provider_id=str(info["providerID"]), model_id=str(info["modelID"]))
        return PromptResult(reply=reply, model=used)

    async def prompt(
        self,
        session_id: str,
        project_dir: str,
        prompt_input: PromptInput,
        cancel_token: "CancellationToken | None" = None,
        model: ModelRef | None = None,
    ) -> PromptResult:
        call = self._prompt(session_id, project_dir, prompt_input, model)
        if cancel_token is None:
            return await call
        # The server keeps working after we stop waiting; only the HTTP call is dropped.
        return await cancel_token.run(call)

    async def abort_session(self, session_id: str, project_dir: str) -> bool:
        data = await self._request(
            "POST", f"/session/{session_id}/abort", "session.abort", directory=project_dir
        )
        return bool(data)

    async def list_models(self, project_dir: str) -> list[ProviderInfo]:
        data = await self._request(
            "GET", "/config/providers", "config.providers", directory=project_dir
        )
        providers: list[ProviderInfo] = []
        for raw in (data.get("providers") if isinstance(data, dict) else None) or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            raw_models = raw.get("models") if isinstance(raw.get("models"), dict) else {}
            providers.append(
                ProviderInfo(
                    id=str(raw["id"]),
                    name=str(raw.get("name") or ""),
                    models={
                        key: ModelInfo(
                            id=key,
                            name=str(value.get("name") or "") if isinstance(value, dict) else "",
                            context_limit=_context_limit(value),
                        )
                        for key, value in raw_models.items()
                    },
                    raw_models=raw_models,
                )
            )
        return providers

    async def get_latest_assistant_stats(self, session_id: str, project_dir: str) -> AssistantStats:
        data = await self._request(
            "GET", f"/session/{session_id}/message", "session.messages", directory=project_dir
        )
        return parse_assistant_stats(data)

    async def reply_to_permission(
        self,
        request_id: str,
        decision: PermissionDecision,
        directory: str | None = None,
    ) -> bool:
        data = await self._request(
            "POST",
            f"/permission/{request_id}/reply",
            "permission.reply",
            directory=directory,
            body={"reply": decision},
        )
        return bool(data)

    async def reply_to_question(
        self,
        request_id: str,
        answers: list[list[str]],
        directory: str | None = None,
    ) -> bool:
        data = await self._request(
            "POST",
            f"/question/{request_id}/reply",
            "question.reply",
            directory=directory,
            body={"answers": answers},
        )
        return bool(data)

    async def reject_question(self, request_id: str, directory: str | None = None) -> bool:
        data = await self._request(
            "POST", f"/question/{request_id}/reject", "question.reject", directory=directory
        )
        return bool(data)

    async def open_event_stream(
        self, cancel_token: "CancellationToken | None" = None
    ) -> AsyncIterator[BackendEvent]:
        """Yield events from ``/global/event`` (server-sent events, JSON data lines)."""
        async with self._client.stream("GET", "/global/event", timeout=None) as response:
            response.raise_for_status()
            logger.info("Connected to OpenCode event stream")
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if cancel_token is not None and cancel_token.cancelled:
                    raise OperationCancelledError("Event stream cancelled")
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line.strip() or not data_lines:
                    continue
                raw, data_lines = "\n".join(data_lines), []
                try:
                    item = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping non-JSON event data: {raw[:80]}")
                    continue
                if isinstance(item, dict):
                    yield parse_global_event(item)
