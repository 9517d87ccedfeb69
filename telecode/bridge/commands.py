"""Slash commands: /start, /abort, /reset, /status, /model and /project."""

from typing import TYPE_CHECKING

from loguru import logger

from telecode import __logo__
from telecode.backend.base import ModelRef
from telecode.bridge.render import format_model_list, format_project_list, format_status_reply
from telecode.channels.base import IncomingCommand
from telecode.errors import BridgeError, ModelFormatError
from telecode.session.projects import HOME_PROJECT_ALIAS, resolve_active_project

if TYPE_CHECKING:
    from telecode.bridge.orchestrator import PromptOrchestrator

MODEL_USAGE = "Usage: /model <current|list|set>"
MODEL_SET_USAGE = "Usage: /model set <provider>/<model>"
PROJECT_USAGE = "Usage: /project <list|current|add|remove|set> ..."


class BridgeCommands:
    """Command handlers sharing the orchestrator's stores and backend."""

    def __init__(self, orchestrator: "PromptOrchestrator"):
        self.orchestrator = orchestrator

    async def dispatch(self, cmd: IncomingCommand) -> None:
        handler = {
            "start": self.start,
            "abort": self.abort,
            "reset": self.reset,
            "status": self.status,
            "model": self.model,
            "project": self.project,
        }.get(cmd.command)
        if handler is None:
            logger.debug(f"Ignoring unknown command /{cmd.command}")
            return
        logger.debug(f"Command /{cmd.command} {' '.join(cmd.args)} from chat {cmd.chat_id}")
        await handler(cmd)

    async def _reply(self, cmd: IncomingCommand, text: str, threaded: bool = False) -> None:
        await self.orchestrator.send(
            cmd.chat_id, text, reply_to=cmd.message_id if threaded else None
        )

    async def start(self, cmd: IncomingCommand) -> None:
        await self._reply(cmd, f"{__logo__} telecode is online. Send a message to prompt OpenCode.")

    async def abort(self, cmd: IncomingCommand) -> None:
        await self.orchestrator.abort_prompt(cmd.chat_id, cmd.message_id)

    async def reset(self, cmd: IncomingCommand) -> None:
        o = self.orchestrator
        project = resolve_active_project(cmd.chat_id, o.projects, o.chat_projects)
        if project is None:
            await self._reply(cmd, "Missing project configuration.")
            return
        cleared = o.ownership.clear_session(cmd.chat_id, project.path)
        o.chat_models.clear_model(cmd.chat_id, project.path)
        if cleared:
            await self._reply(cmd, f"Session reset for {project.alias}.")
        else:
            await self._reply(cmd, f"No active session to reset for {project.alias}.")

    async def status(self, cmd: IncomingCommand) -> None:
        o = self.orchestrator
        project = resolve_active_project(cmd.chat_id, o.projects, o.chat_projects)
        if project is None:
            await self._reply(cmd, "Missing project configuration.")
            return
        session_id = o.ownership.get_session_id(cmd.chat_id, project.path)
        if session_id is None:
            await self._reply(
                cmd, f"No OpenCode session yet for {project.alias}. Send a message to start one."
            )
            return

        try:
            stats = await o.backend.get_latest_assistant_stats(session_id, project.path)
            model = stats.model or o.chat_models.get_model(cmd.chat_id, project.path)
            context_limit = None
            if model is not None:
                providers = await o.backend.list_models(project.path)
                provider = next((p for p in providers if p.id == model.provider_id), None)
                info = provider.models.get(model.model_id) if provider else None
                context_limit = info.context_limit if info else None
        except Exception as e:
            logger.error(f"Failed to fetch status for session {session_id}: {e}")
            await self._reply(cmd, "Failed to fetch session status. Check server logs.")
            return

        await self._reply(
            cmd, format_status_reply(project, model, session_id, stats.tokens, context_limit)
        )

    async def model(self, cmd: IncomingCommand) -> None:
        o = self.orchestrator
        sub = cmd.args[0].lower() if cmd.args else "current"
        project = resolve_active_project(cmd.chat_id, o.projects, o.chat_projects)
        if project is None:
            await self._reply(cmd, "Missing project configuration.")
            return

        if sub == "current":
            pinned = o.chat_models.get_model(cmd.chat_id, project.path)
            if pinned is None:
                await self._reply(cmd, "Model unavailable. Send a prompt first or use /model set.")
            else:
                await self._reply(cmd, f"Current model: {pinned}")
            return

        if sub == "list":
            try:
                providers = await o.backend.list_models(project.path)
            except Exception as e:
                logger.error(f"Failed to list models: {e}")
                await self._reply(cmd, str(e) or "Failed to list models.")
                return
            await self._reply(cmd, format_model_list(providers), threaded=True)
            return

        if sub == "set":
            await self._set_model(cmd, project.path)
            return

        await self._reply(cmd, MODEL_USAGE)

    async def _set_model(self, cmd: IncomingCommand, project_dir: str) -> None:
        o = self.orchestrator
        if len(cmd.args) < 2:
            await self._reply(cmd, MODEL_SET_USAGE)
            return
        try:
            ref = ModelRef.parse(cmd.args[1])
        except ModelFormatError:
            await self._reply(cmd, "Model must be in provider/model format. Use /model list.")
            return

        try:
            providers = await o.backend.list_models(project_dir)
        except Exception as e:
            logger.error(f"Failed to change model: {e}")
            await self._reply(cmd, "Unexpected error when changing model. Check server logs.")
            return

        provider = next((p for p in providers if p.id == ref.provider_id), None)
        if provider is None:
            await self._reply(cmd, f"Model provider '{ref.provider_id}' not found. Use /model list.")
            return
        if ref.model_id not in provider.models:
            await self._reply(cmd, f"Model '{ref}' not found. Use /model list.")
            return

        o.chat_models.set_model(cmd.chat_id, project_dir, ref)
        logger.info(f"Chat {cmd.chat_id} set model {ref}")
        await self._reply(cmd, f"Current model set to {ref}.")

    async def project(self, cmd: IncomingCommand) -> None:
        o = self.orchestrator
        sub = cmd.args[0].lower() if cmd.args else "list"
        args = cmd.args[1:]

        try:
            if sub == "list":
                active = o.chat_projects.get_active_alias(cmd.chat_id) or HOME_PROJECT_ALIAS
                await self._reply(cmd, format_project_list(o.projects.list_projects(), active))
            elif sub == "current":
                project = resolve_active_project(cmd.chat_id, o.projects, o.chat_projects)
                if project is None:
                    await self._reply(cmd, "Missing project configuration.")
                else:
                    await self._reply(cmd, f"{project.alias}: {project.path}")
            elif sub == "add":
                if len(args) < 2:
                    await self._reply(cmd, "Usage: /project add <alias> <path>")
                    return
                added = o.projects.add_project(args[0], " ".join(args[1:]))
                await self._reply(cmd, f"Added {added.alias}: {added.path}")
            elif sub == "remove":
                if not args:
                    await self._reply(cmd, "Usage: /project remove <alias>")
                    return
                alias = args[0]
                o.projects.remove_project(alias)
                for chat_id in set(o.chat_projects.chats_using(alias)) | {cmd.chat_id}:
                    if (o.chat_projects.get_active_alias(chat_id) or HOME_PROJECT_ALIAS) == alias:
                        o.chat_projects.set_active_alias(chat_id, HOME_PROJECT_ALIAS)
                await self._reply(cmd, f"Removed {alias}")
            elif sub == "set":
                if not args:
                    await self._reply(cmd, "Usage: /project set <alias>")
                    return
                project = o.projects.get_project(args[0])
                if project is None:
                    await self._reply(cmd, f"Project alias '{args[0]}' not found")
                    return
                o.chat_projects.set_active_alias(cmd.chat_id, project.alias)
                await self._reply(cmd, f"Active project: {project.alias}")
            else:
                await self._reply(cmd, PROJECT_USAGE)
        except (BridgeError, OSError) as e:
            await self._reply(cmd, str(e))
