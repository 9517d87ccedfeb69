"""Telegram channel implementation using python-telegram-bot."""

import asyncio

from loguru import logger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyParameters, Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from telecode.channels.base import (
    BaseChannel,
    CallbackPress,
    IncomingCommand,
    IncomingFile,
    IncomingText,
    Keyboard,
)
from telecode.config.schema import TelegramConfig

COMMANDS = ["start", "abort", "reset", "status", "model", "project"]
NOT_AUTHORIZED = "Not authorized."


def _to_markup(buttons: Keyboard | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(b.text, callback_data=b.data) for b in row] for row in buttons]
    )


class TelegramChannel(BaseChannel):
    """
    Telegram channel using long polling.

    Simple and reliable - no webhook/public IP needed.
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig, message_limit: int = 4096):
        super().__init__(config, message_limit=message_limit)
        self.config: TelegramConfig = config
        self._app: Application | None = None
        self._typing_tasks: dict[int, asyncio.Task[None]] = {}
        self._typing_interval_s: float = 4.0

    async def start(self) -> None:
        """Start the Telegram bot with long polling."""
        if not self.config.bot_token:
            logger.error("Telegram bot token not configured")
            return

        self._running = True

        builder = Application.builder().token(self.config.bot_token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()

        self._app.add_handler(CommandHandler(COMMANDS, self._on_command))
        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_text))
        self._app.add_handler(MessageHandler(filters.PHOTO | filters.Document.ALL, self._on_file))
        self._app.add_handler(CallbackQueryHandler(self._on_callback))

        logger.info("Starting Telegram bot (polling mode)...")

        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        logger.info(f"Telegram bot @{bot_info.username} connected")

        await self._app.updater.start_polling(
            allowed_updates=["message", "callback_query"],
            drop_pending_updates=True,
        )

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False

        if self._app:
            logger.info("Stopping Telegram bot...")
            for chat_id in list(self._typing_tasks.keys()):
                self.stop_typing(chat_id)
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    async def _send_chunk(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None,
        buttons: Keyboard | None,
    ) -> int | None:
        if not self._app:
            logger.warning("Telegram bot not running")
            return None
        reply_parameters = None
        if reply_to is not None:
            reply_parameters = ReplyParameters(
                message_id=reply_to, allow_sending_without_reply=True
            )
        message = await self._app.bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_parameters=reply_parameters,
            reply_markup=_to_markup(buttons),
        )
        return getattr(message, "message_id", None)

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        buttons: Keyboard | None = None,
    ) -> None:
        if not self._app:
            logger.warning("Telegram bot not running")
            return
        await self._app.bot.edit_message_text(
            chat_id=chat_id,
            message_id=message_id,
            text=text[: self.message_limit],
            reply_markup=_to_markup(buttons),
        )

    async def download_file(self, file_id: str) -> bytes:
        if not self._app:
            raise RuntimeError("Telegram bot not running")
        file = await self._app.bot.get_file(file_id)
        data = await file.download_as_bytearray()
        return bytes(data)

    def start_typing(self, chat_id: int) -> None:
        if not self._app or chat_id in self._typing_tasks:
            return

        async def _loop() -> None:
            while self._running and self._app:
                try:
                    await self._app.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
                except Exception:
                    return
                await asyncio.sleep(self._typing_interval_s)

        self._typing_tasks[chat_id] = asyncio.create_task(_loop())

    def stop_typing(self, chat_id: int) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task and not task.done():
            task.cancel()

    async def _authorize(self, update: Update) -> bool:
        user = update.effective_user
        if user is not None and self.is_allowed(user.id):
            return True
        logger.warning(f"Access denied for user {user.id if user else '?'} on channel {self.name}")
        if update.callback_query:
            await update.callback_query.answer(NOT_AUTHORIZED)
        elif update.effective_message:
            await update.effective_message.reply_text(NOT_AUTHORIZED)
        return False

    async def _on_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        if not message or not self.handler or not await self._authorize(update):
            return
        raw = (message.text or "").strip()
        parts = raw.split()
        if not parts or not parts[0].startswith("/"):
            return
        command = parts[0][1:].split("@", 1)[0].lower()
        await self.handler.handle_command(
            IncomingCommand(
                chat_id=message.chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id,
                command=command,
                args=parts[1:],
            )
        )

    async def _on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        if not message or not self.handler or not await self._authorize(update):
            return
        logger.debug(f"Telegram message in chat {message.chat_id}: {(message.text or '')[:50]}...")
        await self.handler.handle_text(
            IncomingText(
                chat_id=message.chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id,
                text=message.text or "",
            )
        )

    async def _on_file(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        if not message or not self.handler or not await self._authorize(update):
            return
        if message.photo:
            photo = message.photo[-1]  # Largest size
            incoming = IncomingFile(
                chat_id=message.chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id,
                file_id=photo.file_id,
                kind="photo",
                mime="image/jpeg",
                size=photo.file_size,
                caption=message.caption or "",
            )
        elif message.document:
            document = message.document
            incoming = IncomingFile(
                chat_id=message.chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id,
                file_id=document.file_id,
                kind="document",
                mime=document.mime_type,
                filename=document.file_name,
                size=document.file_size,
                caption=message.caption or "",
            )
        else:
            return
        await self.handler.handle_file(incoming)

    async def _on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if not query or not self.handler or not await self._authorize(update):
            return
        message = query.message
        chat_id = message.chat.id if message else (update.effective_chat.id if update.effective_chat else None)
        if chat_id is None:
            await query.answer("Missing chat context.")
            return
        toast = await self.handler.handle_callback(
            CallbackPress(
                chat_id=chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id if message else 0,
                data=query.data or "",
            )
        )
        await query.answer(toast or None)
