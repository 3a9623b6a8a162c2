# main.py
# CashHealer: Telegram-бот заказов и оплат + HTTP API мини-приложения
# Зависимости: pip install -e .

import asyncio
import logging
from typing import Optional

import uvicorn
from telegram import Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from cash_healer import config, messaging, storage
from cash_healer.logging_utils import setup_logging
from cash_healer.router import EventKind, InboundEvent
from cash_healer.webapp import create_app
from cash_healer.workflow import GENERIC_ERROR_TEXT, run_event

logger = logging.getLogger("cash_healer.main")


# ------------------------------
# 🔁 UPDATE -> INBOUND EVENT
# ------------------------------
def event_from_message(update: Update) -> Optional[InboundEvent]:
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None:
        return None
    event = InboundEvent(
        kind=EventKind.MESSAGE,
        chat_id=message.chat_id,
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        text=message.text,
        message_id=message.message_id,
    )
    if message.document:
        event.kind = EventKind.DOCUMENT
        event.file_id = message.document.file_id
        event.file_name = message.document.file_name
        event.file_size = message.document.file_size
        event.caption = message.caption
    return event


def event_from_callback(update: Update) -> Optional[InboundEvent]:
    query = update.callback_query
    if query is None:
        return None
    user = query.from_user
    return InboundEvent(
        kind=EventKind.CALLBACK,
        chat_id=query.message.chat_id if query.message else user.id,
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        message_id=query.message.message_id if query.message else None,
        callback_query_id=query.id,
        callback_data=query.data,
    )


# ------------------------------
# 📬 HANDLERS
# ------------------------------
async def callback_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    event = event_from_callback(update)
    if event is None:
        return
    # кнопка перестаёт «крутиться» сразу, проверка оплаты может занять время
    await messaging.answer_callback(context.bot, event.callback_query_id)
    await run_event(context.bot, event)


async def message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    event = event_from_message(update)
    if event is None:
        return
    await run_event(context.bot, event)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Exception while handling an update", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(GENERIC_ERROR_TEXT)
        except TelegramError as exc:
            logger.error("Could not reply after error: %s", exc)


def build_application() -> Application:
    app = ApplicationBuilder().token(config.TELEGRAM_TOKEN).concurrent_updates(True).build()

    # Callback-кнопки
    app.add_handler(CallbackQueryHandler(callback_handler))

    # Документы (отчёты админа), раньше текста
    app.add_handler(MessageHandler(filters.Document.ALL, message_handler))

    # Текст и команды (/start, /help, /admin)
    app.add_handler(MessageHandler(filters.TEXT, message_handler))

    # Ошибки
    app.add_error_handler(error_handler)
    return app


# ------------------------------
# ▶️ MAIN
# ------------------------------
async def run():
    application = build_application()
    server = uvicorn.Server(
        uvicorn.Config(create_app(), host=config.WEBAPP_HOST, port=config.WEBAPP_PORT, log_level="info")
    )
    async with application:
        await application.start()
        await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        logger.info("🤖 Бот запущен, мини-приложение на %s:%s", config.WEBAPP_HOST, config.WEBAPP_PORT)
        try:
            await server.serve()
        finally:
            await application.updater.stop()
            await application.stop()


def main():
    setup_logging()
    config.require_credentials()
    storage.init_db()
    asyncio.run(run())


if __name__ == "__main__":
    main()
