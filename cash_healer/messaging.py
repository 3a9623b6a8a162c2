import asyncio
import logging
from typing import List, Optional, Sequence

from telegram import Bot
from telegram.error import BadRequest, TelegramError

from cash_healer.keyboards import ButtonSpec, build_inline_keyboard

logger = logging.getLogger(__name__)

DEFAULT_PARSE_MODE = "Markdown"


def split_for_telegram(text: str, chunk_size: int = 3500) -> List[str]:
    cleaned = (text or "").replace("\x00", " ").strip()
    if not cleaned:
        return ["(пустой ответ)"]
    parts: List[str] = []
    remaining = cleaned
    while remaining:
        if len(remaining) <= chunk_size:
            parts.append(remaining)
            break
        split_idx = remaining.rfind("\n", 0, chunk_size)
        if split_idx == -1 or split_idx < chunk_size * 0.5:
            split_idx = remaining.rfind(" ", 0, chunk_size)
        if split_idx == -1 or split_idx < chunk_size * 0.5:
            split_idx = chunk_size
        parts.append(remaining[:split_idx].strip())
        remaining = remaining[split_idx:].lstrip()
    return [p for p in parts if p]


async def send_message(
    bot: Bot,
    chat_id: int,
    text: str,
    inline_keyboard: Optional[Sequence[Sequence[ButtonSpec]]] = None,
    parse_mode: Optional[str] = DEFAULT_PARSE_MODE,
) -> Optional[int]:
    """
    Sends a text message, optionally with inline buttons.

    Returns the message id, or None when Telegram rejects the request (400:
    chat not found, broken markup). Other Telegram errors are re-raised.
    """
    try:
        message = await bot.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode=parse_mode,
            reply_markup=build_inline_keyboard(inline_keyboard),
            disable_web_page_preview=True,
        )
    except BadRequest as exc:
        logger.warning("Telegram rejected message to chat %s: %s", chat_id, exc)
        return None
    except TelegramError:
        logger.exception("Failed to send message to chat %s", chat_id)
        raise
    return message.message_id


async def send_split_text(bot: Bot, chat_id: int, text: str, *, parse_mode: Optional[str] = None) -> List[int]:
    message_ids: List[int] = []
    for chunk in split_for_telegram(text):
        message_id = await send_message(bot, chat_id, chunk, parse_mode=parse_mode)
        if message_id is not None:
            message_ids.append(message_id)
        await asyncio.sleep(0.4)
    return message_ids


async def forward_document(bot: Bot, chat_id: int, file_id: str, caption: Optional[str] = None) -> Optional[int]:
    """Пересылает уже загруженный в Telegram файл по file_id, без повторной загрузки."""
    try:
        message = await bot.send_document(
            chat_id=chat_id,
            document=file_id,
            caption=caption,
            parse_mode=DEFAULT_PARSE_MODE if caption else None,
        )
    except TelegramError as exc:
        logger.error("Failed to forward document %s to chat %s: %s", file_id, chat_id, exc)
        return None
    return message.message_id


async def answer_callback(bot: Bot, callback_query_id: str, text: Optional[str] = None, show_alert: bool = False) -> bool:
    try:
        await bot.answer_callback_query(callback_query_id=callback_query_id, text=text, show_alert=show_alert)
    except TelegramError as exc:
        logger.error("Failed to answer callback query %s: %s", callback_query_id, exc)
        return False
    return True


async def edit_message(
    bot: Bot,
    chat_id: int,
    message_id: int,
    text: str,
    inline_keyboard: Optional[Sequence[Sequence[ButtonSpec]]] = None,
    parse_mode: Optional[str] = DEFAULT_PARSE_MODE,
) -> bool:
    try:
        await bot.edit_message_text(
            text=text,
            chat_id=chat_id,
            message_id=message_id,
            parse_mode=parse_mode,
            reply_markup=build_inline_keyboard(inline_keyboard),
        )
    except TelegramError as exc:
        logger.error("Failed to edit message %s in chat %s: %s", message_id, chat_id, exc)
        return False
    return True
