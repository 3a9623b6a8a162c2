"""
Admin report delivery.

The admin uploads a file with the caption ``/send <order>``; the file is
forwarded to the client who placed that order. Files of the same batch sent
without a caption reuse the last order the admin named. Only the captioned
file completes the order and produces the admin summary.
"""

import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from telegram import Bot

from cash_healer import config, messaging, storage
from cash_healer.logging_utils import log_event
from cash_healer.router import InboundEvent
from cash_healer.state import ADMIN_ORDER_CACHE, AdminOrderCache
from cash_healer.statuses import InvalidTransitionError

logger = logging.getLogger(__name__)

SEND_COMMAND_RE = re.compile(r"/send\s+(\d+)", re.IGNORECASE)

USAGE_TEXT = (
    "❌ Неверный формат команды.\n\n"
    "Используйте: `/send {номер_заказа}`\n\n"
    "Пример: `/send 5`\n\n"
    "💡 При отправке нескольких файлов укажите команду только в подписи первого файла."
)


def parse_send_caption(caption: Optional[str]) -> Optional[int]:
    match = SEND_COMMAND_RE.search(caption or "")
    return int(match.group(1)) if match else None


async def process_admin_document(bot: Bot, event: InboundEvent, cache: AdminOrderCache = ADMIN_ORDER_CACHE) -> bool:
    caption = (event.caption or "").strip()
    order_id = parse_send_caption(caption)
    explicit = order_id is not None

    if explicit:
        cache.set(event.user_id, order_id)
        logger.info("Admin %s targets order %s", event.user_id, order_id)
    elif not caption:
        order_id = cache.get(event.user_id)
        if order_id is not None:
            logger.info("Admin %s continues batch for order %s", event.user_id, order_id)

    if order_id is None:
        await messaging.send_message(bot, event.chat_id, USAGE_TEXT)
        return False

    try:
        order = storage.get_order_by_id(order_id)
    except SQLAlchemyError as exc:
        logger.error("Failed to load order %s: %s", order_id, exc)
        order = None
    if order is None:
        await messaging.send_message(bot, event.chat_id, f"❌ Заказ #{order_id} не найден.", parse_mode=None)
        return False

    try:
        client_chat_id = int(order.telegram_id)
    except ValueError:
        logger.error("Order %s has non-numeric telegram id %r", order_id, order.telegram_id)
        await messaging.send_message(
            bot, event.chat_id, f"❌ Некорректный Telegram ID клиента в заказе #{order_id}.", parse_mode=None
        )
        return False

    service = config.SERVICES.get(order.service_type, {}).get("name", order.service_type)
    caption_for_client = f"📊 *Отчет по заказу #{order_id}*\n\n{service}\n\nВаш отчет готов!"
    sent = await messaging.forward_document(bot, client_chat_id, event.file_id, caption=caption_for_client)
    if sent is None:
        await messaging.send_message(
            bot,
            event.chat_id,
            f"❌ Не удалось отправить файл клиенту по заказу #{order_id}. Попробуйте ещё раз.",
            parse_mode=None,
        )
        return False

    if not explicit:
        logger.info("Additional file %s forwarded for order %s", event.file_name, order_id)
        return True

    try:
        completed = storage.mark_report_sent(order_id)
    except (SQLAlchemyError, InvalidTransitionError) as exc:
        # файл уже у клиента, статус поправит оператор
        logger.error("Report for order %s delivered but status not updated: %s", order_id, exc)
        completed = None

    if completed is not None:
        status_line = "Статус заказа обновлен на \"completed\""
    else:
        status_line = f"Файл доставлен, статус не изменён: {order.status}"

    log_event(
        event.user_id,
        "report_sent",
        {
            "order_id": order_id,
            "client_id": order.telegram_id,
            "file_name": event.file_name,
            "status_updated": completed is not None,
        },
        stage="admin",
    )
    await messaging.send_message(
        bot,
        event.chat_id,
        "✅ *Отчет отправлен*\n\n"
        f"📋 Заказ: #{order_id}\n"
        f"👤 Клиент: {order.telegram_id}\n"
        f"📄 Файл: {event.file_name or 'document'}\n\n"
        + status_line,
        parse_mode=None,
    )
    return True
