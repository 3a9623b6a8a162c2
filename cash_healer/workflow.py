"""
Order lifecycle: one run per inbound Telegram event.

ensure user -> route action -> one lifecycle step. Steps talk to YooKassa
through ``payments``, to the database through ``storage`` and to the user
through ``messaging``.

Payment confirmation writes the order status first and the payment status
second. If the second write fails the order is rolled back to
``payment_pending``; a payment is therefore never ``succeeded`` while its order
still waits for payment, which would let the user confirm again and receive the
service twice.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from telegram import Bot
from telegram.error import TelegramError
from telegram.helpers import escape_markdown

from cash_healer import admin_documents, config, messaging, payments, storage
from cash_healer.gpt_client import ask_gpt_with_typing
from cash_healer.keyboards import calculator_buttons, payment_confirm_buttons, services_menu
from cash_healer.logging_utils import log_event
from cash_healer.models import User
from cash_healer.router import Action, EventKind, InboundEvent, route_action
from cash_healer.statuses import InvalidTransitionError, OrderStatus, PaymentStatus, ServiceType

logger = logging.getLogger(__name__)

GENERIC_ERROR_TEXT = "Ой! Сервисная ошибка. Попробуйте ещё раз чуть позже 🙌"
PAYMENT_CREATE_FAILED_TEXT = "❌ Не удалось создать платёж. Попробуйте позже."
ORDER_CREATE_FAILED_TEXT = "❌ Не удалось создать заказ. Попробуйте позже."
ORDER_NOT_FOUND_TEXT = "❌ Заказ не найден."
PAYMENT_NOT_FOUND_TEXT = "❌ Платёж для заказа не найден."
PAYMENT_MISMATCH_TEXT = "❌ Неверный платёж для этого заказа."
ALREADY_CONFIRMED_TEXT = "✅ Этот платёж уже был подтверждён ранее."
NOT_PAID_TEXT = "❌ Оплата ещё не подтверждена. Если вы уже оплатили, подождите минуту и нажмите кнопку снова."
ORDER_STATUS_FAILED_TEXT = "⚠️ Оплата подтверждена, но произошла техническая ошибка. Свяжитесь с поддержкой."
PAYMENT_ROLLED_BACK_TEXT = "❌ Не удалось обработать платёж. Попробуйте нажать кнопку снова или свяжитесь с поддержкой."
PAYMENT_STUCK_TEXT = "❌ Произошла критическая ошибка. СРОЧНО свяжитесь с поддержкой (код: PAYMENT_STUCK)."
FORM_STATUS_FAILED_TEXT = "⚠️ Оплата получена, но произошла ошибка при отправке формы. Свяжитесь с поддержкой."
NON_ADMIN_DOCUMENT_TEXT = (
    "❌ Загрузка файлов доступна только администраторам.\n\n"
    "Если у вас есть вопросы, напишите их текстом."
)
AGENT_FAILED_TEXT = "Не получилось ответить прямо сейчас. Выберите услугу в меню или напишите чуть позже."
WELCOME_TEXT = (
    f"Привет! Я {config.BOT_NAME} — помогу навести порядок в личных финансах.\n\n" + config.SERVICES_TEXT
)


@dataclass
class StepResult:
    success: bool
    action: Optional[Action] = None


def _try_update_order_status(order_id: int, status: OrderStatus) -> bool:
    try:
        return storage.update_order_status(order_id, status) is not None
    except (SQLAlchemyError, InvalidTransitionError) as exc:
        logger.error("Order %s status write to %s failed: %s", order_id, status.value, exc)
        return False


def _try_update_payment_status(payment_id: int, status: PaymentStatus) -> bool:
    try:
        return storage.update_payment_status(payment_id, status) is not None
    except (SQLAlchemyError, InvalidTransitionError) as exc:
        logger.error("Payment %s status write to %s failed: %s", payment_id, status.value, exc)
        return False


async def alert_operators(bot: Bot, text: str):
    """Шлёт операторский алерт всем админам; сбои доставки только логируются."""
    recipients = set(config.ADMIN_TELEGRAM_IDS)
    try:
        recipients.update(admin.telegram_id for admin in storage.get_admin_users())
    except SQLAlchemyError as exc:
        logger.error("Cannot load admins from database for operator alert: %s", exc)
    for telegram_id in sorted(recipients):
        try:
            await messaging.send_message(bot, int(telegram_id), text, parse_mode=None)
        except (TelegramError, ValueError) as exc:
            logger.error("Operator alert to %s failed: %s", telegram_id, exc)


def ensure_user(event: InboundEvent) -> User:
    user = storage.upsert_user(
        telegram_id=event.user_id,
        username=event.username,
        first_name=event.first_name,
        last_name=event.last_name,
    )
    event.is_admin = user.is_admin
    return user


def calculator_url(telegram_user_id: int, order_id: int) -> str:
    return (
        f"{config.PUBLIC_BASE_URL}/financial-modeling.html"
        f"?userId={telegram_user_id}&orderId={order_id}&v={int(time.time() * 1000)}"
    )


async def create_order(bot: Bot, event: InboundEvent, db_user_id: int, service_type: ServiceType) -> bool:
    """Платёж в ЮKassa, затем одна транзакция заказ + платёж, затем кнопка «Я оплатил»."""
    service = config.SERVICES[service_type.value]
    logger.info("Creating %s order for user %s", service_type.value, event.user_id)

    payment = payments.build_service_payment(service_type.value)
    if not payment.success or not payment.payment_id or not payment.payment_url:
        logger.error("YooKassa payment creation failed for user %s: %s", event.user_id, payment.error)
        await messaging.send_message(bot, event.chat_id, PAYMENT_CREATE_FAILED_TEXT, parse_mode=None)
        return False

    created = storage.create_order_with_payment(
        user_id=db_user_id,
        service_type=service_type,
        price=service["price"],
        yookassa_payment_id=payment.payment_id,
        payment_url=payment.payment_url,
        form_url=service["form_url"],
        metadata={"service_code": service_type.value},
    )
    if created is None:
        # платёж в ЮKassa остаётся брошенным: без подтверждения пользователя он не списывается
        logger.error("Order transaction failed, YooKassa payment %s abandoned", payment.payment_id)
        await messaging.send_message(bot, event.chat_id, ORDER_CREATE_FAILED_TEXT, parse_mode=None)
        return False

    order_id = created.order.id
    log_event(
        event.user_id,
        "order_created",
        {"order_id": order_id, "service_type": service_type.value, "yookassa_payment_id": payment.payment_id},
        stage="payment",
    )
    text = (
        f"💳 Заказ №{order_id} создан!\n\n"
        f"Услуга: {service['name']}\n"
        f"Сумма: {service['price']}₽\n\n"
        f"👉 Оплатите:\n{payment.payment_url}\n\n"
        "После оплаты нажмите кнопку ниже."
    )
    await messaging.send_message(
        bot,
        event.chat_id,
        text,
        inline_keyboard=payment_confirm_buttons(order_id, payment.payment_id),
        parse_mode=None,
    )
    return True


async def confirm_payment(bot: Bot, event: InboundEvent, order_id: int, payment_id: str) -> bool:
    logger.info("Confirming payment %s for order %s", payment_id, order_id)
    chat_id = event.chat_id

    order = storage.get_order_by_id(order_id)
    if order is None:
        logger.warning("Order %s not found", order_id)
        await messaging.send_message(bot, chat_id, ORDER_NOT_FOUND_TEXT, parse_mode=None)
        return False

    payment = storage.get_latest_payment_for_order(order_id)
    if payment is None or not payment.yookassa_payment_id:
        logger.warning("Payment not found for order %s", order_id)
        await messaging.send_message(bot, chat_id, PAYMENT_NOT_FOUND_TEXT, parse_mode=None)
        return False

    if payment.yookassa_payment_id != payment_id:
        logger.warning(
            "Payment id mismatch for order %s: expected %s, received %s",
            order_id,
            payment.yookassa_payment_id,
            payment_id,
        )
        await messaging.send_message(bot, chat_id, PAYMENT_MISMATCH_TEXT, parse_mode=None)
        return False

    if payment.status == PaymentStatus.SUCCEEDED.value:
        logger.warning("Payment %s already confirmed", payment_id)
        await messaging.send_message(bot, chat_id, ALREADY_CONFIRMED_TEXT, parse_mode=None)
        return False

    check = payments.check_payment(payment_id)
    if not check.paid:
        logger.info("Payment %s not paid yet (status=%s, error=%s)", payment_id, check.status, check.error)
        await messaging.send_message(bot, chat_id, NOT_PAID_TEXT, parse_mode=None)
        return False

    if not _try_update_order_status(order_id, OrderStatus.PAYMENT_CONFIRMED):
        await messaging.send_message(bot, chat_id, ORDER_STATUS_FAILED_TEXT, parse_mode=None)
        return False

    if not _try_update_payment_status(payment.id, PaymentStatus.SUCCEEDED):
        logger.error("Payment %s status write failed, rolling back order %s", payment.id, order_id)
        rolled_back = _try_update_order_status(order_id, OrderStatus.PAYMENT_PENDING)
        if rolled_back:
            logger.info("Order %s rolled back to payment_pending", order_id)
            log_event(event.user_id, "payment_rolled_back", {"order_id": order_id}, stage="payment")
            await messaging.send_message(bot, chat_id, PAYMENT_ROLLED_BACK_TEXT, parse_mode=None)
        else:
            logger.critical(
                "OPERATOR ALERT: order %s stuck at payment_confirmed while payment %s is pending",
                order_id,
                payment.id,
            )
            log_event(
                event.user_id,
                "payment_stuck",
                {"order_id": order_id, "payment_id": payment.id, "yookassa_payment_id": payment_id},
                stage="payment",
            )
            await messaging.send_message(bot, chat_id, PAYMENT_STUCK_TEXT, parse_mode=None)
            await alert_operators(
                bot,
                f"🚨 PAYMENT_STUCK: заказ #{order_id} в payment_confirmed, платёж {payment_id} остался pending.",
            )
        return False

    log_event(event.user_id, "payment_confirmed", {"order_id": order_id, "yookassa_payment_id": payment_id}, stage="payment")
    if event.message_id:
        await messaging.edit_message(
            bot, chat_id, event.message_id, f"✅ Заказ №{order_id} оплачен.", parse_mode=None
        )

    # дальше оплата уже принята: сбои записи статуса не отменяют выдачу услуги
    if order.service_type == ServiceType.FINANCIAL_DETOX.value:
        if not _try_update_order_status(order_id, OrderStatus.FORM_SENT):
            await messaging.send_message(bot, chat_id, FORM_STATUS_FAILED_TEXT, parse_mode=None)
            return False
        form_url = order.form_url or config.DETOX_FORM_URL
        await messaging.send_message(
            bot,
            chat_id,
            f"✅ Оплата получена!\n\n📝 Заполните опрос:\n{form_url}\n\nПосле заполнения исполнитель подготовит отчет.",
            parse_mode=None,
        )
        return True

    url = calculator_url(event.user_id, order_id)
    logger.info("Sending calculator link for order %s", order_id)
    try:
        await messaging.send_message(
            bot,
            chat_id,
            "✅ *Оплата получена!*\n\n"
            "💰 Финансовое моделирование доступно!\n\n"
            "📊 Создайте интерактивную модель:\n"
            "• Добавьте категории расходов\n"
            "• Укажите желаемые покупки\n"
            "• Экспериментируйте со сценариями\n"
            "• Получите персональный AI-анализ\n\n"
            "Нажмите кнопку ниже, чтобы открыть калькулятор:",
            inline_keyboard=calculator_buttons(url),
        )
    except TelegramError as exc:
        logger.error("Failed to send calculator link for order %s: %s", order_id, exc)

    if not _try_update_order_status(order_id, OrderStatus.COMPLETED):
        logger.warning("Order %s not marked completed, user already has the calculator", order_id)
    return True


async def show_admin_panel(bot: Bot, event: InboundEvent) -> bool:
    try:
        orders = storage.get_pending_orders()
    except SQLAlchemyError as exc:
        logger.error("Failed to load pending orders: %s", exc)
        await messaging.send_message(bot, event.chat_id, "❌ Не удалось получить список заявок.", parse_mode=None)
        return False

    if not orders:
        await messaging.send_message(bot, event.chat_id, "📋 Нет заявок, требующих обработки.", parse_mode=None)
        return True

    blocks = []
    for order in orders:
        service = config.SERVICES.get(order.service_type, {}).get("short_name", order.service_type)
        user_name = escape_markdown(order.username or order.telegram_id)
        blocks.append(
            f"#{order.id} • {service} • {order.price}₽ • {escape_markdown(order.status)}\n"
            f"👤 @{user_name}\n"
            f"📅 {order.created_at:%d.%m.%Y %H:%M}"
        )
    text = (
        "👨‍💼 *АДМИН-ПАНЕЛЬ*\n\n"
        f"Заявки на обработку ({len(orders)}):\n\n"
        + "\n\n".join(blocks)
        + "\n\n━━━━━━━━━━━━━━━━━━\n"
        "📤 *Как отправить отчет:*\n"
        "1. Загрузите PDF/Excel файл\n"
        "2. В подписи укажите: `/send {номер заказа}`\n\n"
        "Пример: `/send 3`"
    )
    await messaging.send_message(bot, event.chat_id, text)
    return True


async def reject_non_admin_document(bot: Bot, event: InboundEvent) -> bool:
    logger.info("Rejecting document upload from non-admin %s", event.user_id)
    await messaging.send_message(bot, event.chat_id, NON_ADMIN_DOCUMENT_TEXT, parse_mode=None)
    return True


def _agent_prompt(event: InboundEvent) -> str:
    if event.kind == EventKind.CALLBACK:
        return f"Пользователь нажал: {event.callback_data}\n\nКОНТЕКСТ: chatId={event.chat_id}, userId={event.user_id}"
    return (
        f'Пользователь написал: "{event.text or ""}"\n\n'
        f"КОНТЕКСТ: chatId={event.chat_id}, userId={event.user_id}, userName={event.username or ''}, "
        f"firstName={event.first_name or ''}, lastName={event.last_name or ''}"
    )


async def use_agent(bot: Bot, event: InboundEvent) -> bool:
    text = (event.text or "").strip()
    if event.kind == EventKind.MESSAGE and (not text or text.split()[0] in ("/start", "/help")):
        await messaging.send_message(bot, event.chat_id, WELCOME_TEXT, inline_keyboard=services_menu(), parse_mode=None)
        return True

    if not config.OPENAI_API_KEY:
        await messaging.send_message(bot, event.chat_id, config.SERVICES_TEXT, inline_keyboard=services_menu(), parse_mode=None)
        return True

    try:
        answer = await ask_gpt_with_typing(bot, event.chat_id, _agent_prompt(event))
    except Exception:  # noqa: BLE001
        logger.exception("Agent failed for user %s", event.user_id)
        await messaging.send_message(bot, event.chat_id, AGENT_FAILED_TEXT, inline_keyboard=services_menu(), parse_mode=None)
        return False

    await messaging.send_split_text(bot, event.chat_id, answer)
    log_event(event.user_id, "agent_answer", {"prompt": text or event.callback_data, "answer_length": len(answer)}, stage="agent")
    return True


async def run_event(bot: Bot, event: InboundEvent) -> StepResult:
    try:
        user = ensure_user(event)
    except SQLAlchemyError:
        logger.exception("Failed to upsert user %s", event.user_id)
        await _send_generic_error(bot, event.chat_id)
        return StepResult(success=False)

    route = route_action(event)
    logger.info("Event from %s routed to %s", event.user_id, route.action.value)
    try:
        if route.action == Action.CREATE_ORDER_DETOX:
            ok = await create_order(bot, event, user.id, ServiceType.FINANCIAL_DETOX)
        elif route.action == Action.CREATE_ORDER_MODELING:
            ok = await create_order(bot, event, user.id, ServiceType.FINANCIAL_MODELING)
        elif route.action == Action.CONFIRM_PAYMENT:
            ok = await confirm_payment(bot, event, route.order_id, route.payment_id)
        elif route.action == Action.SHOW_ADMIN_PANEL:
            ok = await show_admin_panel(bot, event)
        elif route.action == Action.PROCESS_ADMIN_DOCUMENT:
            ok = await admin_documents.process_admin_document(bot, event)
        elif route.action == Action.REJECT_NON_ADMIN_DOCUMENT:
            ok = await reject_non_admin_document(bot, event)
        else:
            ok = await use_agent(bot, event)
    except Exception:  # noqa: BLE001
        logger.exception("Step %s failed for user %s", route.action.value, event.user_id)
        await _send_generic_error(bot, event.chat_id)
        ok = False
    return StepResult(success=ok, action=route.action)


async def _send_generic_error(bot: Bot, chat_id: int):
    try:
        await messaging.send_message(bot, chat_id, GENERIC_ERROR_TEXT, parse_mode=None)
    except TelegramError as exc:
        logger.error("Could not deliver error message to chat %s: %s", chat_id, exc)
