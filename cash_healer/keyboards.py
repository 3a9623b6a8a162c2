from typing import Dict, List, Optional, Sequence

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo

from cash_healer.config import SERVICES

ButtonSpec = Dict[str, str]

_BUTTON_TARGETS = ("callback_data", "url", "web_app")


def payment_callback_data(order_id: int, payment_id: str) -> str:
    return f"payment_{order_id}_{payment_id}"


def _build_button(spec: ButtonSpec) -> InlineKeyboardButton:
    targets = [key for key in _BUTTON_TARGETS if spec.get(key)]
    if len(targets) != 1:
        raise ValueError(f"Button {spec.get('text')!r} must have exactly one of {_BUTTON_TARGETS}, got {targets}")
    target = targets[0]
    if target == "web_app":
        return InlineKeyboardButton(spec["text"], web_app=WebAppInfo(url=spec["web_app"]))
    return InlineKeyboardButton(spec["text"], **{target: spec[target]})


def build_inline_keyboard(rows: Optional[Sequence[Sequence[ButtonSpec]]]) -> Optional[InlineKeyboardMarkup]:
    """Собирает inline-клавиатуру; у каждой кнопки ровно одно действие."""
    if not rows:
        return None
    return InlineKeyboardMarkup([[_build_button(spec) for spec in row] for row in rows])


def services_menu() -> List[List[ButtonSpec]]:
    return [
        [{"text": f"{data['name']} — {data['price']}₽", "callback_data": data["callback"]}]
        for data in SERVICES.values()
    ]


def payment_confirm_buttons(order_id: int, payment_id: str) -> List[List[ButtonSpec]]:
    return [[{"text": "✅ Я оплатил", "callback_data": payment_callback_data(order_id, payment_id)}]]


def calculator_buttons(calculator_url: str) -> List[List[ButtonSpec]]:
    return [[{"text": "🚀 Открыть калькулятор", "url": calculator_url}]]
