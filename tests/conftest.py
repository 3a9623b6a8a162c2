"""Shared fixtures: in-memory database, fake Telegram bot, event factory."""

from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import func, select

from cash_healer import config, storage
from cash_healer.models import Order, Payment
from cash_healer.router import EventKind, InboundEvent

CLIENT_ID = 555000111
ADMIN_ID = 999000111


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "LOG_FILE", str(tmp_path / "events.jsonl"))
    monkeypatch.setattr(config, "YOOKASSA_MOCK_MODE", False)
    monkeypatch.setattr(config, "OPENAI_API_KEY", "")
    monkeypatch.setattr(config, "ADMIN_TELEGRAM_IDS", frozenset({str(ADMIN_ID)}))
    monkeypatch.setattr(config, "PUBLIC_BASE_URL", "https://cashhealer.test")


@pytest.fixture
def db():
    storage.init_db("sqlite://")
    yield storage
    storage.dispose_db()


@pytest.fixture
def bot():
    fake = AsyncMock()
    fake.send_message.return_value = Mock(message_id=101)
    fake.send_document.return_value = Mock(message_id=202)
    return fake


@pytest.fixture
def make_event():
    def _make(kind=EventKind.MESSAGE, user_id=CLIENT_ID, **kwargs):
        kwargs.setdefault("chat_id", user_id)
        kwargs.setdefault("username", f"user{user_id}")
        return InboundEvent(kind=kind, user_id=user_id, **kwargs)

    return _make


def sent_texts(bot):
    return [call.kwargs["text"] for call in bot.send_message.call_args_list]


def count_rows(model):
    with storage.session_scope() as session:
        return session.scalar(select(func.count()).select_from(model))


def order_and_payment(order_id):
    with storage.session_scope() as session:
        order = session.get(Order, order_id)
        payment = session.scalar(select(Payment).where(Payment.order_id == order_id))
        return order, payment
