"""
Persistence layer for users, orders, payments and financial models.

All status writes are validated against the lifecycle in ``statuses``.
``create_order_with_payment`` is the only multi-row write and runs in a single
transaction: either the order and its payment both exist afterwards, or neither
does.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cash_healer import config
from cash_healer.models import Base, FinancialModel, Order, Payment, User
from cash_healer.statuses import (
    ADMIN_PENDING_STATUSES,
    OrderStatus,
    PaymentStatus,
    ServiceType,
    validate_order_transition,
    validate_payment_transition,
)

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


@dataclass
class OrderView:
    """Order joined with its owner, as the bot and the admin panel need it."""
    id: int
    user_id: int
    telegram_id: str
    username: Optional[str]
    service_type: str
    status: str
    price: int
    form_url: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]


@dataclass
class OrderWithPayment:
    order: Order
    payment: Payment


def _now() -> datetime:
    return datetime.utcnow()


def init_db(database_url: Optional[str] = None) -> Engine:
    """Создаёт engine, фабрику сессий и таблицы."""
    global _engine, _SessionLocal
    url = database_url or config.DATABASE_URL
    kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # одно соединение на процесс, иначе каждая сессия видит пустую базу
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, **kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(_engine)
    logger.info("Database ready: %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def dispose_db():
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def session_scope() -> Iterator[Session]:
    if _SessionLocal is None:
        init_db()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _order_view(order: Order) -> OrderView:
    return OrderView(
        id=order.id,
        user_id=order.user_id,
        telegram_id=order.user.telegram_id,
        username=order.user.username,
        service_type=order.service_type,
        status=order.status,
        price=order.price,
        form_url=order.form_url,
        created_at=order.created_at,
        completed_at=order.completed_at,
    )


def _apply_order_status(order: Order, status: Union[OrderStatus, str]):
    new_status = validate_order_transition(order.status, status)
    order.status = new_status.value
    order.updated_at = _now()
    if new_status == OrderStatus.COMPLETED:
        order.completed_at = _now()


def _apply_payment_status(payment: Payment, status: Union[PaymentStatus, str]):
    new_status = validate_payment_transition(payment.status, status)
    payment.status = new_status.value
    payment.updated_at = _now()
    if new_status == PaymentStatus.SUCCEEDED:
        payment.paid_at = _now()


# ==================== USERS ====================

def upsert_user(
    telegram_id: Union[int, str],
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> User:
    key = str(telegram_id)
    with session_scope() as session:
        user = session.scalar(select(User).where(User.telegram_id == key))
        if user is None:
            user = User(telegram_id=key, username=username, first_name=first_name, last_name=last_name)
            session.add(user)
        else:
            user.username = username
            user.first_name = first_name
            user.last_name = last_name
            user.updated_at = _now()
        if key in config.ADMIN_TELEGRAM_IDS:
            user.is_admin = True
        session.flush()
        return user


def get_user_by_telegram_id(telegram_id: Union[int, str]) -> Optional[User]:
    with session_scope() as session:
        return session.scalar(select(User).where(User.telegram_id == str(telegram_id)))


def get_admin_users() -> List[User]:
    with session_scope() as session:
        return list(session.scalars(select(User).where(User.is_admin.is_(True)).order_by(User.id)))


# ==================== ORDERS & PAYMENTS ====================

def create_order_with_payment(
    user_id: int,
    service_type: Union[ServiceType, str],
    price: int,
    yookassa_payment_id: str,
    payment_url: str,
    form_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[OrderWithPayment]:
    """
    Creates the order, its payment and moves the order to payment_pending in
    one transaction. Returns None on any failure; nothing is written then.
    """
    try:
        with session_scope() as session:
            order = Order(
                user_id=user_id,
                service_type=ServiceType(service_type).value,
                price=price,
                form_url=form_url,
                status=OrderStatus.CREATED.value,
            )
            session.add(order)
            session.flush()

            payment = Payment(
                order_id=order.id,
                amount=price,
                currency="RUB",
                yookassa_payment_id=yookassa_payment_id,
                payment_url=payment_url,
                status=PaymentStatus.PENDING.value,
                payment_metadata=json.dumps(metadata, ensure_ascii=False) if metadata else None,
            )
            session.add(payment)
            session.flush()

            _apply_order_status(order, OrderStatus.PAYMENT_PENDING)
            session.flush()
            result = OrderWithPayment(order=order, payment=payment)
        return result
    except Exception:  # noqa: BLE001
        logger.exception(
            "Order+payment transaction failed, rolled back (user_id=%s, yookassa_payment_id=%s)",
            user_id,
            yookassa_payment_id,
        )
        return None


def get_order_by_id(order_id: int) -> Optional[OrderView]:
    with session_scope() as session:
        order = session.get(Order, order_id)
        if order is None:
            return None
        return _order_view(order)


def get_pending_orders() -> List[OrderView]:
    """Оплаченные заказы, по которым админ ещё не отправил отчёт."""
    statuses = [status.value for status in ADMIN_PENDING_STATUSES]
    with session_scope() as session:
        stmt = select(Order).where(Order.status.in_(statuses)).order_by(Order.created_at.asc(), Order.id.asc())
        return [_order_view(order) for order in session.scalars(stmt)]


def update_order_status(order_id: int, status: Union[OrderStatus, str]) -> Optional[Order]:
    """Returns None if the order does not exist; raises InvalidTransitionError."""
    with session_scope() as session:
        order = session.get(Order, order_id)
        if order is None:
            return None
        previous = order.status
        _apply_order_status(order, status)
        logger.info("Order %s status %s -> %s", order_id, previous, order.status)
        return order


def mark_report_sent(order_id: int) -> Optional[Order]:
    return update_order_status(order_id, OrderStatus.COMPLETED)


def get_latest_payment_for_order(order_id: int) -> Optional[Payment]:
    with session_scope() as session:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
        )
        return session.scalar(stmt)


def update_payment_status(payment_id: int, status: Union[PaymentStatus, str]) -> Optional[Payment]:
    """The gateway id is never rewritten here; it is the replay-protection key."""
    with session_scope() as session:
        payment = session.get(Payment, payment_id)
        if payment is None:
            return None
        previous = payment.status
        _apply_payment_status(payment, status)
        logger.info("Payment %s status %s -> %s", payment_id, previous, payment.status)
        return payment


# ==================== FINANCIAL MODELS ====================

def save_financial_model(
    user_id: int,
    order_id: Optional[int],
    current_balance: int,
    next_income: int,
    next_income_date: Optional[str],
    expenses: List[Dict[str, Any]],
    wishes: List[Dict[str, Any]],
    total_expenses: int,
) -> FinancialModel:
    """Updates the latest model of the same order, otherwise inserts a new one."""
    with session_scope() as session:
        stmt = (
            select(FinancialModel)
            .where(FinancialModel.user_id == user_id)
            .order_by(FinancialModel.created_at.desc(), FinancialModel.id.desc())
            .limit(1)
        )
        existing = session.scalar(stmt)
        if existing is not None and order_id and existing.order_id == order_id:
            model = existing
            model.updated_at = _now()
        else:
            model = FinancialModel(user_id=user_id, order_id=order_id)
            session.add(model)

        model.current_balance = current_balance
        model.next_income = next_income
        model.next_income_date = next_income_date
        model.expenses = json.dumps(expenses, ensure_ascii=False)
        model.wishes = json.dumps(wishes, ensure_ascii=False)
        model.total_expenses = total_expenses
        session.flush()
        return model


def get_financial_model_by_user(user_id: int) -> Optional[FinancialModel]:
    with session_scope() as session:
        stmt = (
            select(FinancialModel)
            .where(FinancialModel.user_id == user_id)
            .order_by(FinancialModel.created_at.desc(), FinancialModel.id.desc())
            .limit(1)
        )
        return session.scalar(stmt)
