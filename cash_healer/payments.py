import logging
import random
import string
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from cash_healer import config

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    payment_id: Optional[str] = None
    payment_url: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PaymentCheckResult:
    success: bool
    status: Optional[str] = None
    paid: bool = False
    amount: Optional[float] = None
    error: Optional[str] = None


def _mock_payment_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"mock_{int(time.time() * 1000)}_{suffix}"


def _has_credentials() -> bool:
    return bool(config.YOOKASSA_SHOP_ID and config.YOOKASSA_SECRET_KEY)


def create_payment(amount: float, description: str, metadata: Optional[Dict[str, str]] = None) -> PaymentResult:
    """Создаёт платёж в ЮKassa и возвращает id и ссылку на оплату."""
    if config.YOOKASSA_MOCK_MODE:
        payment_id = _mock_payment_id()
        logger.info("YooKassa mock mode: fake payment %s", payment_id)
        return PaymentResult(
            success=True,
            payment_id=payment_id,
            payment_url=f"https://mock-payment.example.com/pay/{payment_id}",
            status="pending",
        )

    if not _has_credentials():
        logger.error("YooKassa credentials are not configured")
        return PaymentResult(success=False, error="YooKassa credentials not configured")

    payload: Dict[str, object] = {
        "amount": {"value": f"{amount:.2f}", "currency": "RUB"},
        "capture": True,
        "description": description,
        "confirmation": {
            "type": "redirect",
            "return_url": config.YOOKASSA_RETURN_URL,
        },
        "test": config.YOOKASSA_TEST_MODE,
    }
    if metadata:
        payload["metadata"] = metadata

    headers = {"Idempotence-Key": uuid.uuid4().hex}
    try:
        response = requests.post(
            config.YOOKASSA_API_URL,
            json=payload,
            auth=(config.YOOKASSA_SHOP_ID, config.YOOKASSA_SECRET_KEY),
            headers=headers,
            timeout=config.YOOKASSA_TIMEOUT,
        )
        response.raise_for_status()
        data: Dict = response.json()
    except requests.RequestException as exc:
        logger.error("YooKassa create payment failed: %s", exc)
        return PaymentResult(success=False, error=str(exc))
    except ValueError as exc:
        logger.error("YooKassa returned invalid JSON: %s", exc)
        return PaymentResult(success=False, error="Invalid YooKassa response")

    confirmation = data.get("confirmation") or {}
    logger.info("YooKassa payment created: %s (%s)", data.get("id"), data.get("status"))
    return PaymentResult(
        success=True,
        payment_id=data.get("id"),
        payment_url=confirmation.get("confirmation_url"),
        status=data.get("status"),
    )


def check_payment(payment_id: str) -> PaymentCheckResult:
    """Запрашивает живой статус платежа в ЮKassa."""
    if config.YOOKASSA_MOCK_MODE:
        logger.info("YooKassa mock mode: payment %s reported as paid", payment_id)
        return PaymentCheckResult(success=True, status="succeeded", paid=True)

    if not _has_credentials():
        logger.error("YooKassa credentials are not configured")
        return PaymentCheckResult(success=False, error="YooKassa credentials not configured")

    try:
        response = requests.get(
            f"{config.YOOKASSA_API_URL}/{payment_id}",
            auth=(config.YOOKASSA_SHOP_ID, config.YOOKASSA_SECRET_KEY),
            timeout=config.YOOKASSA_TIMEOUT,
        )
        response.raise_for_status()
        data: Dict = response.json()
    except requests.RequestException as exc:
        logger.error("YooKassa check payment %s failed: %s", payment_id, exc)
        return PaymentCheckResult(success=False, error=str(exc))
    except ValueError as exc:
        logger.error("YooKassa returned invalid JSON: %s", exc)
        return PaymentCheckResult(success=False, error="Invalid YooKassa response")

    amount = data.get("amount") or {}
    try:
        value = float(amount["value"]) if "value" in amount else None
    except (TypeError, ValueError):
        value = None
    return PaymentCheckResult(
        success=True,
        status=data.get("status"),
        paid=bool(data.get("paid")),
        amount=value,
    )


def build_service_payment(service_code: str) -> PaymentResult:
    service = config.SERVICES.get(service_code)
    if service is None:
        return PaymentResult(success=False, error=f"Unknown service {service_code}")

    description = f"Оплата: {service['name']}"
    return create_payment(amount=service["price"], description=description, metadata={"service_code": service_code})
