import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_ids(name: str) -> frozenset:
    raw = os.getenv(name, "")
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN", "") or os.getenv("TELEGRAM_BOT_TOKEN", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
OPENAI_RETRIES = 3

YOOKASSA_SHOP_ID = os.getenv("YOOKASSA_SHOP_ID", "")
YOOKASSA_SECRET_KEY = os.getenv("YOOKASSA_SECRET_KEY", "")
YOOKASSA_RETURN_URL = os.getenv("YOOKASSA_RETURN_URL", "") or "https://t.me/CashHealer_bot"
YOOKASSA_API_URL = "https://api.yookassa.ru/v3/payments"
YOOKASSA_TEST_MODE = _env_flag("YOOKASSA_TEST_MODE")
YOOKASSA_MOCK_MODE = _env_flag("YOOKASSA_MOCK_MODE")
YOOKASSA_TIMEOUT = 10

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/cash_healer.db")

PUBLIC_BASE_URL = (os.getenv("PUBLIC_BASE_URL", "") or "http://localhost:8000").rstrip("/")
WEBAPP_HOST = os.getenv("WEBAPP_HOST", "0.0.0.0")
WEBAPP_PORT = int(os.getenv("WEBAPP_PORT", "8000"))

ADMIN_COMMAND = "/admin"
ADMIN_TELEGRAM_IDS = _env_ids("ADMIN_TELEGRAM_IDS")
ADMIN_CACHE_TTL_SECONDS = int(os.getenv("ADMIN_CACHE_TTL_SECONDS", "600"))
ADMIN_CACHE_MAX_SIZE = int(os.getenv("ADMIN_CACHE_MAX_SIZE", "256"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs.jsonl")

BOT_NAME = "CashHealer"
DETOX_FORM_URL = os.getenv("DETOX_FORM_URL", "") or "https://forms.yandex.ru/u/6912423849af471482e765d3"

SERVICES = {
    "financial_detox": {
        "name": "Финансовый детокс",
        "short_name": "💰 Детокс",
        "price": 450,
        "form_url": DETOX_FORM_URL,
        "callback": "order_detox",
    },
    "financial_modeling": {
        "name": "Финансовое моделирование",
        "short_name": "📊 Моделирование",
        "price": 350,
        "form_url": None,
        "callback": "order_modeling",
    },
}

SERVICES_TEXT = (
    "Выберите услугу:\n"
    + "\n".join([f"• {data['name']} — {data['price']}₽" for data in SERVICES.values()])
    + "\n\nОплата доступна через ЮKassa по кнопкам ниже."
)


def require_credentials():
    """Падает при старте, если бот нельзя запустить."""
    if not TELEGRAM_TOKEN:
        raise RuntimeError("Не задан TELEGRAM_TOKEN в .env")
