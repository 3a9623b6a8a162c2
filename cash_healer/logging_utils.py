import datetime
import json
import logging
from typing import Any, Dict, Optional

from cash_healer import config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None):
    logging.basicConfig(format=LOG_FORMAT, level=(level or config.LOG_LEVEL).upper())
    # httpx пишет каждый запрос к Telegram API на INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_event(user_id: int, action: str, details: Optional[Dict[str, Any]] = None, stage: str = ""):
    """Записывает событие жизненного цикла заказа в JSONL файл."""
    try:
        record = {
            "timestamp": datetime.datetime.utcnow().isoformat(),
            "user_id": user_id,
            "stage": stage,
            "action": action,
            "details": details or {},
        }
        with open(config.LOG_FILE, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to write event log: %s", exc)
