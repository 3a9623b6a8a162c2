import asyncio
import logging
from typing import Optional

from openai import AsyncOpenAI

from cash_healer import config

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "Ты — финансовый помощник бота CashHealer для студентов и молодых специалистов. "
    "Бот продаёт две услуги: «Финансовый детокс» (450₽, опрос и персональный отчёт) и "
    "«Финансовое моделирование» (350₽, интерактивный калькулятор бюджета с AI-анализом). "
    "Отвечай кратко и дружелюбно, по делу. Если пользователь хочет купить услугу, "
    "предложи нажать кнопку в меню. Укладывай ответ в 3500 символов."
)

_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
    return _client


async def chatgpt_answer(
    prompt: str,
    system: Optional[str] = None,
    temperature: float = config.TEMPERATURE,
    max_tokens: Optional[int] = None,
) -> str:
    last_err = None
    for attempt in range(config.OPENAI_RETRIES):
        try:
            kwargs = {}
            if max_tokens:
                kwargs["max_tokens"] = max_tokens
            resp = await get_client().chat.completions.create(
                model=config.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": system or SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                **kwargs,
            )
            return (resp.choices[0].message.content or "").strip()
        except Exception as exc:  # noqa: BLE001
            last_err = exc
            logger.warning("OpenAI request failed (attempt %s/%s): %s", attempt + 1, config.OPENAI_RETRIES, exc)
            await asyncio.sleep(0.8 * (attempt + 1))
    if last_err:
        raise last_err
    return ""


async def ask_gpt_with_typing(bot, chat_id: int, prompt: str, system: Optional[str] = None, temperature: float = config.TEMPERATURE):
    """Показывает статус typing и вызывает chatGPT с ретраями."""
    try:
        if bot and chat_id:
            await bot.send_chat_action(chat_id=chat_id, action="typing")
    except Exception as exc:  # noqa: BLE001
        logger.debug("send_chat_action failed: %s", exc)
    return await chatgpt_answer(prompt, system=system, temperature=temperature)
