import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from cash_healer.gpt_client import chatgpt_answer

PRIORITY_EMOJI = {"high": "🔴", "medium": "🟡", "low": "🟢"}

ANALYST_SYSTEM = "Ты финансовый консультант для студентов. Пиши конкретно, с цифрами, дружелюбно."


@dataclass
class BudgetSummary:
    current_balance: float
    next_income: float
    days_until_income: int
    total_expenses: float
    after_expenses: float
    daily_budget: float
    expenses_text: str
    wishes_text: str


def _frame(items: Optional[List[Dict[str, Any]]], value_column: str) -> pd.DataFrame:
    df = pd.DataFrame(items or [], columns=["name", value_column, "priority"])
    df["name"] = df["name"].fillna("").astype(str)
    df[value_column] = pd.to_numeric(df[value_column], errors="coerce").fillna(0)
    return df


def days_until(income_date: Optional[str], today: Optional[date] = None) -> int:
    """Дней до следующего дохода, минимум 1 (в т.ч. при пустой или битой дате)."""
    today = today or date.today()
    if not income_date:
        return 1
    try:
        target = datetime.fromisoformat(income_date[:10]).date()
    except ValueError:
        return 1
    return max(1, math.ceil((target - today).days))


def summarize_budget(
    current_balance: float,
    next_income: float,
    next_income_date: Optional[str],
    expenses: Optional[List[Dict[str, Any]]],
    wishes: Optional[List[Dict[str, Any]]],
    total_expenses: Optional[float] = None,
    today: Optional[date] = None,
) -> BudgetSummary:
    expenses_df = _frame(expenses, "amount")
    wishes_df = _frame(wishes, "price")

    if total_expenses is None:
        total_expenses = float(expenses_df["amount"].sum())
    days = days_until(next_income_date, today)
    after_expenses = current_balance - total_expenses
    daily_budget = max(0.0, after_expenses) / days

    expenses_text = ", ".join(f"{row.name}: {row.amount:g}₽" for row in expenses_df.itertuples(index=False))
    wishes_text = ", ".join(
        f"{row.name} ({row.price:g}₽, приоритет: {PRIORITY_EMOJI.get(row.priority, PRIORITY_EMOJI['medium'])})"
        for row in wishes_df.itertuples(index=False)
    )
    return BudgetSummary(
        current_balance=current_balance,
        next_income=next_income,
        days_until_income=days,
        total_expenses=total_expenses,
        after_expenses=after_expenses,
        daily_budget=round(daily_budget, 2),
        expenses_text=expenses_text,
        wishes_text=wishes_text,
    )


def build_budget_prompt(summary: BudgetSummary) -> str:
    lines = [
        "Проанализируй финансовую ситуацию и дай персональные рекомендации.",
        "",
        "Текущая ситуация:",
        f"- Текущий баланс: {summary.current_balance:,.0f} ₽".replace(",", " "),
        f"- Дней до следующего дохода: {summary.days_until_income}",
        f"- Следующий доход: {summary.next_income:,.0f} ₽".replace(",", " "),
        f"- Всего запланированных расходов: {summary.total_expenses:,.0f} ₽".replace(",", " "),
        f"- Остаток после расходов: {summary.after_expenses:,.0f} ₽".replace(",", " "),
        f"- Средний дневной бюджет: {summary.daily_budget:,.0f} ₽".replace(",", " "),
    ]
    if summary.expenses_text:
        lines += ["", f"Категории расходов: {summary.expenses_text}"]
    if summary.wishes_text:
        lines += [
            "",
            f"Желаемые покупки (с приоритетами): {summary.wishes_text}",
            "Составь план: что можно купить сейчас, на что и сколько месяцев копить. "
            "Каждое желание покупается один раз. Приоритет: 🔴 > 🟡 > 🟢.",
        ]
    lines += [
        "",
        "Проверь, хватит ли денег до дохода, предложи 2-3 конкретных способа сэкономить "
        "и сумму подушки безопасности.",
    ]
    if summary.after_expenses < 0:
        lines.append("⚠️ Баланс уходит в минус: укажи, какие расходы сократить прямо сейчас.")
    lines.append("Формат: markdown, заголовки ###, списки через -, эмодзи 💰 🎯 ⚠️ ✅ 📊. Не обрывай текст.")
    return "\n".join(lines)


async def analyze_budget(summary: BudgetSummary) -> str:
    return await chatgpt_answer(build_budget_prompt(summary), system=ANALYST_SYSTEM, max_tokens=1000)
