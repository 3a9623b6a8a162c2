"""HTTP API for the financial-modeling mini app, served by uvicorn next to the bot."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from cash_healer import storage
from cash_healer.budget import analyze_budget, summarize_budget

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"


class FinancialModelPayload(BaseModel):
    userId: Union[int, str]
    orderId: Optional[Union[int, str]] = None
    currentBalance: float = 0
    nextIncome: float = 0
    nextIncomeDate: Optional[str] = None
    expenses: List[Dict[str, Any]] = Field(default_factory=list)
    wishes: List[Dict[str, Any]] = Field(default_factory=list)
    totalExpenses: Optional[float] = None


def _parse_order_id(raw: Optional[Union[int, str]]) -> Optional[int]:
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def create_app() -> FastAPI:
    app = FastAPI(title="CashHealer mini app")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        logger.warning("Rejected %s: %s", request.url.path, exc.errors())
        return JSONResponse({"success": False, "error": "Invalid payload"}, status_code=400)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/financial-modeling/save")
    async def save_financial_model(payload: FinancialModelPayload):
        telegram_id = str(payload.userId).strip()
        if not telegram_id:
            return JSONResponse({"success": False, "error": "Missing userId"}, status_code=400)
        order_id = _parse_order_id(payload.orderId)
        logger.info(
            "Financial model from %s (order=%s, expenses=%s, wishes=%s)",
            telegram_id,
            order_id,
            len(payload.expenses),
            len(payload.wishes),
        )

        try:
            user = storage.get_user_by_telegram_id(telegram_id)
            if user is None:
                user = storage.upsert_user(telegram_id, username=f"user{telegram_id}", first_name="User", last_name="")
                logger.info("Created user %s from mini app", user.id)

            summary = summarize_budget(
                current_balance=payload.currentBalance,
                next_income=payload.nextIncome,
                next_income_date=payload.nextIncomeDate,
                expenses=payload.expenses,
                wishes=payload.wishes,
                total_expenses=payload.totalExpenses,
            )
            model = storage.save_financial_model(
                user_id=user.id,
                order_id=order_id,
                current_balance=round(summary.current_balance),
                next_income=round(summary.next_income),
                next_income_date=payload.nextIncomeDate,
                expenses=payload.expenses,
                wishes=payload.wishes,
                total_expenses=round(summary.total_expenses),
            )
            logger.info("Financial model %s saved", model.id)
            analysis = await analyze_budget(summary)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Financial model save failed for %s", telegram_id)
            return JSONResponse({"success": False, "error": str(exc)}, status_code=500)

        return {"success": True, "analysis": analysis}

    if STATIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")

    return app
