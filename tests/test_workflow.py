"""Order lifecycle scenarios: ordering, payment confirmation, rollback, admin panel."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from cash_healer import config, storage, workflow
from cash_healer.models import Order, Payment
from cash_healer.payments import PaymentCheckResult, PaymentResult
from cash_healer.router import Action, EventKind
from cash_healer.statuses import OrderStatus, PaymentStatus, ServiceType
from conftest import ADMIN_ID, CLIENT_ID, count_rows, order_and_payment, sent_texts


def _gateway(payment_id="gw_1"):
    return PaymentResult(
        success=True,
        payment_id=payment_id,
        payment_url=f"https://pay/{payment_id}",
        status="pending",
    )


def _paid():
    return PaymentCheckResult(success=True, status="succeeded", paid=True, amount=350.0)


def _place_order(service_type=ServiceType.FINANCIAL_DETOX, payment_id="gw_1"):
    user = storage.upsert_user(CLIENT_ID, username="client")
    service = config.SERVICES[service_type.value]
    created = storage.create_order_with_payment(
        user_id=user.id,
        service_type=service_type,
        price=service["price"],
        yookassa_payment_id=payment_id,
        payment_url=f"https://pay/{payment_id}",
        form_url=service["form_url"],
    )
    return created.order.id


class TestCreateOrder:
    async def test_modeling_order_is_created_with_payment_button(self, db, bot, make_event):
        event = make_event(EventKind.CALLBACK, callback_data="order_modeling", callback_query_id="q1")
        with patch("cash_healer.payments.create_payment", return_value=_gateway()) as create_payment:
            result = await workflow.run_event(bot, event)

        assert result.success is True
        assert result.action == Action.CREATE_ORDER_MODELING
        assert create_payment.call_args.kwargs["amount"] == 350

        order, payment = order_and_payment(1)
        assert order.status == OrderStatus.PAYMENT_PENDING.value
        assert order.service_type == ServiceType.FINANCIAL_MODELING.value
        assert order.price == 350
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.yookassa_payment_id == "gw_1"
        assert payment.amount == 350

        markup = bot.send_message.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].callback_data == f"payment_{order.id}_gw_1"
        assert "https://pay/gw_1" in sent_texts(bot)[-1]

    async def test_gateway_failure_writes_nothing(self, db, bot, make_event):
        event = make_event(EventKind.CALLBACK, callback_data="order_detox")
        failed = PaymentResult(success=False, error="HTTP 500")
        with patch("cash_healer.payments.create_payment", return_value=failed):
            result = await workflow.run_event(bot, event)

        assert result.success is False
        assert count_rows(Order) == 0
        assert count_rows(Payment) == 0
        assert sent_texts(bot) == [workflow.PAYMENT_CREATE_FAILED_TEXT]

    async def test_transaction_failure_leaves_no_partial_rows(self, db, bot, make_event):
        _place_order(payment_id="gw_dup")
        event = make_event(EventKind.CALLBACK, callback_data="order_detox")
        with patch("cash_healer.payments.create_payment", return_value=_gateway("gw_dup")):
            result = await workflow.run_event(bot, event)

        assert result.success is False
        assert count_rows(Order) == 1
        assert count_rows(Payment) == 1
        assert sent_texts(bot) == [workflow.ORDER_CREATE_FAILED_TEXT]


class TestConfirmPayment:
    def _confirm_event(self, make_event, order_id, payment_id="gw_1"):
        return make_event(
            EventKind.CALLBACK,
            callback_data=f"payment_{order_id}_{payment_id}",
            callback_query_id="q2",
            message_id=77,
        )

    async def test_detox_sends_form_and_marks_form_sent(self, db, bot, make_event):
        order_id = _place_order(ServiceType.FINANCIAL_DETOX)
        with patch("cash_healer.payments.check_payment", return_value=_paid()):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is True
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.FORM_SENT.value
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.paid_at is not None
        assert config.DETOX_FORM_URL in sent_texts(bot)[-1]
        bot.edit_message_text.assert_awaited_once()

    async def test_modeling_sends_calculator_and_completes(self, db, bot, make_event):
        order_id = _place_order(ServiceType.FINANCIAL_MODELING)
        with patch("cash_healer.payments.check_payment", return_value=_paid()):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is True
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.COMPLETED.value
        assert order.completed_at is not None
        assert payment.status == PaymentStatus.SUCCEEDED.value

        button = bot.send_message.call_args.kwargs["reply_markup"].inline_keyboard[0][0]
        assert button.url.startswith("https://cashhealer.test/financial-modeling.html?")
        assert f"userId={CLIENT_ID}" in button.url
        assert f"orderId={order_id}" in button.url
        assert "&v=" in button.url

    async def test_second_confirmation_is_rejected_without_gateway_call(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment", return_value=_paid()) as check:
            await workflow.run_event(bot, self._confirm_event(make_event, order_id))
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        assert check.call_count == 1
        assert sent_texts(bot)[-1] == workflow.ALREADY_CONFIRMED_TEXT
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.FORM_SENT.value
        assert payment.status == PaymentStatus.SUCCEEDED.value

    async def test_payment_id_mismatch_is_rejected(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment") as check:
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id, "gw_other"))

        assert result.success is False
        check.assert_not_called()
        assert sent_texts(bot) == [workflow.PAYMENT_MISMATCH_TEXT]
        order, _ = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_PENDING.value

    async def test_unknown_order(self, db, bot, make_event):
        result = await workflow.run_event(bot, self._confirm_event(make_event, 404))

        assert result.success is False
        assert sent_texts(bot) == [workflow.ORDER_NOT_FOUND_TEXT]

    async def test_unpaid_payment_changes_nothing(self, db, bot, make_event):
        order_id = _place_order()
        unpaid = PaymentCheckResult(success=True, status="pending", paid=False)
        with patch("cash_healer.payments.check_payment", return_value=unpaid):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        assert sent_texts(bot) == [workflow.NOT_PAID_TEXT]
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_PENDING.value
        assert payment.status == PaymentStatus.PENDING.value

    async def test_payment_write_failure_rolls_order_back(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment", return_value=_paid()), patch(
            "cash_healer.storage.update_payment_status", side_effect=SQLAlchemyError("disk full")
        ):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_PENDING.value
        assert payment.status == PaymentStatus.PENDING.value
        assert sent_texts(bot) == [workflow.PAYMENT_ROLLED_BACK_TEXT]

    async def test_rolled_back_order_can_be_confirmed_again(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment", return_value=_paid()):
            with patch("cash_healer.storage.update_payment_status", side_effect=SQLAlchemyError("locked")):
                await workflow.run_event(bot, self._confirm_event(make_event, order_id))
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is True
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.FORM_SENT.value
        assert payment.status == PaymentStatus.SUCCEEDED.value

    async def test_failed_rollback_alerts_operators(self, db, bot, make_event, caplog):
        storage.upsert_user(ADMIN_ID, username="admin")
        order_id = _place_order()
        real_update = storage.update_order_status

        def update_order(order_id_, status):
            if status == OrderStatus.PAYMENT_PENDING:
                raise SQLAlchemyError("connection lost")
            return real_update(order_id_, status)

        with patch("cash_healer.payments.check_payment", return_value=_paid()), patch(
            "cash_healer.storage.update_payment_status", side_effect=SQLAlchemyError("connection lost")
        ), patch("cash_healer.storage.update_order_status", side_effect=update_order):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_CONFIRMED.value
        assert payment.status == PaymentStatus.PENDING.value

        calls = {call.kwargs["chat_id"]: call.kwargs["text"] for call in bot.send_message.call_args_list}
        assert calls[CLIENT_ID] == workflow.PAYMENT_STUCK_TEXT
        assert "PAYMENT_STUCK" in calls[ADMIN_ID]
        assert any(record.levelname == "CRITICAL" for record in caplog.records)

    async def test_detox_status_path(self, db, bot, make_event):
        real_apply = storage._apply_order_status
        transitions = []

        def record(order, status):
            transitions.append((order.status, OrderStatus(status).value))
            return real_apply(order, status)

        order_event = make_event(EventKind.CALLBACK, callback_data="order_detox")
        with patch("cash_healer.storage._apply_order_status", side_effect=record), patch(
            "cash_healer.payments.create_payment", return_value=_gateway()
        ), patch("cash_healer.payments.check_payment", return_value=_paid()):
            await workflow.run_event(bot, order_event)
            result = await workflow.run_event(bot, self._confirm_event(make_event, 1))

        assert result.success is True
        assert transitions == [
            ("created", "payment_pending"),
            ("payment_pending", "payment_confirmed"),
            ("payment_confirmed", "form_sent"),
        ]

    async def test_missing_payment(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.storage.get_latest_payment_for_order", return_value=None), patch(
            "cash_healer.payments.check_payment"
        ) as check:
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        check.assert_not_called()
        assert sent_texts(bot) == [workflow.PAYMENT_NOT_FOUND_TEXT]
        order, _ = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_PENDING.value

    async def test_detox_form_status_failure_keeps_payment(self, db, bot, make_event):
        order_id = _place_order(ServiceType.FINANCIAL_DETOX)
        real_update = storage.update_order_status

        def update_order(order_id_, status):
            if status == OrderStatus.FORM_SENT:
                raise SQLAlchemyError("deadlock")
            return real_update(order_id_, status)

        with patch("cash_healer.payments.check_payment", return_value=_paid()), patch(
            "cash_healer.storage.update_order_status", side_effect=update_order
        ):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        assert sent_texts(bot)[-1] == workflow.FORM_STATUS_FAILED_TEXT
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_CONFIRMED.value
        assert payment.status == PaymentStatus.SUCCEEDED.value

    async def test_modeling_completed_failure_still_succeeds(self, db, bot, make_event):
        order_id = _place_order(ServiceType.FINANCIAL_MODELING)
        real_update = storage.update_order_status

        def update_order(order_id_, status):
            if status == OrderStatus.COMPLETED:
                raise SQLAlchemyError("deadlock")
            return real_update(order_id_, status)

        with patch("cash_healer.payments.check_payment", return_value=_paid()), patch(
            "cash_healer.storage.update_order_status", side_effect=update_order
        ):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is True
        button = bot.send_message.call_args.kwargs["reply_markup"].inline_keyboard[0][0]
        assert f"orderId={order_id}" in button.url
        order, payment = order_and_payment(order_id)
        assert order.status == OrderStatus.PAYMENT_CONFIRMED.value
        assert payment.status == PaymentStatus.SUCCEEDED.value

    async def test_order_status_failure_keeps_payment_pending(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment", return_value=_paid()), patch(
            "cash_healer.storage.update_order_status", return_value=None
        ):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        _, payment = order_and_payment(order_id)
        assert payment.status == PaymentStatus.PENDING.value
        assert sent_texts(bot) == [workflow.ORDER_STATUS_FAILED_TEXT]

    async def test_unexpected_error_gets_generic_reply(self, db, bot, make_event):
        order_id = _place_order()
        with patch("cash_healer.payments.check_payment", side_effect=RuntimeError("boom")):
            result = await workflow.run_event(bot, self._confirm_event(make_event, order_id))

        assert result.success is False
        assert result.action == Action.CONFIRM_PAYMENT
        assert sent_texts(bot) == [workflow.GENERIC_ERROR_TEXT]


class TestAdminPanel:
    async def test_lists_paid_orders_oldest_first(self, db, bot, make_event):
        first = _place_order(payment_id="gw_a")
        second = _place_order(payment_id="gw_b")
        unpaid = _place_order(payment_id="gw_c")
        storage.update_order_status(first, OrderStatus.PAYMENT_CONFIRMED)
        storage.update_order_status(second, OrderStatus.PAYMENT_CONFIRMED)
        storage.update_order_status(second, OrderStatus.FORM_SENT)

        result = await workflow.run_event(bot, make_event(user_id=ADMIN_ID, text="/admin"))

        assert result.action == Action.SHOW_ADMIN_PANEL
        text = sent_texts(bot)[0]
        assert "Заявки на обработку (2)" in text
        assert text.index(f"#{first} ") < text.index(f"#{second} ")
        assert f"#{unpaid} " not in text
        assert "/send" in text

    async def test_empty_panel(self, db, bot, make_event):
        await workflow.run_event(bot, make_event(user_id=ADMIN_ID, text="/admin"))

        assert sent_texts(bot) == ["📋 Нет заявок, требующих обработки."]

    async def test_admin_command_from_client_goes_to_agent(self, db, bot, make_event):
        result = await workflow.run_event(bot, make_event(text="/admin"))

        assert result.action == Action.USE_AGENT


class TestDocuments:
    async def test_non_admin_document_is_rejected(self, db, bot, make_event):
        event = make_event(EventKind.DOCUMENT, file_id="file-1", file_name="x.pdf", caption="/send 1")
        with patch("cash_healer.storage.update_order_status") as update_order:
            result = await workflow.run_event(bot, event)

        assert result.action == Action.REJECT_NON_ADMIN_DOCUMENT
        update_order.assert_not_called()
        bot.send_document.assert_not_called()
        assert sent_texts(bot) == [workflow.NON_ADMIN_DOCUMENT_TEXT]
        assert count_rows(Order) == 0


class TestAgent:
    async def test_start_shows_services_menu(self, db, bot, make_event):
        result = await workflow.run_event(bot, make_event(text="/start"))

        assert result.success is True
        markup = bot.send_message.call_args.kwargs["reply_markup"]
        callbacks = [row[0].callback_data for row in markup.inline_keyboard]
        assert callbacks == ["order_detox", "order_modeling"]

    async def test_free_text_uses_model_when_configured(self, db, bot, make_event, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-test")
        with patch("cash_healer.workflow.ask_gpt_with_typing", new=AsyncMock(return_value="Совет дня")) as ask, patch(
            "cash_healer.messaging.asyncio.sleep", new=AsyncMock()
        ):
            result = await workflow.run_event(bot, make_event(text="как копить?"))

        assert result.success is True
        assert "как копить?" in ask.call_args.args[2]
        assert sent_texts(bot) == ["Совет дня"]

    async def test_model_failure_falls_back_to_menu(self, db, bot, make_event, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-test")
        with patch("cash_healer.workflow.ask_gpt_with_typing", new=AsyncMock(side_effect=RuntimeError("quota"))):
            result = await workflow.run_event(bot, make_event(text="привет"))

        assert result.success is False
        assert sent_texts(bot) == [workflow.AGENT_FAILED_TEXT]


class TestEnsureUser:
    def test_admin_flag_comes_from_config(self, db, make_event):
        event = make_event(user_id=ADMIN_ID)
        user = workflow.ensure_user(event)

        assert user.is_admin is True
        assert event.is_admin is True

    def test_client_is_not_admin(self, db, make_event):
        event = make_event()
        assert workflow.ensure_user(event).is_admin is False
        assert event.is_admin is False
