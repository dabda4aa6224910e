import pytest

import notifications
from notifications import (
    ConsoleMailer,
    EmailDeliveryError,
    ResendMailer,
    build_order_email,
    notify,
    notify_order_status,
)


def test_build_order_placed_email():
    email = build_order_email("order_placed", {
        "email": "alice@example.com",
        "customer_name": "Alice",
        "order_id": "ORD-20250101-000",
        "total": "50.00",
    })
    assert email["to"] == "alice@example.com"
    assert email["subject"] == "Order Placed - ORD-20250101-000"
    assert "Thank you Alice!" in email["text"]
    assert "Total: 50.00" in email["text"]


def test_build_out_for_delivery_mentions_address():
    email = build_order_email("order_out_for_delivery", {"email": "a@example.com", "order_id": "X", "delivery_address": "Bole"})
    assert email["text"] == "Your order X is out for delivery to: Bole."


def test_build_two_factor_email():
    email = build_order_email("admin_two_factor_code", {"email": "a@example.com", "code": "123456", "expires_minutes": "10"})
    assert "123456" in email["text"]
    assert "10 minutes" in email["text"]


def test_build_unknown_event():
    with pytest.raises(ValueError):
        build_order_email("birthday", {})


def test_notify_order_status_only_for_mapped_statuses(mailer):
    order = {"email": "a@example.com", "order_number": "ORD-1", "delivery_address": "Bole"}
    assert notify_order_status(order, "In Printing") is False
    assert notify_order_status(order, "Delivered") is True
    assert mailer.subjects() == ["Delivered - ORD-1"]


def test_notify_swallows_delivery_errors():
    class BrokenMailer:
        def send(self, payload):
            raise EmailDeliveryError("down")

    notifications.set_mailer(BrokenMailer())
    assert notify("order_accepted", {"email": "a@example.com", "order_id": "ORD-1"}) is False


def test_console_mailer_logs(caplog):
    with caplog.at_level("INFO", logger="notifications"):
        ConsoleMailer().send({"to": "a@example.com", "subject": "Hi", "text": "Body"})
    assert "subject=Hi" in caplog.text


def test_get_mailer_defaults_to_console(monkeypatch):
    monkeypatch.setattr(notifications.config, "RESEND_API_KEY", None)
    notifications.set_mailer(None)
    assert isinstance(notifications.get_mailer(), ConsoleMailer)


def test_resend_mailer(monkeypatch):
    sent = []

    def fake_send(params):
        sent.append(params)
        return {"id": "email_123"}

    monkeypatch.setattr(notifications.resend.Emails, "send", fake_send)
    ResendMailer("re_test", "Shop <shop@example.com>").send({"to": "a@example.com", "subject": "S", "text": "T"})
    assert sent == [{"from": "Shop <shop@example.com>", "to": ["a@example.com"], "subject": "S", "text": "T"}]


def test_resend_mailer_failure(monkeypatch):
    def fake_send(params):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(notifications.resend.Emails, "send", fake_send)
    with pytest.raises(EmailDeliveryError):
        ResendMailer("re_test", "shop@example.com").send({"to": "a@example.com", "subject": "S", "text": "T"})
