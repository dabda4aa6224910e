"""
Transactional email

Order and account notifications are built as plain-text payloads and sent
through Resend when RESEND_API_KEY is configured; otherwise they are logged.
"""
import logging
from typing import Dict, Optional

import resend

import config

logger = logging.getLogger(__name__)

ORDER_EVENTS = (
    "order_placed",
    "order_accepted",
    "order_out_for_delivery",
    "order_delivered",
    "order_cancelled",
    "custom_order_created",
    "custom_order_status_changed",
    "admin_two_factor_code",
)

# Order status -> email event sent when an order enters that status
STATUS_EMAIL_EVENTS = {
    "Accepted": "order_accepted",
    "Out for Delivery": "order_out_for_delivery",
    "Delivered": "order_delivered",
    "Cancelled": "order_cancelled",
}


class EmailDeliveryError(Exception):
    pass


def build_order_email(event: str, params: Dict[str, str]) -> Dict[str, str]:
    to = params.get("email") or "unknown@example.com"
    order_id = params.get("order_id", "")
    if event == "order_placed":
        subject = f"Order Placed - {order_id}"
        text = (
            f"Thank you {params.get('customer_name') or 'Customer'}! "
            f"Your order {order_id} has been placed. Total: {params.get('total')}."
        )
    elif event == "order_accepted":
        subject = f"Order Accepted - {order_id}"
        text = f"Your order {order_id} has been accepted and will be processed shortly."
    elif event == "order_out_for_delivery":
        subject = f"Out for Delivery - {order_id}"
        text = f"Your order {order_id} is out for delivery to: {params.get('delivery_address')}."
    elif event == "order_delivered":
        subject = f"Delivered - {order_id}"
        text = f"Your order {order_id} has been delivered. We hope you enjoy it!"
    elif event == "order_cancelled":
        subject = f"Order Cancelled - {order_id}"
        text = f"Your order {order_id} has been cancelled. Contact us if this was unexpected."
    elif event == "custom_order_created":
        subject = f"Custom Order Received - {order_id}"
        text = (
            f"Hi {params.get('customer_name') or 'Customer'}, your custom order ({order_id}) "
            f"is now pending review. We'll update you soon!"
        )
    elif event == "custom_order_status_changed":
        subject = f"Custom Order Update - {order_id}"
        text = f"Status changed to: {params.get('status')}. View details in your account."
    elif event == "admin_two_factor_code":
        subject = "Your Duha Threads admin verification code"
        text = (
            f"Your verification code is {params.get('code')}. It expires in "
            f"{params.get('expires_minutes')} minutes. If you did not request this, "
            f"please contact support immediately."
        )
    else:
        raise ValueError(f"Unknown email event: {event}")
    return {"to": to, "subject": subject, "text": text}


class ConsoleMailer:
    """Logs emails instead of delivering them"""

    def send(self, payload: Dict[str, str]):
        logger.info("[EMAIL] to=%s subject=%s\n%s", payload["to"], payload["subject"], payload["text"])


class ResendMailer:
    def __init__(self, api_key: str, sender: str):
        self.api_key = api_key
        self.sender = sender

    def send(self, payload: Dict[str, str]):
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send({
                "from": self.sender,
                "to": [payload["to"]],
                "subject": payload["subject"],
                "text": payload["text"],
            })
        except Exception as exc:
            raise EmailDeliveryError(str(exc)) from exc
        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryError(str(response))


_mailer = None


def get_mailer():
    global _mailer
    if _mailer is None:
        if config.RESEND_API_KEY:
            _mailer = ResendMailer(config.RESEND_API_KEY, config.EMAIL_FROM)
        else:
            _mailer = ConsoleMailer()
    return _mailer


def set_mailer(mailer):
    global _mailer
    _mailer = mailer


def send_email(payload: Dict[str, str]):
    get_mailer().send(payload)


def notify(event: str, params: Dict[str, str]) -> bool:
    """Best-effort send; failures are logged and never raised"""
    try:
        send_email(build_order_email(event, params))
        return True
    except Exception:
        logger.exception("Failed to send %s email to %s", event, params.get("email"))
        return False


def notify_order_status(order: dict, status: Optional[str] = None) -> bool:
    status = status or order.get("status")
    event = STATUS_EMAIL_EVENTS.get(status)
    if not event:
        return False
    return notify(event, {
        "email": order.get("email"),
        "order_id": order.get("order_number") or str(order.get("_id")),
        "delivery_address": order.get("delivery_address", ""),
    })
