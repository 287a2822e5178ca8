"""
Customer and admin e-mail, sent through the Resend HTTP API.

Order code never calls the sender directly. It emits an event
(``order_created``, ``order_status_changed``, ``account_created``) which
queues delivery as a background task to run after the response is sent.
Delivery failures are logged and dropped; they never reach the caller.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from fastapi import BackgroundTasks
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import FRONTEND_URL, RESEND_API_KEY, RESEND_API_URL, RESEND_FROM_EMAIL

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "processing": "is being prepared",
    "delivered": "has been delivered",
    "cancelled": "has been cancelled",
}
NOTIFY_STATUSES = frozenset(STATUS_MESSAGES)


class NotificationError(Exception):
    pass


def order_reference(order: Dict[str, Any]) -> str:
    return str(order.get("id") or order.get("_id", ""))[-8:].upper()


def _customer_name(order: Dict[str, Any]) -> str:
    info = order.get("shipping_info") or {}
    return info.get("name") or info.get("first_name") or "Customer"


def _items_text(order: Dict[str, Any]) -> str:
    rows = []
    for item in order.get("order_items") or []:
        variant = ", ".join(v for v in (item.get("selected_size"), item.get("selected_color")) if v)
        suffix = f" ({variant})" if variant else ""
        rows.append(f"- {item['name']}{suffix} x{item['quantity']}: {item['price'] * item['quantity']:.2f}")
    return "\n".join(rows)


class Notifier:
    def __init__(
        self,
        api_key: Optional[str] = RESEND_API_KEY,
        from_email: Optional[str] = RESEND_FROM_EMAIL,
        api_url: str = RESEND_API_URL,
        frontend_url: str = FRONTEND_URL,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.frontend_url = frontend_url
        self.timeout = timeout

    async def send(self, to: List[str], subject: str, text: str) -> Optional[str]:
        if not self.api_key or not self.from_email:
            raise NotificationError("RESEND_API_KEY and RESEND_FROM_EMAIL must be set to send e-mail")
        payload = {"from": self.from_email, "to": to, "subject": subject, "text": text}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.api_url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json().get("id")

    async def send_order_confirmation(self, order: Dict[str, Any]) -> None:
        email = (order.get("shipping_info") or {}).get("email")
        if not email:
            logger.warning("Order %s has no e-mail, skipping confirmation", order_reference(order))
            return
        ref = order_reference(order)
        text = (
            f"Hi {_customer_name(order)},\n\n"
            f"Thank you for your order #{ref}.\n\n"
            f"{_items_text(order)}\n\n"
            f"Items: {order['items_price']:.2f}\n"
            f"Delivery: {order['delivery_price']:.2f}\n"
            f"Total: {order['total_price']:.2f}\n"
        )
        await self.send([email], f"Order Confirmation #{ref}", text)
        logger.info("Order confirmation sent to %s", email)

    async def send_order_status_change(self, order: Dict[str, Any], previous_status: str) -> None:
        email = (order.get("shipping_info") or {}).get("email")
        if not email:
            logger.warning("Order %s has no e-mail, skipping status update", order_reference(order))
            return
        ref = order_reference(order)
        status = order["order_status"]
        text = (
            f"Hi {_customer_name(order)},\n\n"
            f"Your order #{ref} {STATUS_MESSAGES.get(status, 'was updated')} "
            f"(previously {previous_status}).\n"
        )
        await self.send([email], f"Order #{ref} {status.capitalize()}", text)

    async def send_admin_new_order_alert(self, order: Dict[str, Any], recipients: List[str]) -> None:
        if not recipients:
            logger.warning("No admin users found to notify about order %s", order_reference(order))
            return
        ref = order_reference(order)
        info = order.get("shipping_info") or {}
        text = (
            f"New order #{ref} from {_customer_name(order)} <{info.get('email', '')}>\n"
            f"{'Guest checkout' if order.get('is_guest_order') else 'Registered customer'}\n\n"
            f"{_items_text(order)}\n\n"
            f"Total: {order['total_price']:.2f} (profit {order.get('total_profit', 0):.2f})\n"
        )
        await self.send(recipients, f"New Order #{ref}", text)

    async def send_account_verification(self, user: Dict[str, Any], token: str) -> None:
        link = httpx.URL(f"{self.frontend_url}/verify-email", params={"token": token, "email": user["email"]})
        text = (
            f"Hi {user.get('name') or 'there'},\n\n"
            f"Please confirm your e-mail address by opening this link:\n{link}\n"
        )
        await self.send([user["email"]], "Verify Your Email Address", text)


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


async def deliver(label: str, send: Callable[..., Awaitable[None]], *args: Any) -> None:
    try:
        await send(*args)
    except Exception:
        logger.exception("Failed to send %s", label)


# ----------------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------------

def admin_emails(db: Database) -> List[str]:
    return [u["email"] for u in db["user"].find({"role": "admin"}, {"email": 1}) if u.get("email")]


def order_created(tasks: BackgroundTasks, notifier: Notifier, db: Database, order: Dict[str, Any]) -> None:
    tasks.add_task(deliver, "order confirmation", notifier.send_order_confirmation, order)
    # recipients are read here; the task runs on the event loop
    try:
        recipients = admin_emails(db)
    except PyMongoError:
        logger.exception("Could not look up admins for order %s", order_reference(order))
        return
    tasks.add_task(deliver, "admin order alert", notifier.send_admin_new_order_alert, order, recipients)


def order_status_changed(tasks: BackgroundTasks, notifier: Notifier, order: Dict[str, Any], previous_status: str) -> None:
    if order.get("order_status") in NOTIFY_STATUSES and order.get("order_status") != previous_status:
        tasks.add_task(deliver, "order status update", notifier.send_order_status_change, order, previous_status)


def account_created(tasks: BackgroundTasks, notifier: Notifier, user: Dict[str, Any], token: str) -> None:
    tasks.add_task(deliver, "verification e-mail", notifier.send_account_verification, user, token)
