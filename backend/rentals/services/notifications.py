from __future__ import annotations

"""Guest/host notification fan-out.

`NotificationDispatcher` is the boundary to the delivery channels. The booking
core never calls it directly: state transitions write outbox rows (see
notification_outbox) and the worker replays them through a dispatcher, so a
delivery failure can never unwind a committed transition.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from rentals.errors import ExternalDispatchError
from rentals.services.sms.provider import SMSProvider
from rentals.utils import now_utc

logger = logging.getLogger(__name__)


SMS_TEMPLATES = {
    "booking_confirmed_guest": "Hi {guest_name}, your {car} booking {booking_code} ({start_date} to {end_date}) is confirmed.",
    "booking_confirmed_host": "New confirmed booking {booking_code} for your {car}, {start_date} to {end_date}. Guest: {guest_name}.",
    "booking_rejected": "Hi {guest_name}, booking {booking_code} could not be approved: {reason}. Your card hold has been released.",
    "documents_requested": "Hi {guest_name}, we need more documents for booking {booking_code}: {documents}. {message}",
}

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"


def render_template(template_key: str, variables: Dict[str, Any]) -> str:
    template = SMS_TEMPLATES.get(template_key, "{message}")
    try:
        return template.format(**variables).strip()
    except KeyError:
        return template


@dataclass
class ContactInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class BookingConfirmedNotice:
    booking_id: str
    booking_code: str
    guest: ContactInfo
    host: ContactInfo
    car_summary: str
    start_date: str
    end_date: str
    guest_id: Optional[str] = None
    host_id: Optional[str] = None
    car_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BookingConfirmedNotice":
        data = dict(payload)
        data["guest"] = ContactInfo(**(data.get("guest") or {}))
        data["host"] = ContactInfo(**(data.get("host") or {}))
        return cls(**data)


@dataclass
class BellPairNotice:
    booking_id: str
    type: str
    guest_id: Optional[str]
    host_id: Optional[str]
    guest_title: str
    guest_message: str
    host_title: str
    host_message: str
    guest_action_url: Optional[str] = None
    host_action_url: Optional[str] = None
    priority: str = PRIORITY_NORMAL

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BellPairNotice":
        return cls(**payload)


@dataclass
class GuestMessage:
    booking_id: str
    to: Optional[str]
    template: str
    variables: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GuestMessage":
        return cls(**payload)


class NotificationDispatcher(ABC):
    @abstractmethod
    async def notify_booking_confirmed(self, notice: BookingConfirmedNotice) -> None:
        ...

    @abstractmethod
    async def notify_bell_pair(self, notice: BellPairNotice) -> None:
        ...

    @abstractmethod
    async def notify_guest(self, message: GuestMessage) -> None:
        ...


class InAppNotificationDispatcher(NotificationDispatcher):
    """Bell rows in Mongo plus SMS through the configured provider."""

    def __init__(self, db, sms_provider: SMSProvider) -> None:
        self.db = db
        self.sms = sms_provider

    async def _send_sms(self, to: Optional[str], message: str, *, booking_id: str) -> None:
        if not to:
            logger.info("No phone on file for booking %s, skipping SMS", booking_id)
            return
        result = await self.sms.send_sms(to, message)
        if result.get("status") not in {"delivered", "queued", "sent"}:
            raise ExternalDispatchError(
                "SMS provider did not accept message",
                {"booking_id": booking_id, "status": result.get("status")},
            )

    async def notify_booking_confirmed(self, notice: BookingConfirmedNotice) -> None:
        variables = {
            "guest_name": notice.guest.name or "there",
            "car": notice.car_summary,
            "booking_code": notice.booking_code,
            "start_date": notice.start_date,
            "end_date": notice.end_date,
        }
        await self._send_sms(
            notice.guest.phone,
            render_template("booking_confirmed_guest", variables),
            booking_id=notice.booking_id,
        )
        await self._send_sms(
            notice.host.phone,
            render_template("booking_confirmed_host", variables),
            booking_id=notice.booking_id,
        )

    async def notify_bell_pair(self, notice: BellPairNotice) -> None:
        now = now_utc()
        rows = []
        for audience, recipient_id, title, message, url in (
            ("guest", notice.guest_id, notice.guest_title, notice.guest_message, notice.guest_action_url),
            ("host", notice.host_id, notice.host_title, notice.host_message, notice.host_action_url),
        ):
            if not recipient_id:
                continue
            rows.append(
                {
                    "_id": f"bell_{uuid.uuid4().hex}",
                    "booking_id": notice.booking_id,
                    "recipient_type": audience,
                    "recipient_id": recipient_id,
                    "type": notice.type,
                    "title": title,
                    "message": message,
                    "action_url": url or "",
                    "priority": notice.priority,
                    "is_read": False,
                    "created_at": now,
                }
            )
        if rows:
            await self.db.bell_notifications.insert_many(rows)

    async def notify_guest(self, message: GuestMessage) -> None:
        await self._send_sms(
            message.to,
            render_template(message.template, message.variables),
            booking_id=message.booking_id,
        )
