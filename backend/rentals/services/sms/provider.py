"""SMS provider abstraction.

ABC interface + MockSMSProvider. Real delivery lives outside this service;
the mock keeps what it "sent" in memory so tests and local runs can inspect it.
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List


class SMSProvider(ABC):
    """Abstract SMS provider interface."""

    @abstractmethod
    async def send_sms(self, to: str, message: str, sender_id: str = "") -> Dict[str, Any]:
        """Send single SMS. Returns {message_id, status}."""
        ...

    @abstractmethod
    async def get_status(self, message_id: str) -> Dict[str, Any]:
        """Get delivery status."""
        ...


class MockSMSProvider(SMSProvider):
    """Mock SMS provider for development/testing."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send_sms(self, to: str, message: str, sender_id: str = "") -> Dict[str, Any]:
        entry = {
            "message_id": f"sms_{uuid.uuid4().hex[:12]}",
            "to": to,
            "message": message,
            "sender_id": sender_id,
            "status": "delivered",
            "provider": "mock",
        }
        self.sent.append(entry)
        return entry

    async def get_status(self, message_id: str) -> Dict[str, Any]:
        for entry in self.sent:
            if entry["message_id"] == message_id:
                return {"message_id": message_id, "status": entry["status"]}
        return {"message_id": message_id, "status": "not_found"}


_providers: Dict[str, SMSProvider] = {}


def get_sms_provider(name: str = "mock") -> SMSProvider:
    # only the mock ships with this service; unknown names fall back to it
    if name not in _providers:
        _providers[name] = MockSMSProvider()
    return _providers[name]
