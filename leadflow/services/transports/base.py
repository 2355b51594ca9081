"""
Transport interface - one provider-backed way to put a message in front of a lead.
Implementations raise TransportError (never raw SDK / HTTP exceptions).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class TransportReceipt:
    message_id: Optional[str]
    status: str = "sent"
    provider: Optional[str] = None
    segments: int = 1


class Transport(ABC):
    provider_name: str = "unknown"

    @abstractmethod
    async def send(
        self,
        to: str,
        body: str,
        sender: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> TransportReceipt:
        """Hand one message to the provider. Returns once the provider accepted it."""

    @staticmethod
    @abstractmethod
    def map_status(provider_status: str) -> Optional[str]:
        """Provider status string → internal delivery status (None when unknown)."""
