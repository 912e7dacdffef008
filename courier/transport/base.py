"""
Transport contract: the messaging-network client the outbox hands sends to.
"""

from abc import ABC, abstractmethod

from .address import Address


class Transport(ABC):
    """Delivers text content to a parsed address on the messaging network."""

    async def start(self) -> None:
        """Prepare the client (open sessions, resolve own identity)."""

    async def close(self) -> None:
        """Release client resources."""

    @property
    def account_id(self) -> str | None:
        """Identity of the sending account, if known."""
        return None

    @abstractmethod
    async def send(self, address: Address, content: str) -> str:
        """Send ``content`` and return the provider-assigned message id.

        Raises:
            TransportError: if the network rejects or fails the send.
        """
