"""Messaging-network transports and target address parsing."""

from courier.transport.address import Address, parse_target
from courier.transport.base import Transport

__all__ = ["Address", "Transport", "parse_target"]
