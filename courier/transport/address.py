"""
Network addresses for outgoing messages.

Queue rows carry the target as an opaque string. Before anything is sent it is
parsed into an ``Address`` in the network's ``user[.agent][:device]@server``
form; anything else is rejected so the row can be failed without a send.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..constants import GROUP_SERVER
from ..exceptions import InvalidTargetError

_MAX_AGENT = 0xFF
_MAX_DEVICE = 0xFFFF


@dataclass(frozen=True)
class Address:
    """A parsed, transport-ready destination."""

    user: str
    server: str
    agent: int = 0
    device: int = 0

    @property
    def is_group(self) -> bool:
        return self.server == GROUP_SERVER

    def __str__(self) -> str:
        if self.agent:
            return f"{self.user}.{self.agent}:{self.device}@{self.server}"
        if self.device:
            return f"{self.user}:{self.device}@{self.server}"
        return f"{self.user}@{self.server}"


def _parse_int(raw: str, label: str, upper: int, target: str) -> int:
    if not raw.isdigit():
        raise InvalidTargetError(f"invalid target {target!r}: {label} must be numeric")
    value = int(raw)
    if value > upper:
        raise InvalidTargetError(f"invalid target {target!r}: {label} out of range")
    return value


def parse_target(target: str) -> Address:
    """Parse a queue row's target string.

    Raises:
        InvalidTargetError: if the string is not ``user[.agent][:device]@server``.
    """
    if not target or not target.strip():
        raise InvalidTargetError("invalid target: empty")
    if any(ch.isspace() for ch in target):
        raise InvalidTargetError(f"invalid target {target!r}: contains whitespace")

    parts = target.split("@")
    if len(parts) != 2:
        raise InvalidTargetError(f"invalid target {target!r}: expected exactly one '@'")
    user, server = parts
    if not user or not server:
        raise InvalidTargetError(f"invalid target {target!r}: user and server are required")

    agent = device = 0
    if "." in user:
        user_parts = user.split(".")
        if len(user_parts) != 2:
            raise InvalidTargetError(f"invalid target {target!r}: unexpected number of dots")
        user, agent_device = user_parts
        ad_parts = agent_device.split(":")
        if len(ad_parts) > 2:
            raise InvalidTargetError(f"invalid target {target!r}: unexpected number of colons")
        agent = _parse_int(ad_parts[0], "agent", _MAX_AGENT, target)
        if len(ad_parts) == 2:
            device = _parse_int(ad_parts[1], "device", _MAX_DEVICE, target)
    elif ":" in user:
        user_parts = user.split(":")
        if len(user_parts) != 2:
            raise InvalidTargetError(f"invalid target {target!r}: unexpected number of colons")
        user = user_parts[0]
        device = _parse_int(user_parts[1], "device", _MAX_DEVICE, target)

    if not user:
        raise InvalidTargetError(f"invalid target {target!r}: user is required")
    return Address(user=user, server=server, agent=agent, device=device)
