"""Channel model and name-prefix classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

ENCRYPTED_CHANNEL_PREFIX = "private-encrypted-"
PRIVATE_CHANNEL_PREFIX = "private-"
PRESENCE_CHANNEL_PREFIX = "presence-"


class ChannelType(Enum):
    """Channel kinds, derived from the channel name prefix."""

    PUBLIC = "public"
    PRIVATE = "private"
    PRESENCE = "presence"
    PRIVATE_ENCRYPTED = "private_encrypted"


def channel_type_for(name: str) -> ChannelType:
    """Classify a channel name by its prefix."""
    # The encrypted prefix is itself private-prefixed, so test it first.
    if name.startswith(ENCRYPTED_CHANNEL_PREFIX):
        return ChannelType.PRIVATE_ENCRYPTED
    if name.startswith(PRIVATE_CHANNEL_PREFIX):
        return ChannelType.PRIVATE
    if name.startswith(PRESENCE_CHANNEL_PREFIX):
        return ChannelType.PRESENCE
    return ChannelType.PUBLIC


def is_encrypted_channel(name: str) -> bool:
    return channel_type_for(name) is ChannelType.PRIVATE_ENCRYPTED


@dataclass(slots=True)
class Channel:
    """A subscribed channel."""

    name: str
    channel_type: ChannelType
    channel_data: dict[str, Any] | None = None

    @classmethod
    def from_name(
        cls, name: str, *, channel_data: dict[str, Any] | None = None
    ) -> Channel:
        return cls(name=name, channel_type=channel_type_for(name), channel_data=channel_data)

    @property
    def requires_auth(self) -> bool:
        """Whether subscribing needs a socket-scoped signature."""
        return self.channel_type is not ChannelType.PUBLIC
