"""Async client for Pusher Channels: socket subscriptions and signed publishing."""

__version__ = "0.1.0"

from .auth import PusherAuth
from .channels import Channel, ChannelType
from .client import PusherClient
from .config import PusherConfig, ReconnectPolicy
from .connection import ConnectionState
from .crypto import ChannelCryptographer
from .dispatcher import EventDispatcher
from .errors import (
    PusherApiError,
    PusherChannelError,
    PusherClientError,
    PusherConfigError,
    PusherConnectionError,
    PusherDecryptionError,
    PusherEncryptionError,
    PusherHandshakeError,
    PusherJsonError,
    PusherTimeout,
    PusherUrlError,
    PusherWebSocketError,
)
from .http import BatchEvent, PusherHttpClient
from .protocol import Event

__all__ = [
    "BatchEvent",
    "Channel",
    "ChannelCryptographer",
    "ChannelType",
    "ConnectionState",
    "Event",
    "EventDispatcher",
    "PusherApiError",
    "PusherAuth",
    "PusherChannelError",
    "PusherClient",
    "PusherClientError",
    "PusherConfig",
    "PusherConfigError",
    "PusherConnectionError",
    "PusherDecryptionError",
    "PusherEncryptionError",
    "PusherHandshakeError",
    "PusherHttpClient",
    "PusherJsonError",
    "PusherTimeout",
    "PusherUrlError",
    "PusherWebSocketError",
    "ReconnectPolicy",
    "__version__",
]
