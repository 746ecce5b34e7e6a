"""Client error types for Pusher Channels interactions."""

from __future__ import annotations


class PusherClientError(Exception):
    """Base error for Pusher client failures."""


class PusherConfigError(PusherClientError):
    """Configuration is missing, invalid, or cannot be encoded."""


class PusherUrlError(PusherClientError):
    """An endpoint URL could not be built from the configuration."""


class PusherTimeout(PusherClientError):
    """Timeout while communicating with the service."""


class PusherConnectionError(PusherClientError):
    """No live connection, or the network connection failed."""


class PusherHandshakeError(PusherClientError):
    """WebSocket upgrade or connection-established handshake failed."""


class PusherWebSocketError(PusherClientError):
    """Sending or receiving on the socket failed."""


class PusherChannelError(PusherClientError):
    """Channel name or channel state does not allow the operation."""


class PusherJsonError(PusherClientError):
    """Malformed JSON input."""


class PusherEncryptionError(PusherClientError):
    """Encrypting a confidential channel payload failed."""


class PusherDecryptionError(PusherEncryptionError):
    """Decrypting a confidential channel payload failed."""


class PusherApiError(PusherClientError):
    """Non-2xx response from the REST API."""

    def __init__(self, status: int, body: str, message: str | None = None) -> None:
        super().__init__(message or f"API request failed: {status} - {body}")
        self.status = status
        self.body = body
