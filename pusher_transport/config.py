"""Configuration value objects for the Pusher client."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import PusherConfigError, PusherUrlError

PROTOCOL_VERSION = 7
SERVICE_DOMAIN = "pusher.com"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise PusherConfigError(f"{name} must be a boolean, got {raw!r}")


def _check_host(host: str) -> None:
    if not host or any(ch.isspace() for ch in host) or "/" in host:
        raise PusherUrlError(f"Invalid host: {host!r}")


@dataclass(frozen=True, slots=True)
class PusherConfig:
    """Application credentials and endpoint selection.

    Attributes:
        app_id: Numeric application id, used in REST paths
        app_key: Public application key, used in the socket URL and signatures
        app_secret: Application secret, used for signing and key derivation
        cluster: Cluster name, e.g. "eu" or "mt1"
        host: Optional WebSocket host override
        use_tls: Use wss:// rather than ws:// for the socket
    """

    app_id: str
    app_key: str
    app_secret: str = field(repr=False)
    cluster: str
    host: str | None = None
    use_tls: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PusherConfig:
        """Build a configuration from PUSHER_* environment variables.

        Required: PUSHER_APP_ID, PUSHER_KEY, PUSHER_SECRET, PUSHER_CLUSTER.
        Optional: PUSHER_HOST, PUSHER_USE_TLS (default true).

        Raises:
            PusherConfigError: If a required variable is missing or a value
                cannot be parsed
        """
        env = os.environ if environ is None else environ

        def required(name: str) -> str:
            value = env.get(name, "").strip()
            if not value:
                raise PusherConfigError(f"{name} environment variable is not set")
            return value

        use_tls_raw = env.get("PUSHER_USE_TLS")
        return cls(
            app_id=required("PUSHER_APP_ID"),
            app_key=required("PUSHER_KEY"),
            app_secret=required("PUSHER_SECRET"),
            cluster=required("PUSHER_CLUSTER"),
            host=env.get("PUSHER_HOST", "").strip() or None,
            use_tls=True
            if use_tls_raw is None
            else _parse_bool("PUSHER_USE_TLS", use_tls_raw),
        )

    @property
    def websocket_host(self) -> str:
        return self.host or f"ws-{self.cluster}.{SERVICE_DOMAIN}"

    @property
    def api_host(self) -> str:
        return f"api-{self.cluster}.{SERVICE_DOMAIN}"

    def websocket_url(self) -> str:
        """Return the socket endpoint for this application.

        Raises:
            PusherUrlError: If the key, cluster or host cannot form a URL
        """
        if not self.app_key:
            raise PusherUrlError("app_key is required to build the socket URL")
        if not self.host and not self.cluster:
            raise PusherUrlError("cluster or host is required to build the socket URL")
        host = self.websocket_host
        _check_host(host)
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{host}/app/{self.app_key}?protocol={PROTOCOL_VERSION}"

    def api_url(self, path: str) -> str:
        """Return the REST URL for an absolute API path."""
        if not self.cluster:
            raise PusherUrlError("cluster is required to build the API URL")
        host = self.api_host
        _check_host(host)
        return f"https://{host}{path}"


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Bounded exponential backoff between reconnection attempts.

    Attributes:
        max_attempts: Attempts before the connection is declared failed
        base_delay: Delay before the first attempt (seconds)
        max_delay: Cap on any single delay (seconds)
    """

    max_attempts: int = 6
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Return the delay before the zero-based ``attempt``."""
        return min(self.base_delay * (2**attempt), self.max_delay)
