"""Request and subscription signing.

REST calls carry five query parameters: ``auth_key``, ``auth_timestamp``,
``auth_version``, ``body_md5`` and ``auth_signature``. The signature is the
hex HMAC-SHA256, keyed by the app secret, of::

    METHOD\\nPATH\\nauth_key=...&auth_timestamp=...&auth_version=1.0&body_md5=...

with the parameters sorted by name.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from typing import Any

from .errors import PusherConfigError

AUTH_VERSION = "1.0"


def _to_bytes(value: str | bytes, what: str) -> bytes:
    if isinstance(value, bytes):
        try:
            value.decode("utf-8")
        except UnicodeDecodeError as err:
            raise PusherConfigError(f"{what} is not valid UTF-8") from err
        return value
    try:
        return value.encode("utf-8")
    except UnicodeEncodeError as err:
        raise PusherConfigError(f"{what} is not valid UTF-8") from err


class PusherAuth:
    """Signs REST requests and channel subscriptions."""

    def __init__(self, app_key: str, app_secret: str) -> None:
        self._app_key = app_key
        self._secret = _to_bytes(app_secret, "app secret")

    @property
    def app_key(self) -> str:
        return self._app_key

    def sign(self, message: str) -> str:
        """Return the hex HMAC-SHA256 of ``message`` under the app secret."""
        return hmac.new(
            self._secret, _to_bytes(message, "signing string"), hashlib.sha256
        ).hexdigest()

    def authenticate_request(
        self,
        method: str,
        path: str,
        body: str | bytes | Mapping[str, Any],
        *,
        timestamp: int | None = None,
    ) -> dict[str, str]:
        """Build the authentication query parameters for a REST call.

        Args:
            method: HTTP method, e.g. "POST"
            path: Absolute request path, e.g. "/apps/123/events"
            body: Exact request body; a mapping is serialized with json.dumps
            timestamp: Epoch seconds override; the current time when omitted

        Returns:
            Parameters in signing order, with ``auth_signature`` last.

        Raises:
            PusherConfigError: If the body or signing string is not valid UTF-8
        """
        if isinstance(body, Mapping):
            body = json.dumps(body)
        body_md5 = hashlib.md5(_to_bytes(body, "request body")).hexdigest()

        params = {
            "auth_key": self._app_key,
            "auth_timestamp": str(int(time.time()) if timestamp is None else timestamp),
            "auth_version": AUTH_VERSION,
            "body_md5": body_md5,
        }
        query = "&".join(f"{key}={params[key]}" for key in sorted(params))
        string_to_sign = f"{method.upper()}\n{path}\n{query}"

        params["auth_signature"] = self.sign(string_to_sign)
        return params

    def authenticate_socket(
        self,
        socket_id: str,
        channel_name: str,
        channel_data: str | None = None,
    ) -> str:
        """Return the ``auth`` value for a private, presence or encrypted subscription."""
        parts = [socket_id, channel_name]
        if channel_data is not None:
            parts.append(channel_data)
        return f"{self._app_key}:{self.sign(':'.join(parts))}"
