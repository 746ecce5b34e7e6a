"""Confidential channel payload encryption.

Each ``private-encrypted-`` channel has a 32-byte secret derived from the app
secret with HMAC-SHA256 over the channel name. Payloads are AES-256-CBC with
PKCS7 padding; the wire form is ``base64(iv || ciphertext)`` with a fresh
16-byte IV per message.

CBC carries no integrity tag, so tampering is only caught when it breaks the
padding.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import PusherConfigError, PusherDecryptionError, PusherEncryptionError

KEY_SIZE = 32
IV_SIZE = 16
_BLOCK_BITS = algorithms.AES.block_size


class ChannelCryptographer:
    """Derives per-channel secrets and encrypts/decrypts channel payloads."""

    def __init__(self, app_secret: str) -> None:
        try:
            self._app_secret = app_secret.encode("utf-8")
        except UnicodeEncodeError as err:
            raise PusherConfigError("app secret is not valid UTF-8") from err

    def derive_secret(self, channel_name: str) -> bytes:
        """Return the 32-byte key for ``channel_name``.

        Deterministic for a given app secret, so resubscribing never needs a
        new key exchange.
        """
        return hmac.new(
            self._app_secret, channel_name.encode("utf-8"), hashlib.sha256
        ).digest()

    @staticmethod
    def encrypt(plaintext: str, secret: bytes) -> str:
        """Encrypt ``plaintext`` under ``secret`` with a freshly drawn IV."""
        if len(secret) != KEY_SIZE:
            raise PusherEncryptionError(
                f"Channel secret must be {KEY_SIZE} bytes, got {len(secret)}"
            )
        try:
            data = plaintext.encode("utf-8")
        except UnicodeEncodeError as err:
            raise PusherEncryptionError("Plaintext is not valid UTF-8") from err
        iv = secrets.token_bytes(IV_SIZE)

        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(data) + padder.finalize()

        encryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return base64.b64encode(iv + ciphertext).decode("ascii")

    @staticmethod
    def decrypt(payload: str, secret: bytes) -> str:
        """Reverse :meth:`encrypt`.

        Raises:
            PusherDecryptionError: On bad base64, bad length, bad padding or
                a plaintext that is not UTF-8
        """
        if len(secret) != KEY_SIZE:
            raise PusherDecryptionError(
                f"Channel secret must be {KEY_SIZE} bytes, got {len(secret)}"
            )
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as err:
            raise PusherDecryptionError("Payload is not valid base64") from err

        if len(raw) < IV_SIZE * 2 or len(raw) % IV_SIZE:
            raise PusherDecryptionError(
                f"Payload length {len(raw)} is not IV plus whole blocks"
            )
        iv, ciphertext = raw[:IV_SIZE], raw[IV_SIZE:]

        decryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as err:
            raise PusherDecryptionError("Invalid padding") from err

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise PusherDecryptionError("Plaintext is not valid UTF-8") from err
