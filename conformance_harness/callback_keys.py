"""Signed keys correlating inbound callbacks with suspended sequence results."""

import base64
import hashlib
import hmac
from dataclasses import dataclass

from pydantic import SecretStr


class InvalidCallbackKeyError(Exception):
    """Raised when a callback key is malformed or its signature does not match."""


@dataclass(frozen=True, kw_only=True)
class CallbackKeys:
    """Issue and verify keys of the form ``<payload>.<signature>``.

    The payload is the url-safe base64 of ``instance_id:result_id``; the
    signature is an HMAC-SHA256 of the payload under the configured secret.
    """

    secret: SecretStr

    def sign(self, instance_id: str, result_id: str) -> str:
        payload = (
            base64.urlsafe_b64encode(f"{instance_id}:{result_id}".encode())
            .decode()
            .rstrip("=")
        )
        return f"{payload}.{self._signature(payload)}"

    def verify(self, key: str) -> tuple[str, str]:
        """Return ``(instance_id, result_id)`` for a key issued by ``sign``.

        Raises:
            InvalidCallbackKeyError: If the key was not issued with this secret

        """
        payload, _, signature = key.partition(".")
        if not payload or not signature:
            raise InvalidCallbackKeyError("Malformed callback key")
        if not hmac.compare_digest(signature, self._signature(payload)):
            raise InvalidCallbackKeyError("Callback key signature mismatch")

        padded = payload + "=" * (-len(payload) % 4)
        try:
            decoded = base64.urlsafe_b64decode(padded).decode()
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidCallbackKeyError("Malformed callback key") from e

        instance_id, separator, result_id = decoded.rpartition(":")
        if not separator or not instance_id or not result_id:
            raise InvalidCallbackKeyError("Malformed callback key")
        return instance_id, result_id

    def _signature(self, payload: str) -> str:
        return hmac.new(
            self.secret.get_secret_value().encode(),
            payload.encode(),
            hashlib.sha256,
        ).hexdigest()


@dataclass(frozen=True, kw_only=True)
class CallbackLinks:
    """Builds the callback URLs test bodies hand to the system under test."""

    keys: CallbackKeys
    base_url: str

    def url_for(self, key: str, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/oauth2/{key}/{endpoint}"
