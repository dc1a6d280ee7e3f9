"""
QStash request signature verification.

QStash signs every delivery with a JWT in the ``Upstash-Signature`` header
(HS256, issuer ``Upstash``, ``sub`` = destination URL, ``body`` = base64url
SHA-256 of the raw request body). Both the current and the next signing
key are accepted so keys can be rotated without dropping deliveries.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any

import jwt

from pharmacall.shared.exceptions import ConfigurationError, SignatureVerificationError
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

ISSUER = "Upstash"


def body_digest(body: bytes) -> str:
    """base64url SHA-256 of ``body`` without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


class QStashSignatureVerifier:
    def __init__(
        self,
        current_signing_key: str,
        next_signing_key: str = "",
        clock_tolerance_seconds: int = 5,
    ) -> None:
        keys = [key for key in (current_signing_key, next_signing_key) if key]
        if not keys:
            raise ConfigurationError(message="At least one QStash signing key is required")
        self._keys = keys
        self._leeway = clock_tolerance_seconds

    def verify(self, signature: str | None, body: bytes, url: str | None = None) -> dict[str, Any]:
        """Verify a delivery.

        Args:
            signature: Value of the ``Upstash-Signature`` header.
            body: Raw request body.
            url: Expected destination URL; ``sub`` is checked when given.

        Returns:
            Decoded claims.

        Raises:
            SignatureVerificationError: if no key validates the signature.
        """
        if not signature:
            raise SignatureVerificationError(message="Missing Upstash-Signature header")

        last_error: Exception | None = None
        for key in self._keys:
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer=ISSUER,
                    leeway=self._leeway,
                    options={"require": ["iss", "exp", "body"]},
                )
            except jwt.PyJWTError as exc:
                last_error = exc
                continue

            self._check_claims(claims, body, url)
            return claims

        logger.warning("QStash signature rejected", extra={"error": str(last_error)})
        raise SignatureVerificationError(message="Invalid QStash signature")

    @staticmethod
    def _check_claims(claims: dict[str, Any], body: bytes, url: str | None) -> None:
        if url is not None and claims.get("sub") != url:
            raise SignatureVerificationError(
                message="QStash signature subject mismatch",
                details={"expected": url, "sub": claims.get("sub")},
            )
        expected = body_digest(body)
        presented = str(claims.get("body", "")).rstrip("=")
        if not hmac.compare_digest(expected, presented):
            raise SignatureVerificationError(message="QStash signature body hash mismatch")
