"""Resend webhook signature verification (Svix signing scheme).

Resend signs each delivery with HMAC-SHA256 over
``"{svix-id}.{svix-timestamp}.{body}"`` using the base64 part of a
``whsec_`` secret. The ``svix-signature`` header holds one or more
space-separated ``v1,<base64 signature>`` entries.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

WebhookEndpoint = Literal["inbound", "events"]

TIMESTAMP_TOLERANCE_SECONDS = 5 * 60
SECRET_PREFIX = "whsec_"


@dataclass
class WebhookVerification:
    """Outcome of verifying one delivery."""

    verified: bool
    payload: dict[str, Any] | None = None
    error: str | None = None


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX) :])
    return secret.encode("utf-8")


def compute_signature(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 signature of a delivery."""
    signed = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _parse_payload(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class WebhookVerifier:
    """Verifies Resend deliveries per endpoint.

    Args:
        secret_for: Returns the signing secret for an endpoint ("" when unset).
        allow_unsigned: Accept deliveries when no secret is configured.
        tolerance_seconds: Largest accepted clock skew of ``svix-timestamp``.
        clock: Current UNIX time, injectable for tests.
    """

    def __init__(
        self,
        secret_for: Callable[[WebhookEndpoint], str],
        allow_unsigned: bool = True,
        tolerance_seconds: int = TIMESTAMP_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_for = secret_for
        self._allow_unsigned = allow_unsigned
        self._tolerance = tolerance_seconds
        self._clock = clock

    def verify(
        self,
        body: bytes,
        headers: Mapping[str, str],
        endpoint: WebhookEndpoint = "inbound",
    ) -> WebhookVerification:
        """Verify a delivery and parse its JSON payload.

        Args:
            body: Raw request body, exactly as received.
            headers: Request headers (case-insensitive mapping or lowercase keys).
            endpoint: Which webhook the delivery was sent to.
        """
        secret = self._secret_for(endpoint)
        if not secret:
            if not self._allow_unsigned:
                logger.error("Webhook secret not configured for %s", endpoint)
                return WebhookVerification(False, error="Webhook secret not configured")
            logger.warning("Webhook secret not configured for %s - skipping verification", endpoint)
            payload = _parse_payload(body)
            if payload is None:
                return WebhookVerification(False, error="Invalid JSON payload")
            return WebhookVerification(True, payload=payload)

        msg_id = headers.get("svix-id", "")
        timestamp = headers.get("svix-timestamp", "")
        signature_header = headers.get("svix-signature", "")
        if not (msg_id and timestamp and signature_header):
            return WebhookVerification(False, error="Missing signature headers")

        try:
            sent_at = int(timestamp)
        except ValueError:
            return WebhookVerification(False, error="Invalid signature timestamp")
        if abs(self._clock() - sent_at) > self._tolerance:
            return WebhookVerification(False, error="Signature timestamp outside tolerance")

        try:
            expected = compute_signature(secret, msg_id, timestamp, body)
        except (ValueError, TypeError) as e:
            logger.error("Webhook secret for %s is malformed: %s", endpoint, type(e).__name__)
            return WebhookVerification(False, error="Invalid webhook signature")

        candidates = [
            part.split(",", 1)[1]
            for part in signature_header.split()
            if part.startswith("v1,")
        ]
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            return WebhookVerification(False, error="Invalid webhook signature")

        payload = _parse_payload(body)
        if payload is None:
            return WebhookVerification(False, error="Invalid JSON payload")
        return WebhookVerification(True, payload=payload)
