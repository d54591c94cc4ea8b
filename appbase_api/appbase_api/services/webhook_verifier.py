"""Stripe webhook signature verification.

The ``Stripe-Signature`` header has the form ``t=<unix>,v1=<hex>[,v1=...]``
where each ``v1`` value is ``HMAC-SHA256(secret, "<t>.<raw body>")``.
Verification runs over the exact bytes received; the body is parsed into
an event only after the signature and timestamp have been accepted.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureError(Exception):
    """The webhook request failed verification and must not be processed."""


def verify(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict[str, Any]:
    """Verify a Stripe webhook request and return the decoded event.

    Parameters
    ----------
    raw_body:
        The request body exactly as received.
    signature_header:
        Value of the ``Stripe-Signature`` header.
    secret:
        The endpoint's signing secret (``whsec_...``).
    tolerance:
        Maximum age of the signed timestamp in seconds.

    Returns
    -------
    dict
        The event object as plain JSON data.

    Raises
    ------
    SignatureError
        On a missing or malformed header, a signature mismatch, a stale
        timestamp, or a body that is not a JSON event object.
    """
    if not signature_header:
        raise SignatureError("Missing Stripe-Signature header")
    if not secret:
        raise SignatureError("Webhook signing secret is not configured")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureError("Webhook body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError(str(exc)) from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise SignatureError("Webhook body is not valid JSON") from exc

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise SignatureError("Webhook body is not an event object")
    return event


class WebhookVerifier:
    """Binds :func:`verify` to the configured secret and tolerance."""

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        return verify(raw_body, signature_header, self._secret, self._tolerance)
