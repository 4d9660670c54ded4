"""Webhook signature helpers shared by the sources.

All comparisons are constant time. Signatures are hex-encoded HMAC-SHA256
digests of the raw request body (or of a provider-defined base string).
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def compute_signature(secret: str, payload: str | bytes) -> str:
    """Hex HMAC-SHA256 of `payload` keyed with `secret`."""
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two header values in constant time.

    Values are compared as UTF-8 bytes, so non-ASCII input is a mismatch
    rather than a TypeError.
    """
    return hmac.compare_digest(
        a.encode("utf-8", "surrogateescape"),
        b.encode("utf-8", "surrogateescape"),
    )


def verify_signature(
    secret: str,
    payload: str | bytes,
    signature: str | None,
    *,
    prefix: str = "",
) -> bool:
    """Check a signature header value against the expected digest.

    Args:
        secret: Shared secret.
        payload: Exactly the bytes the provider signed.
        signature: Header value, possibly None.
        prefix: Scheme prefix the header carries (e.g. "sha256=", "v0=").

    Returns:
        True only if the header is present, carries the prefix, and matches.
    """
    if not signature or not signature.startswith(prefix):
        return False
    expected = compute_signature(secret, payload)
    return constant_time_equals(expected, signature[len(prefix) :])


def parse_body(body: Any, raw_body: str | None) -> dict[str, Any]:
    """Return the request payload as a dict, parsing `raw_body` if needed.

    Anything that is not a JSON object, malformed JSON included, yields {}.
    """
    if isinstance(body, dict):
        return body
    text = body if isinstance(body, str | bytes) and body else raw_body
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
