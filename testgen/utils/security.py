"""Webhook signature helpers."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def build_github_signature(secret: str, payload: bytes) -> str:
    """Return the GitHub-style HMAC signature for the given payload."""

    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_github_signature(secret: str, payload: bytes, raw_signature: str | None) -> bool:
    """Verify an ``X-Hub-Signature-256`` header using a constant-time comparison."""

    if not raw_signature or not raw_signature.startswith(SIGNATURE_PREFIX):
        return False

    expected_signature = build_github_signature(secret, payload)
    return hmac.compare_digest(expected_signature.encode("utf-8"), raw_signature.strip().encode("utf-8"))
