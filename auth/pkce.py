from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

SUPPORTED_METHODS = ("S256", "plain")


def generate_code_verifier() -> str:
    while True:
        verifier = secrets.token_urlsafe(64)
        if 43 <= len(verifier) <= 128:
            return verifier


def compute_challenge(verifier: str, method: str = "S256") -> str:
    if method == "S256":
        digest = hashlib.sha256(verifier.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")
    if method == "plain":
        return verifier
    raise ValueError(f"Unsupported code_challenge_method: {method!r}")


def matches(verifier: str, challenge: str, method: str) -> bool:
    try:
        expected = compute_challenge(verifier, method)
    except ValueError:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), challenge.encode("utf-8"))
