from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Callable

from auth.models import CodePayload

CODE_TTL_MS = 10 * 60 * 1000


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class CodeCodec:
    """Signs and verifies self-contained authorization codes.

    A code carries the upstream tokens and PKCE binding, so nothing about an
    issued code is kept server-side.
    """

    def __init__(
        self,
        signing_secret: str,
        *,
        ttl_ms: int = CODE_TTL_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not signing_secret:
            raise RuntimeError("OAUTH_SIGNING_SECRET is required to sign authorization codes.")
        self._key = signing_secret.encode("utf-8")
        self._ttl_ms = ttl_ms
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, payload_b64: str) -> bytes:
        return hmac.new(self._key, payload_b64.encode("utf-8"), hashlib.sha256).digest()

    def generate(self, payload: CodePayload) -> str:
        stamped = payload.stamped(self._now_ms())
        data = json.dumps(stamped.to_dict(), separators=(",", ":")).encode("utf-8")
        payload_b64 = _b64encode(data)
        return f"{payload_b64}.{_b64encode(self._sign(payload_b64))}"

    def verify(self, code: str) -> CodePayload | None:
        payload_b64, _, sig_b64 = code.partition(".")
        if not payload_b64 or not sig_b64:
            return None

        try:
            actual_sig = _b64decode(sig_b64)
        except (binascii.Error, ValueError):
            return None
        # Alternate spellings of the same bytes are rejected as tampering.
        if _b64encode(actual_sig) != sig_b64:
            return None
        if not hmac.compare_digest(self._sign(payload_b64), actual_sig):
            return None

        try:
            raw = json.loads(_b64decode(payload_b64))
            payload = CodePayload.from_dict(raw)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None

        if self._now_ms() - payload.issued_at >= self._ttl_ms:
            return None
        return payload
