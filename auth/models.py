from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class CodePayload:
    access_token: str
    refresh_token: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    issued_at: int = 0

    def stamped(self, issued_at: int) -> "CodePayload":
        return replace(self, issued_at=issued_at)

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, raw: object) -> "CodePayload":
        if not isinstance(raw, dict):
            raise ValueError("Code payload must be a JSON object.")

        access_token = raw.get("access_token")
        refresh_token = raw.get("refresh_token")
        issued_at = raw.get("issued_at")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Code payload missing access_token.")
        if not isinstance(refresh_token, str):
            raise ValueError("Code payload missing refresh_token.")
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise ValueError("Code payload missing issued_at.")

        code_challenge = raw.get("code_challenge")
        code_challenge_method = raw.get("code_challenge_method")
        for name, value in (
            ("code_challenge", code_challenge),
            ("code_challenge_method", code_challenge_method),
        ):
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Code payload {name} must be a string.")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            issued_at=issued_at,
        )


@dataclass(frozen=True)
class OAuthFlowState:
    """Client OAuth parameters carried through the identity provider redirect."""

    redirect_uri: str
    state: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    scope: str | None = None
    client_id: str | None = None

    def encode(self) -> str:
        data = json.dumps(
            {key: value for key, value in asdict(self).items() if value is not None},
            separators=(",", ":"),
        ).encode("utf-8")
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    @classmethod
    def decode(cls, blob: str) -> "OAuthFlowState":
        try:
            raw = json.loads(base64.urlsafe_b64decode(blob + "=" * (-len(blob) % 4)))
        except (binascii.Error, UnicodeDecodeError, ValueError) as error:
            raise ValueError("Flow state is not valid base64url JSON.") from error

        if not isinstance(raw, dict):
            raise ValueError("Flow state must be a JSON object.")

        redirect_uri = raw.get("redirect_uri")
        state = raw.get("state")
        if not isinstance(redirect_uri, str) or not redirect_uri:
            raise ValueError("Flow state missing redirect_uri.")
        if not isinstance(state, str) or not state:
            raise ValueError("Flow state missing state.")

        optional = {}
        for key in ("code_challenge", "code_challenge_method", "scope", "client_id"):
            value = raw.get(key)
            if isinstance(value, str) and value:
                optional[key] = value

        return cls(redirect_uri=redirect_uri, state=state, **optional)
