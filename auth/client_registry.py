from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field

DEFAULT_CLIENT_SCOPE = "phone:read phone:control"
DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]
DEFAULT_AUTH_METHOD = "none"

_ECHOED_FIELDS = ("client_name", "client_uri", "logo_uri")


class InvalidClientMetadata(ValueError):
    pass


@dataclass
class ClientRegistration:
    """RFC 7591 registration result.

    Registrations are not stored: the minted client_id is never looked up
    again, so any caller may register and every id is accepted later.
    """

    client_id: str
    client_id_issued_at: int
    redirect_uris: list[str]
    scope: str = DEFAULT_CLIENT_SCOPE
    grant_types: list[str] = field(default_factory=lambda: list(DEFAULT_GRANT_TYPES))
    response_types: list[str] = field(default_factory=lambda: list(DEFAULT_RESPONSE_TYPES))
    token_endpoint_auth_method: str = DEFAULT_AUTH_METHOD
    metadata: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "client_id": self.client_id,
            "client_id_issued_at": self.client_id_issued_at,
            "redirect_uris": self.redirect_uris,
            **self.metadata,
            "scope": self.scope,
            "grant_types": self.grant_types,
            "response_types": self.response_types,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }


def _string_list(value: object, name: str) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidClientMetadata(f"{name} must be a list of strings.")
    return value


def register_client(payload: object) -> ClientRegistration:
    if not isinstance(payload, dict):
        raise InvalidClientMetadata("Registration body must be a JSON object.")

    redirect_uris = _string_list(payload.get("redirect_uris"), "redirect_uris")
    if not redirect_uris:
        raise InvalidClientMetadata("redirect_uris is required")

    registration = ClientRegistration(
        client_id=f"mcp_{uuid.uuid4().hex}",
        client_id_issued_at=int(time.time()),
        redirect_uris=redirect_uris,
    )

    scope = payload.get("scope")
    if isinstance(scope, str) and scope.strip():
        registration.scope = scope
    grant_types = _string_list(payload.get("grant_types"), "grant_types")
    if grant_types:
        registration.grant_types = grant_types
    response_types = _string_list(payload.get("response_types"), "response_types")
    if response_types:
        registration.response_types = response_types
    auth_method = payload.get("token_endpoint_auth_method")
    if isinstance(auth_method, str) and auth_method:
        registration.token_endpoint_auth_method = auth_method

    for key in _ECHOED_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            registration.metadata[key] = value

    return registration
