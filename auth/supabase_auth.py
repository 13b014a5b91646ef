from __future__ import annotations

import time
import urllib.parse
from dataclasses import dataclass

import httpx

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_EXPIRES_IN = 3600


class TokenRequestError(RuntimeError):
    """The identity provider rejected a token request."""

    def __init__(self, description: str, status_code: int) -> None:
        super().__init__(description)
        self.description = description
        self.status_code = status_code


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: float

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenResponse":
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token") or ""
        expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN

        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Token response missing access_token.")
        if not isinstance(refresh_token, str):
            raise RuntimeError("Token response refresh_token must be a string.")
        if not isinstance(expires_in, int):
            raise RuntimeError("Token response expires_in must be an integer.")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            expires_at=time.time() + expires_in,
        )


def authorize_endpoint(supabase_url: str) -> str:
    return f"{supabase_url.rstrip('/')}/auth/v1/authorize"


def token_endpoint(supabase_url: str) -> str:
    return f"{supabase_url.rstrip('/')}/auth/v1/token"


def build_authorization_url(supabase_url: str, redirect_to: str, provider: str = "google") -> str:
    query = {"provider": provider, "redirect_to": redirect_to}
    return f"{authorize_endpoint(supabase_url)}?{urllib.parse.urlencode(query)}"


def _error_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"Token request failed with status {response.status_code}."
    if isinstance(payload, dict):
        for key in ("error_description", "msg", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return f"Token request failed with status {response.status_code}."


async def _token_request(
    supabase_url: str,
    anon_key: str,
    grant_type: str,
    body: dict[str, str],
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResponse:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout)

    try:
        response = await http_client.post(
            token_endpoint(supabase_url),
            params={"grant_type": grant_type},
            json=body,
            headers={"apikey": anon_key},
            timeout=timeout,
        )
        if response.is_error:
            raise TokenRequestError(_error_description(response), response.status_code)
        try:
            payload = response.json()
        except ValueError as error:
            raise RuntimeError("Token response is not valid JSON.") from error
    finally:
        if own_client:
            await http_client.aclose()

    if not isinstance(payload, dict):
        raise RuntimeError("Token response must be a JSON object.")
    return TokenResponse.from_payload(payload)


async def exchange_code(
    supabase_url: str,
    anon_key: str,
    code: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResponse:
    return await _token_request(
        supabase_url,
        anon_key,
        "authorization_code",
        {"code": code},
        client=client,
        timeout=timeout,
    )


async def refresh_token(
    supabase_url: str,
    anon_key: str,
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResponse:
    return await _token_request(
        supabase_url,
        anon_key,
        "refresh_token",
        {"refresh_token": refresh_token},
        client=client,
        timeout=timeout,
    )
