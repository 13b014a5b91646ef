from __future__ import annotations

from dataclasses import dataclass

import httpx

from .constants import DEFAULT_TAPKIT_API_URL, TAPKIT_LOGGER, UPSTREAM_TIMEOUT_SECONDS

USER_MESSAGES = {
    "NO_PHONES_CONNECTED": "No phones connected. Please ensure TapKit is running and a phone is connected.",
    "PHONE_NOT_FOUND": "Phone not found. The device may have been disconnected.",
    "MAC_APP_NOT_RUNNING": "TapKit companion app is not running on your Mac.",
    "TIMEOUT": "Operation timed out. The app may be unresponsive.",
    "INVALID_API_KEY": "Invalid API key. Please check your TapKit credentials.",
    "AUTH_REQUIRED": "Authentication required. Please sign in to TapKit.",
    "SUBSCRIPTION_REQUIRED": "An active TapKit subscription is required.",
    "USER_NOT_FOUND": "User not found. Please ensure you have a TapKit account.",
}


class TapKitAPIError(RuntimeError):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    def to_user_message(self) -> str:
        if self.code == "NETWORK_ERROR":
            return f"Network error: {self.message}"
        return USER_MESSAGES.get(self.code, f"{self.code}: {self.message}")


@dataclass
class Phone:
    id: str
    name: str
    unique_id: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Phone":
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name") or payload.get("id", "")),
            unique_id=payload.get("unique_id"),
            phone_number=payload.get("phone_number"),
        )


async def log_response(response: httpx.Response) -> None:
    TAPKIT_LOGGER.info(
        "TapKit API response %s %s -> %s",
        response.request.method,
        response.request.url.path,
        response.status_code,
    )


def build_http_client(
    auth_token: str,
    *,
    api_url: str = DEFAULT_TAPKIT_API_URL,
    timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=api_url.rstrip("/"),
        headers={"Authorization": f"Bearer {auth_token}"},
        timeout=timeout,
        transport=transport,
        event_hooks={"response": [log_response]},
    )


class TapKitClient:
    """Thin wrapper over the TapKit device REST API for one credential.

    The selected phone is remembered per client; when none is selected the
    first connected phone is used.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client
        self.phone_id: str | None = None

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, body: dict | None = None) -> httpx.Response:
        try:
            response = await self._http.request(method, path, json=body)
        except httpx.HTTPError as error:
            raise TapKitAPIError(0, "NETWORK_ERROR", str(error) or type(error).__name__) from error

        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
            raise TapKitAPIError(
                response.status_code,
                payload.get("error") or "UNKNOWN_ERROR",
                payload.get("message") or f"HTTP {response.status_code}: {response.reason_phrase}",
            )
        return response

    async def _post(self, action: str, body: dict | None = None) -> dict:
        phone_id = await self.get_phone_id()
        response = await self._request("POST", f"/phones/{phone_id}/{action}", body or {})
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    async def list_phones(self) -> list[Phone]:
        response = await self._request("GET", "/phones")
        try:
            payload = response.json()
        except ValueError as error:
            raise TapKitAPIError(response.status_code, "INVALID_RESPONSE", "Phone list is not valid JSON.") from error
        if isinstance(payload, dict):
            payload = payload.get("phones") or []
        if not isinstance(payload, list):
            raise TapKitAPIError(response.status_code, "INVALID_RESPONSE", "Phone list has an unexpected shape.")
        return [Phone.from_payload(item) for item in payload if isinstance(item, dict)]

    async def get_phone_id(self) -> str:
        if self.phone_id:
            return self.phone_id

        phones = await self.list_phones()
        if not phones:
            raise TapKitAPIError(
                404,
                "NO_PHONES_CONNECTED",
                "No phones are connected. Please ensure TapKit is running and a phone is connected.",
            )
        self.phone_id = phones[0].id
        return self.phone_id

    async def screenshot(self) -> bytes:
        phone_id = await self.get_phone_id()
        response = await self._request("GET", f"/phones/{phone_id}/screenshot")
        return response.content

    async def tap(self, x: float, y: float) -> dict:
        return await self._post("tap", {"x": x, "y": y})

    async def type_text(self, text: str) -> dict:
        return await self._post("type", {"text": text})

    async def press_home(self) -> dict:
        return await self._post("home")

    async def swipe(self, start_x: float, start_y: float, end_x: float, end_y: float) -> dict:
        return await self._post(
            "flick",
            {"start_x": start_x, "start_y": start_y, "end_x": end_x, "end_y": end_y},
        )
