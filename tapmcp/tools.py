from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastmcp import FastMCP
from fastmcp.utilities.types import Image
from mcp.types import ToolAnnotations

from .constants import APP_VERSION, DEFAULT_TAPKIT_API_URL, SERVER_NAME, TAPKIT_LOGGER, UPSTREAM_TIMEOUT_SECONDS
from .tapkit_client import TapKitAPIError, TapKitClient, build_http_client

INSTRUCTIONS = (
    "Control a connected iPhone through TapKit. Take a screenshot before and "
    "after actions to see what is on screen."
)


READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, openWorldHint=True)
DEVICE_ACTION = ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=True)


def _error_text(error: TapKitAPIError) -> str:
    return f"Error: {error.to_user_message()}"


def build_device_server(
    auth_token: str,
    *,
    api_url: str = DEFAULT_TAPKIT_API_URL,
    timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastMCP:
    """Build the per-session protocol server bound to one TapKit credential."""
    client = TapKitClient(build_http_client(auth_token, api_url=api_url, timeout=timeout, transport=transport))

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        try:
            yield {}
        finally:
            await client.aclose()

    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS, version=APP_VERSION, lifespan=lifespan)

    @mcp.tool(annotations=READ_ONLY)
    async def list_phones() -> str:
        """List all connected phones. Use this to see which devices are available."""
        try:
            phones = await client.list_phones()
        except TapKitAPIError as error:
            return _error_text(error)
        if not phones:
            return "No phones found. Make sure TapKit is set up and a phone is connected."
        lines = "\n".join(f"- {phone.name} (ID: {phone.id})" for phone in phones)
        return f"Found {len(phones)} phone(s):\n{lines}"

    @mcp.tool(annotations=DEVICE_ACTION)
    async def select_phone(phone_id: str) -> str:
        """Select which phone to control by its ID. Use list_phones first to see available IDs."""
        try:
            phones = await client.list_phones()
        except TapKitAPIError as error:
            return _error_text(error)
        phone = next((item for item in phones if item.id == phone_id), None)
        if phone is None:
            return f"Phone not found with ID: {phone_id}"
        client.phone_id = phone.id
        return f"Selected phone: {phone.name}"

    @mcp.tool(annotations=READ_ONLY)
    async def screenshot():
        """Take a screenshot of the iPhone screen to see the current screen state."""
        try:
            data = await client.screenshot()
        except TapKitAPIError as error:
            return _error_text(error)
        return Image(data=data, format="png")

    @mcp.tool(annotations=DEVICE_ACTION)
    async def tap(x: float, y: float) -> str:
        """Tap at x,y screen coordinates (pixels from the top-left corner)."""
        try:
            await client.tap(x, y)
        except TapKitAPIError as error:
            return _error_text(error)
        return f"Tapped at ({x:g}, {y:g})"

    @mcp.tool(annotations=DEVICE_ACTION)
    async def type_text(text: str) -> str:
        """Type text into the currently focused text field."""
        try:
            await client.type_text(text)
        except TapKitAPIError as error:
            return _error_text(error)
        return f'Typed: "{text}"'

    @mcp.tool(annotations=DEVICE_ACTION)
    async def press_home() -> str:
        """Press the home button to go to the home screen or exit the current app."""
        try:
            await client.press_home()
        except TapKitAPIError as error:
            return _error_text(error)
        return "Pressed home button"

    @mcp.tool(annotations=DEVICE_ACTION)
    async def swipe(start_x: float, start_y: float, end_x: float, end_y: float) -> str:
        """Swipe from one point to another. Useful for scrolling, dismissing or navigating."""
        try:
            await client.swipe(start_x, start_y, end_x, end_y)
        except TapKitAPIError as error:
            return _error_text(error)
        return f"Swiped from ({start_x:g}, {start_y:g}) to ({end_x:g}, {end_y:g})"

    TAPKIT_LOGGER.debug("Built device server for %s", api_url)
    return mcp
