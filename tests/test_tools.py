import base64
from functools import partial

import httpx
from starlette.testclient import TestClient

from tapmcp.reconciler import SessionReconciler
from tapmcp.sessions import MemorySessionStore
from tapmcp.tools import build_device_server
from tests.mcp_helpers import _build_mcp_app, mcp_headers, open_session, tool_call, tool_text
from tests.tapkit_helpers import API_URL, FakeTapKit


def _device_client(fake: FakeTapKit) -> TestClient:
    factory = partial(build_device_server, api_url=API_URL, transport=httpx.MockTransport(fake))
    reconciler = SessionReconciler(MemorySessionStore(), factory)
    return TestClient(_build_mcp_app(reconciler))


def _call(client, session_id: str, name: str, arguments: dict | None = None, request_id: int = 2, **header_kwargs):
    return client.post(
        "/mcp",
        json=tool_call(name, arguments, request_id=request_id),
        headers=mcp_headers(session_id, **header_kwargs),
    )


def test_tools_are_listed_with_annotations() -> None:
    with _device_client(FakeTapKit()) as client:
        session_id = open_session(client)
        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 5, "method": "tools/list"},
            headers=mcp_headers(session_id),
        )

    tools = {tool["name"]: tool for tool in response.json()["result"]["tools"]}
    assert set(tools) == {"list_phones", "select_phone", "screenshot", "tap", "type_text", "press_home", "swipe"}
    assert tools["screenshot"]["annotations"]["readOnlyHint"] is True
    assert tools["tap"]["annotations"]["readOnlyHint"] is False


def test_list_phones_text() -> None:
    fake = FakeTapKit(phones=[{"id": "p1", "name": "Mini"}, {"id": "p2", "name": "Pro"}])

    with _device_client(fake) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "list_phones")

    assert tool_text(response) == "Found 2 phone(s):\n- Mini (ID: p1)\n- Pro (ID: p2)"


def test_list_phones_empty() -> None:
    with _device_client(FakeTapKit(phones=[])) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "list_phones")

    assert tool_text(response) == "No phones found. Make sure TapKit is set up and a phone is connected."


def test_select_phone_routes_later_actions() -> None:
    fake = FakeTapKit(phones=[{"id": "p1", "name": "Mini"}, {"id": "p2", "name": "Pro"}])

    with _device_client(fake) as client:
        session_id = open_session(client)
        selected = _call(client, session_id, "select_phone", {"phone_id": "p2"})
        tapped = _call(client, session_id, "tap", {"x": 100, "y": 200}, request_id=3)

    assert tool_text(selected) == "Selected phone: Pro"
    assert tool_text(tapped) == "Tapped at (100, 200)"
    assert fake.posted() == [("/phones/p2/tap", {"x": 100, "y": 200})]


def test_select_unknown_phone() -> None:
    with _device_client(FakeTapKit()) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "select_phone", {"phone_id": "nope"})

    assert tool_text(response) == "Phone not found with ID: nope"


def test_action_tools_report_what_they_did() -> None:
    fake = FakeTapKit()

    with _device_client(fake) as client:
        session_id = open_session(client)
        typed = _call(client, session_id, "type_text", {"text": "hello"})
        home = _call(client, session_id, "press_home", request_id=3)
        swiped = _call(
            client,
            session_id,
            "swipe",
            {"start_x": 10, "start_y": 500, "end_x": 10, "end_y": 100},
            request_id=4,
        )

    assert tool_text(typed) == 'Typed: "hello"'
    assert tool_text(home) == "Pressed home button"
    assert tool_text(swiped) == "Swiped from (10, 500) to (10, 100)"


def test_screenshot_returns_png_image() -> None:
    with _device_client(FakeTapKit()) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "screenshot")

    content = response.json()["result"]["content"][0]
    assert content["type"] == "image"
    assert content["mimeType"] == "image/png"
    assert base64.b64decode(content["data"]) == b"\x89PNG-bytes"


def test_api_errors_become_tool_text() -> None:
    fake = FakeTapKit(
        status_overrides={
            "/phones": httpx.Response(403, json={"error": "SUBSCRIPTION_REQUIRED", "message": "pay up"}),
        }
    )

    with _device_client(fake) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "list_phones")

    assert tool_text(response) == "Error: An active TapKit subscription is required."


def test_malformed_phone_list_becomes_tool_text() -> None:
    fake = FakeTapKit(status_overrides={"/phones": httpx.Response(200, text="not json")})

    with _device_client(fake) as client:
        session_id = open_session(client)
        response = _call(client, session_id, "list_phones")

    assert tool_text(response) == "Error: INVALID_RESPONSE: Phone list is not valid JSON."


def test_tools_use_the_session_credential() -> None:
    fake = FakeTapKit()

    with _device_client(fake) as client:
        session_id = open_session(client, token="user-a-token")
        _call(client, session_id, "list_phones", token="user-a-token")

    assert fake.requests[0].headers["authorization"] == "Bearer user-a-token"
