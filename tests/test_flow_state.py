import base64

import pytest

from auth.models import OAuthFlowState
from auth.urls import append_query_params, build_callback_url


def test_flow_state_survives_encoding() -> None:
    state = OAuthFlowState(
        redirect_uri="https://claude.ai/api/mcp/auth_callback",
        state="client-state",
        code_challenge="challenge",
        code_challenge_method="S256",
        scope="phone:read",
        client_id="mcp_abc",
    )

    assert OAuthFlowState.decode(state.encode()) == state


def test_flow_state_is_unpadded_base64url() -> None:
    blob = OAuthFlowState(redirect_uri="https://example.com/cb?x=1&y=2", state="s").encode()

    assert "=" not in blob
    assert "+" not in blob and "/" not in blob


def test_flow_state_optional_fields_absent() -> None:
    decoded = OAuthFlowState.decode(OAuthFlowState(redirect_uri="https://example.com/cb", state="s").encode())

    assert decoded.code_challenge is None
    assert decoded.scope is None
    assert decoded.client_id is None


@pytest.mark.parametrize(
    "blob",
    [
        "not base64 at all",
        base64.urlsafe_b64encode(b"not json").decode("ascii"),
        base64.urlsafe_b64encode(b"[1, 2]").decode("ascii"),
        base64.urlsafe_b64encode(b'{"state": "s"}').decode("ascii"),
        base64.urlsafe_b64encode(b'{"redirect_uri": "https://example.com"}').decode("ascii"),
    ],
)
def test_flow_state_decode_rejects_garbage(blob: str) -> None:
    with pytest.raises(ValueError):
        OAuthFlowState.decode(blob)


def test_append_query_params_keeps_existing_query() -> None:
    url = append_query_params("https://example.com/cb?keep=1", {"code": "abc", "state": "xyz"})

    assert url == "https://example.com/cb?keep=1&code=abc&state=xyz"


def test_build_callback_url() -> None:
    url = build_callback_url("https://mcp.tapkit.example.com/", "blob123")

    assert url == "https://mcp.tapkit.example.com/oauth/callback?mcp_state=blob123"
