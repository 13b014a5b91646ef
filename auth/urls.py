from __future__ import annotations

import urllib.parse

CALLBACK_PATH = "/oauth/callback"
FLOW_STATE_PARAM = "mcp_state"


def append_query_params(url: str, params: dict[str, str]) -> str:
    parsed = urllib.parse.urlparse(url)
    existing = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
    for key, value in params.items():
        existing[key] = [value]

    new_query = urllib.parse.urlencode(existing, doseq=True)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))


def build_callback_url(public_url: str, flow_state: str) -> str:
    return append_query_params(f"{public_url.rstrip('/')}{CALLBACK_PATH}", {FLOW_STATE_PARAM: flow_state})
