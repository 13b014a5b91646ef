from __future__ import annotations

import logging

LOGGER = logging.getLogger("tapmcp")
SESSION_LOGGER = logging.getLogger("tapmcp.sessions")
TAPKIT_LOGGER = logging.getLogger("tapmcp.tapkit")

APP_VERSION = "0.1.0"
AUTH_MODE = "oauth2-supabase"
SERVER_NAME = "tapkit"

MCP_PATH = "/mcp"
PROTOCOL_VERSION = "2025-03-26"
SESSION_ID_HEADER = "mcp-session-id"
PROTOCOL_VERSION_HEADER = "mcp-protocol-version"

SESSION_TTL_SECONDS = 30 * 60
BOOTSTRAP_TIMEOUT_SECONDS = 10.0
UPSTREAM_TIMEOUT_SECONDS = 10.0

DEFAULT_TAPKIT_API_URL = "https://api.tapkit.ai/v1"
DEFAULT_OAUTH_PROVIDER = "google"
