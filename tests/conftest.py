import pytest

REQUIRED_ENV = {
    "OAUTH_SIGNING_SECRET": "test-signing-secret",
    "SUPABASE_URL": "https://project.supabase.co",
    "SUPABASE_ANON_KEY": "anon-key",
    "MCP_SERVER_URL": "https://mcp.tapkit.example.com",
}


@pytest.fixture
def server_env(monkeypatch) -> dict[str, str]:
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    for key in (
        "SUPABASE_OAUTH_PROVIDER",
        "TAPKIT_API_URL",
        "TAPKIT_CORS_ORIGINS",
        "TAPKIT_SESSION_TTL",
        "TAPKIT_UPSTREAM_TIMEOUT",
    ):
        monkeypatch.delenv(key, raising=False)
    return dict(REQUIRED_ENV)
