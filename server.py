from __future__ import annotations

import os
from contextlib import asynccontextmanager
from functools import partial
from typing import Callable

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette

from auth.code_codec import CodeCodec
from auth.oauth_server import PROTECTED_RESOURCE_PATH, OAuthServer
from tapmcp.constants import LOGGER
from tapmcp.env import ServerSettings, load_env, setup_logging
from tapmcp.mcp_app import health_route, mcp_cors_policy, mcp_route
from tapmcp.reconciler import SessionReconciler
from tapmcp.sessions import MemorySessionStore, SessionStore
from tapmcp.tools import build_device_server


def create_app(
    *,
    server_factory: Callable[[str], FastMCP] | None = None,
    session_store: SessionStore | None = None,
) -> Starlette:
    load_env()
    setup_logging()
    settings = ServerSettings.from_env()

    oauth_server = OAuthServer(
        public_url=settings.public_url,
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        code_codec=CodeCodec(settings.signing_secret),
        provider=settings.oauth_provider,
        cors_origins=settings.cors_origins,
        upstream_timeout=settings.upstream_timeout,
    )

    if server_factory is None:
        server_factory = partial(
            build_device_server,
            api_url=settings.tapkit_api_url,
            timeout=settings.upstream_timeout,
        )
    reconciler = SessionReconciler(
        session_store or MemorySessionStore(),
        server_factory,
        session_ttl=settings.session_ttl,
    )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        async with reconciler.run():
            yield

    routes = [
        *oauth_server.routes(),
        mcp_route(
            reconciler,
            resource_metadata_url=f"{settings.public_url}{PROTECTED_RESOURCE_PATH}",
            cors=mcp_cors_policy(settings.cors_origins),
        ),
        health_route(),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.settings = settings
    app.state.oauth_server = oauth_server
    app.state.reconciler = reconciler
    LOGGER.info("TapKit MCP server configured for %s", settings.public_url)
    return app


def main() -> None:
    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8000"))
    app = create_app()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
