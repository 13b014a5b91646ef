from __future__ import annotations

import json

from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from auth.cors import CORSPolicy

from .constants import APP_VERSION, AUTH_MODE, LOGGER, MCP_PATH, SESSION_ID_HEADER
from .reconciler import SessionBootstrapError, SessionCredentialError, SessionReconciler

UNAUTHORIZED = -32001
PARSE_ERROR = -32700
INTERNAL_ERROR = -32603

MCP_ALLOW_HEADERS = "Authorization, Content-Type, X-API-Key, Mcp-Session-Id, Mcp-Protocol-Version, Last-Event-ID"


def mcp_cors_policy(extra_origins: set[str] | None = None) -> CORSPolicy:
    return CORSPolicy.with_extra_origins(
        extra_origins,
        methods="GET, POST, DELETE, OPTIONS",
        allow_headers=MCP_ALLOW_HEADERS,
        expose_headers="Mcp-Session-Id, WWW-Authenticate",
    )


def extract_bearer_token(authorization_header: str | None) -> str | None:
    if not authorization_header:
        return None
    scheme, _, token = authorization_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def extract_credential(headers: Headers) -> str | None:
    token = extract_bearer_token(headers.get("authorization"))
    if token:
        return token
    api_key = headers.get("x-api-key", "").strip()
    return api_key or None


def jsonrpc_error_response(
    code: int,
    message: str,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> Response:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
        headers=headers,
    )


class MCPEndpoint:
    """ASGI endpoint for ``/mcp``: credential check, then session reconciliation."""

    def __init__(
        self,
        reconciler: SessionReconciler,
        *,
        resource_metadata_url: str,
        cors: CORSPolicy | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.resource_metadata_url = resource_metadata_url
        self.cors = cors or mcp_cors_policy()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if request.method == "OPTIONS":
            await self.cors.apply(request, Response(status_code=204))(scope, receive, send)
            return

        send = self.cors.wrap_send(request.headers.get("origin"), send)
        if request.method == "POST":
            await self._handle_post(request, scope, receive, send)
        elif request.method == "GET":
            await self._handle_get(request, scope, receive, send)
        elif request.method == "DELETE":
            await self._handle_delete(request, scope, receive, send)
        else:
            response = Response(status_code=405, headers={"Allow": "GET, POST, DELETE, OPTIONS"})
            await response(scope, receive, send)

    def _challenge_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": f'Bearer resource_metadata="{self.resource_metadata_url}"'}

    def _auth_required(self) -> Response:
        return JSONResponse(
            {"error": "AUTH_REQUIRED", "message": "Authentication required."},
            status_code=401,
            headers=self._challenge_headers(),
        )

    def _credential_mismatch(self) -> Response:
        return jsonrpc_error_response(
            UNAUTHORIZED,
            "This session was created with a different credential.",
            401,
            headers=self._challenge_headers(),
        )

    async def _handle_post(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        auth_token = extract_credential(request.headers)
        if auth_token is None:
            response = jsonrpc_error_response(
                UNAUTHORIZED,
                "Authentication required. Provide a Bearer token or X-API-Key header.",
                401,
                headers=self._challenge_headers(),
            )
            await response(scope, receive, send)
            return

        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError:
            response = jsonrpc_error_response(PARSE_ERROR, "Parse error: invalid JSON body.", 400)
            await response(scope, receive, send)
            return

        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.reconciler.handle_post(
                scope,
                receive,
                tracking_send,
                auth_token=auth_token,
                body=body,
                payload=payload,
            )
        except SessionCredentialError:
            if started:
                return
            await self._credential_mismatch()(scope, receive, send)
        except Exception:
            LOGGER.exception("MCP POST failed")
            if started:
                return
            response = jsonrpc_error_response(INTERNAL_ERROR, "Internal server error.", 500)
            await response(scope, receive, send)

    async def _handle_get(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        auth_token = extract_credential(request.headers)
        if auth_token is None:
            await self._auth_required()(scope, receive, send)
            return

        session = await self.reconciler.get_session(request.headers.get(SESSION_ID_HEADER))
        if session is None:
            response = JSONResponse(
                {
                    "error": "SESSION_NOT_FOUND",
                    "message": "Session not found. Please initialize a new session via POST.",
                },
                status_code=404,
            )
            await response(scope, receive, send)
            return

        try:
            self.reconciler.check_credential(session, auth_token)
            await self.reconciler.wait_ready(session)
        except SessionCredentialError:
            await self._credential_mismatch()(scope, receive, send)
            return
        except SessionBootstrapError:
            LOGGER.exception("MCP GET on session %s failed", session.session_id)
            response = jsonrpc_error_response(INTERNAL_ERROR, "Internal server error.", 500)
            await response(scope, receive, send)
            return

        await session.handle_request(scope, receive, send)

    async def _handle_delete(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        auth_token = extract_credential(request.headers)
        if auth_token is None:
            await self._auth_required()(scope, receive, send)
            return

        session_id = request.headers.get(SESSION_ID_HEADER)
        if session_id:
            try:
                await self.reconciler.close_session(session_id, auth_token)
            except SessionCredentialError:
                await self._credential_mismatch()(scope, receive, send)
                return
        await Response(status_code=204)(scope, receive, send)


def mcp_route(
    reconciler: SessionReconciler,
    *,
    resource_metadata_url: str,
    cors: CORSPolicy | None = None,
) -> Route:
    return Route(
        MCP_PATH,
        endpoint=MCPEndpoint(reconciler, resource_metadata_url=resource_metadata_url, cors=cors),
        methods=["GET", "POST", "DELETE", "OPTIONS"],
    )


async def health(request: Request) -> Response:
    del request
    return JSONResponse(
        {
            "status": "ok",
            "version": APP_VERSION,
            "auth_mode": AUTH_MODE,
        }
    )


def health_route() -> Route:
    return Route("/health", health, methods=["GET"])
