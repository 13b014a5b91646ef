from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import anyio
from anyio.abc import TaskGroup, TaskStatus
from fastmcp import FastMCP
from mcp.server.streamable_http import SESSION_ID_PATTERN, StreamableHTTPServerTransport
from starlette.types import Message, Receive, Scope, Send

from .constants import (
    APP_VERSION,
    BOOTSTRAP_TIMEOUT_SECONDS,
    PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
    SESSION_ID_HEADER,
    SESSION_LOGGER,
    SESSION_TTL_SECONDS,
)
from .sessions import Session, SessionStore

BOOTSTRAP_CLIENT_INFO = {"name": "tapkit-session-bootstrap", "version": APP_VERSION}


class SessionBootstrapError(RuntimeError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.status_code = 500


class SessionCredentialError(RuntimeError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} belongs to a different credential.")
        self.session_id = session_id
        self.status_code = 401


def is_initialize_request(payload: object) -> bool:
    if isinstance(payload, list):
        return any(is_initialize_request(item) for item in payload)
    return isinstance(payload, dict) and payload.get("method") == "initialize"


def _header_items(scope: Scope, drop: set[bytes]) -> list[tuple[bytes, bytes]]:
    return [(key, value) for key, value in scope.get("headers", []) if key.lower() not in drop]


def _with_session_header(scope: Scope, session_id: str) -> Scope:
    headers = _header_items(scope, {SESSION_ID_HEADER.encode("ascii")})
    headers.append((SESSION_ID_HEADER.encode("ascii"), session_id.encode("ascii")))
    return {**scope, "headers": headers}


def _without_session_header(scope: Scope) -> Scope:
    return {**scope, "headers": _header_items(scope, {SESSION_ID_HEADER.encode("ascii")})}


def replay_body(body: bytes, receive: Receive) -> Receive:
    """Hand an already-read body back to the transport, then defer to ``receive``."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SessionReconciler:
    """Routes Streamable HTTP requests to sessions, rebuilding missing ones.

    A request naming a session this process does not know (after a restart,
    or when a load balancer moved the client) is not rejected: the session is
    recreated under the same id by replaying a synthetic ``initialize`` and
    ``notifications/initialized`` before the client's request is forwarded.
    """

    def __init__(
        self,
        store: SessionStore,
        server_factory: Callable[[str], FastMCP],
        *,
        session_ttl: float = SESSION_TTL_SECONDS,
        bootstrap_timeout: float = BOOTSTRAP_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self._server_factory = server_factory
        self._session_ttl = session_ttl
        self._bootstrap_timeout = bootstrap_timeout
        self._task_group: TaskGroup | None = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionReconciler"]:
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            SESSION_LOGGER.info("Session reconciler started")
            try:
                yield self
            finally:
                for session_id in self.store.ids():
                    await self.close_session(session_id)
                task_group.cancel_scope.cancel()
                self._task_group = None
                SESSION_LOGGER.info("Session reconciler stopped")

    # -- public entry points ---------------------------------------------------

    async def handle_post(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        *,
        auth_token: str,
        body: bytes,
        payload: object,
    ) -> None:
        receive = replay_body(body, receive)
        session_id = self._requested_session_id(scope)

        session = await self.store.get(session_id) if session_id else None
        if session is not None:
            self.check_credential(session, auth_token)
            await self.wait_ready(session)
            await session.handle_request(scope, receive, send)
            return

        if is_initialize_request(payload):
            await self._open_session(scope, receive, send, auth_token=auth_token)
            return

        await self._bootstrap_and_forward(scope, receive, send, session_id=session_id, auth_token=auth_token)

    async def get_session(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return await self.store.get(session_id)

    def check_credential(self, session: Session, auth_token: str) -> None:
        if session.auth_token != auth_token:
            SESSION_LOGGER.warning("Session %s used with a different credential", session.session_id)
            raise SessionCredentialError(session.session_id)

    async def wait_ready(self, session: Session) -> None:
        try:
            with anyio.fail_after(self._bootstrap_timeout):
                await session.ready.wait()
        except TimeoutError as error:
            raise SessionBootstrapError(
                f"Timed out waiting for session {session.session_id} to initialize."
            ) from error
        if session.failed:
            raise SessionBootstrapError(f"Session {session.session_id} failed to initialize.")

    async def close_session(self, session_id: str, auth_token: str | None = None) -> bool:
        session = await self.store.get(session_id)
        if session is None:
            return False
        if auth_token is not None:
            self.check_credential(session, auth_token)
        await self.store.discard(session_id, session)
        await session.close()
        SESSION_LOGGER.info("Closed session %s", session_id)
        return True

    # -- session lifecycle -----------------------------------------------------

    def _requested_session_id(self, scope: Scope) -> str | None:
        header = SESSION_ID_HEADER.encode("ascii")
        for key, value in scope.get("headers", []):
            if key.lower() == header:
                return value.decode("latin-1") or None
        return None

    def _new_session(self, session_id: str, auth_token: str) -> Session:
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=True,
        )
        return Session(session_id=session_id, auth_token=auth_token, transport=transport)

    async def _start(self, session: Session) -> None:
        if self._task_group is None:
            raise RuntimeError("Session reconciler is not running. Enter run() first.")
        session.server = self._server_factory(session.auth_token)
        await self._task_group.start(self._run_session, session)

    async def _run_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                task_status.started()
                low_level = session.server._mcp_server
                await low_level.run(
                    read_stream,
                    write_stream,
                    low_level.create_initialization_options(),
                )
        except Exception:
            SESSION_LOGGER.exception("Session %s crashed", session.session_id)
        finally:
            await self.store.discard(session.session_id, session)
            await session.close()

    async def _register(self, session: Session) -> None:
        await self.store.add_if_absent(session)
        self._schedule_eviction(session)
        SESSION_LOGGER.info("Registered session %s", session.session_id)

    def _schedule_eviction(self, session: Session) -> None:
        if self._task_group is not None:
            self._task_group.start_soon(self.store.evict_after, session, self._session_ttl)

    # -- reconciliation paths --------------------------------------------------

    async def _open_session(self, scope: Scope, receive: Receive, send: Send, *, auth_token: str) -> None:
        session = self._new_session(uuid.uuid4().hex, auth_token)
        await self._start(session)

        registered = False

        async def register_on_success(message: Message) -> None:
            nonlocal registered
            if message["type"] == "http.response.start" and message["status"] == 200 and not registered:
                registered = True
                session.ready.set()
                await self._register(session)
            await send(message)

        try:
            await session.handle_request(_without_session_header(scope), receive, register_on_success)
        finally:
            if not registered:
                await session.close()

    async def _bootstrap_and_forward(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        *,
        session_id: str | None,
        auth_token: str,
    ) -> None:
        if not session_id or not SESSION_ID_PATTERN.fullmatch(session_id):
            session_id = uuid.uuid4().hex

        candidate = self._new_session(session_id, auth_token)
        session = await self.store.add_if_absent(candidate)
        if session is not candidate:
            SESSION_LOGGER.info("Joining concurrent bootstrap of session %s", session_id)
            self.check_credential(session, auth_token)
            await self.wait_ready(session)
        else:
            SESSION_LOGGER.info("Rebuilding unknown session %s", session_id)
            established = False
            try:
                await self._start(session)
                with anyio.fail_after(self._bootstrap_timeout):
                    await self._bootstrap(session, scope)
                established = True
            finally:
                if not established:
                    session.failed = True
                    session.ready.set()
                    await self.store.discard(session_id, session)
                    await session.close()
            session.ready.set()
            self._schedule_eviction(session)

        await session.handle_request(_with_session_header(scope, session.session_id), receive, send)

    async def _bootstrap(self, session: Session, base_scope: Scope) -> None:
        initialize = {
            "jsonrpc": "2.0",
            "id": f"bootstrap-{uuid.uuid4().hex[:12]}",
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": BOOTSTRAP_CLIENT_INFO,
            },
        }
        status = await self._synthetic_request(session, base_scope, initialize)
        if status != 200:
            raise SessionBootstrapError(f"Synthetic initialize returned HTTP {status}.")

        initialized = {"jsonrpc": "2.0", "method": "notifications/initialized"}
        status = await self._synthetic_request(
            session,
            base_scope,
            initialized,
            extra_headers=[
                (SESSION_ID_HEADER.encode("ascii"), session.session_id.encode("ascii")),
                (PROTOCOL_VERSION_HEADER.encode("ascii"), PROTOCOL_VERSION.encode("ascii")),
            ],
        )
        if status != 202:
            raise SessionBootstrapError(f"Synthetic initialized notification returned HTTP {status}.")

    async def _synthetic_request(
        self,
        session: Session,
        base_scope: Scope,
        message: dict,
        *,
        extra_headers: list[tuple[bytes, bytes]] | None = None,
    ) -> int | None:
        body = json.dumps(message).encode("utf-8")
        headers = [(key, value) for key, value in base_scope.get("headers", []) if key.lower() == b"host"]
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"accept", b"application/json, text/event-stream"),
                (b"content-length", str(len(body)).encode("ascii")),
            ]
        )
        headers.extend(extra_headers or [])
        scope = {**base_scope, "method": "POST", "headers": headers}

        status: int | None = None
        delivered = False
        finished = anyio.Event()

        async def receive() -> Message:
            nonlocal delivered
            if not delivered:
                delivered = True
                return {"type": "http.request", "body": body, "more_body": False}
            await finished.wait()
            return {"type": "http.disconnect"}

        async def send(reply: Message) -> None:
            nonlocal status
            if reply["type"] == "http.response.start":
                status = reply["status"]
            elif reply["type"] == "http.response.body" and not reply.get("more_body", False):
                finished.set()

        await session.handle_request(scope, receive, send)
        return status
