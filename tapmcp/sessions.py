from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import anyio
from fastmcp import FastMCP
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Receive, Scope, Send

from .constants import SESSION_LOGGER


@dataclass(eq=False)
class Session:
    """One protocol session: a transport and the server bound to its credential."""

    session_id: str
    auth_token: str
    transport: StreamableHTTPServerTransport
    server: FastMCP | None = None
    created_at: float = field(default_factory=time.time)
    ready: anyio.Event = field(default_factory=anyio.Event)
    failed: bool = False

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_request(scope, receive, send)

    async def close(self) -> None:
        if self.transport.is_terminated:
            return
        with anyio.CancelScope(shield=True):
            await self.transport.terminate()


class SessionStore(ABC):
    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        raise NotImplementedError

    @abstractmethod
    async def add_if_absent(self, session: Session) -> Session:
        """Insert ``session`` unless its id is taken; return whichever is stored."""
        raise NotImplementedError

    @abstractmethod
    async def discard(self, session_id: str, session: Session | None = None) -> bool:
        """Remove the entry for ``session_id``.

        When ``session`` is given the entry is only removed if it is that exact
        session, so a late timer never drops a newer session under a reused id.
        """
        raise NotImplementedError

    @abstractmethod
    def ids(self) -> list[str]:
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self.ids())

    async def evict_after(self, session: Session, delay: float) -> None:
        await anyio.sleep(delay)
        if await self.discard(session.session_id, session):
            SESSION_LOGGER.info("Evicting session %s after %ss", session.session_id, delay)
            await session.close()


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def add_if_absent(self, session: Session) -> Session:
        return self._sessions.setdefault(session.session_id, session)

    async def discard(self, session_id: str, session: Session | None = None) -> bool:
        current = self._sessions.get(session_id)
        if current is None or (session is not None and current is not session):
            return False
        del self._sessions[session_id]
        return True

    def ids(self) -> list[str]:
        return list(self._sessions)
