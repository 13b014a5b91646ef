from __future__ import annotations

from dataclasses import dataclass

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import Message, Send

DEFAULT_CORS_ORIGINS = frozenset(
    {
        "https://claude.ai",
        "https://claude.com",
        "https://www.anthropic.com",
        "https://api.anthropic.com",
    }
)


@dataclass(frozen=True)
class CORSPolicy:
    """Which browser origins may call a group of endpoints, and with what."""

    origins: frozenset[str] = DEFAULT_CORS_ORIGINS
    methods: str = "GET, POST, OPTIONS"
    allow_headers: str = "Authorization, Content-Type"
    expose_headers: str | None = None

    @classmethod
    def with_extra_origins(cls, extra: set[str] | None = None, **kwargs) -> "CORSPolicy":
        return cls(origins=DEFAULT_CORS_ORIGINS | frozenset(extra or ()), **kwargs)

    def allows(self, origin: str | None) -> bool:
        return bool(origin and origin in self.origins)

    def headers_for(self, origin: str | None) -> dict[str, str]:
        if not self.allows(origin):
            return {}
        headers = {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": self.methods,
            "Access-Control-Allow-Headers": self.allow_headers,
            "Vary": "Origin",
        }
        if self.expose_headers:
            headers["Access-Control-Expose-Headers"] = self.expose_headers
        return headers

    def apply(self, request: Request, response: Response) -> Response:
        response.headers.update(self.headers_for(request.headers.get("origin")))
        return response

    def wrap_send(self, origin: str | None, send: Send) -> Send:
        """Add the CORS headers to a response produced by another ASGI app."""
        extra = self.headers_for(origin)
        if not extra:
            return send

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).update(extra)
            await send(message)

        return send_with_cors

    def preflight_route(self, path: str) -> Route:
        async def preflight(request: Request) -> Response:
            return self.apply(request, Response(status_code=204))

        return Route(path, preflight, methods=["OPTIONS"])

    def error_response(
        self,
        request: Request,
        code: str,
        description: str,
        status_code: int,
        headers: dict[str, str] | None = None,
    ) -> Response:
        return self.apply(
            request,
            JSONResponse(
                {"error": code, "error_description": description},
                status_code=status_code,
                headers=headers,
            ),
        )
