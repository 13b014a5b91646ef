from __future__ import annotations

import logging

import httpx
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from auth import pkce, supabase_auth
from auth.client_registry import InvalidClientMetadata, register_client
from auth.code_codec import CodeCodec
from auth.cors import CORSPolicy
from auth.models import CodePayload, OAuthFlowState
from auth.templates import FRAGMENT_EXTRACTION_PAGE, render_error_page
from auth.urls import CALLBACK_PATH, FLOW_STATE_PARAM, append_query_params, build_callback_url

LOGGER = logging.getLogger("tapmcp.oauth")

DEFAULT_SCOPES = ["phone:read", "phone:control"]
ACCESS_TOKEN_TTL_SECONDS = 3600
SERVICE_DOCUMENTATION_URL = "https://docs.tapkit.ai"

METADATA_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"
REGISTER_PATH = "/oauth/register"

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class OAuthServer:
    """Authorization server fronting Supabase.

    Nothing about an authorization in flight is kept in memory: the client's
    parameters ride through the identity provider in ``mcp_state`` and the
    issued code is a signed envelope around the upstream tokens.
    """

    def __init__(
        self,
        *,
        public_url: str,
        supabase_url: str,
        supabase_anon_key: str,
        code_codec: CodeCodec,
        provider: str = "google",
        scopes: list[str] | None = None,
        cors_origins: set[str] | None = None,
        upstream_timeout: float = supabase_auth.DEFAULT_TIMEOUT_SECONDS,
        exchange_code_fn=supabase_auth.exchange_code,
        refresh_token_fn=supabase_auth.refresh_token,
    ) -> None:
        self.public_url = public_url.rstrip("/")
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_anon_key = supabase_anon_key
        self.code_codec = code_codec
        self.provider = provider
        self.scopes = scopes or list(DEFAULT_SCOPES)
        self.cors = CORSPolicy.with_extra_origins(cors_origins)
        self.upstream_timeout = upstream_timeout

        self._exchange_code_fn = exchange_code_fn
        self._refresh_token_fn = refresh_token_fn

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    # -- routes ----------------------------------------------------------------

    def metadata_payload(self) -> dict:
        return {
            "issuer": self.public_url,
            "authorization_endpoint": f"{self.public_url}{AUTHORIZE_PATH}",
            "token_endpoint": f"{self.public_url}{TOKEN_PATH}",
            "registration_endpoint": f"{self.public_url}{REGISTER_PATH}",
            "scopes_supported": self.scopes,
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "service_documentation": SERVICE_DOCUMENTATION_URL,
        }

    def protected_resource_payload(self) -> dict:
        return {
            "resource": self.public_url,
            "authorization_servers": [self.public_url],
            "scopes_supported": self.scopes,
            "bearer_methods_supported": ["header"],
        }

    def routes(self) -> list[Route]:
        routes = [
            Route(METADATA_PATH, self._handle_metadata, methods=["GET"]),
            Route(PROTECTED_RESOURCE_PATH, self._handle_protected_resource, methods=["GET"]),
            Route(REGISTER_PATH, self._handle_register, methods=["POST"]),
            Route(AUTHORIZE_PATH, self._handle_authorize, methods=["GET"]),
            Route(CALLBACK_PATH, self._handle_callback, methods=["GET"]),
            Route(TOKEN_PATH, self._handle_token, methods=["POST"]),
        ]
        paths = (
            METADATA_PATH,
            PROTECTED_RESOURCE_PATH,
            REGISTER_PATH,
            AUTHORIZE_PATH,
            CALLBACK_PATH,
            TOKEN_PATH,
        )
        routes.extend(self.cors.preflight_route(path) for path in paths)
        return routes

    # -- handlers --------------------------------------------------------------

    async def _handle_metadata(self, request: Request) -> Response:
        return self.cors.apply(
            request,
            JSONResponse(
                self.metadata_payload(),
                headers={"Cache-Control": "public, max-age=3600"},
            ),
        )

    async def _handle_protected_resource(self, request: Request) -> Response:
        return self.cors.apply(
            request,
            JSONResponse(
                self.protected_resource_payload(),
                headers={"Cache-Control": "public, max-age=3600"},
            ),
        )

    async def _handle_register(self, request: Request) -> Response:
        try:
            payload = await request.json()
        except ValueError:
            return self._error(request, "invalid_client_metadata", "Invalid JSON body.", 400)

        try:
            registration = register_client(payload)
        except InvalidClientMetadata as error:
            return self._error(request, "invalid_client_metadata", str(error), 400)

        LOGGER.info("Registered OAuth client %s", registration.client_id)
        return self.cors.apply(
            request,
            JSONResponse(registration.to_payload(), status_code=201),
        )

    async def _handle_authorize(self, request: Request) -> Response:
        params = request.query_params
        redirect_uri = params.get("redirect_uri")
        state = params.get("state")
        code_challenge = params.get("code_challenge") or None
        code_challenge_method = params.get("code_challenge_method") or None

        if not redirect_uri or not state:
            return self._error(
                request, "invalid_request", "Missing redirect_uri or state.", 400
            )
        if code_challenge_method and code_challenge_method not in pkce.SUPPORTED_METHODS:
            return self._error(
                request,
                "invalid_request",
                "code_challenge_method must be S256 or plain.",
                400,
            )

        flow_state = OAuthFlowState(
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=params.get("scope") or None,
            client_id=params.get("client_id") or None,
        )
        callback_url = build_callback_url(self.public_url, flow_state.encode())
        authorize_url = supabase_auth.build_authorization_url(
            self.supabase_url, callback_url, provider=self.provider
        )

        LOGGER.info("Starting %s sign-in for client %s", self.provider, flow_state.client_id)
        return self.cors.apply(
            request,
            RedirectResponse(url=authorize_url, status_code=302),
        )

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params

        upstream_error = params.get("error")
        if upstream_error:
            description = params.get("error_description") or upstream_error
            LOGGER.warning("Identity provider returned an error: %s", upstream_error)
            return HTMLResponse(render_error_page(description), status_code=400)

        blob = params.get(FLOW_STATE_PARAM)
        if not blob:
            return self._error(request, "invalid_state", "Missing mcp_state.", 400)
        try:
            flow_state = OAuthFlowState.decode(blob)
        except ValueError:
            return self._error(request, "invalid_state", "Invalid mcp_state.", 400)

        access_token = params.get("access_token")
        refresh_token = params.get("refresh_token") or ""
        if not access_token:
            upstream_code = params.get("code")
            if not upstream_code:
                return HTMLResponse(FRAGMENT_EXTRACTION_PAGE)
            try:
                exchanged = await self._exchange_code_fn(
                    self.supabase_url,
                    self.supabase_anon_key,
                    upstream_code,
                    timeout=self.upstream_timeout,
                )
            except (RuntimeError, httpx.HTTPError):
                LOGGER.exception("Supabase code exchange failed")
                return HTMLResponse(
                    render_error_page("Failed to complete sign-in with the identity provider."),
                    status_code=502,
                )
            access_token = exchanged.access_token
            refresh_token = exchanged.refresh_token

        code = self.code_codec.generate(
            CodePayload(
                access_token=access_token,
                refresh_token=refresh_token,
                code_challenge=flow_state.code_challenge,
                code_challenge_method=flow_state.code_challenge_method,
            )
        )
        redirect_url = append_query_params(
            flow_state.redirect_uri,
            {"code": code, "state": flow_state.state},
        )
        return RedirectResponse(url=redirect_url, status_code=302)

    async def _handle_token(self, request: Request) -> Response:
        form_data = await self._read_token_body(request)
        if form_data is None:
            return self._token_error(request, "invalid_request", "Invalid request body.")

        grant_type = form_data.get("grant_type")
        if grant_type == "authorization_code":
            return await self._exchange_authorization_code(request, form_data)
        if grant_type == "refresh_token":
            return await self._exchange_refresh_token(request, form_data)

        return self._token_error(request, "unsupported_grant_type", "Unsupported grant_type.")

    async def _exchange_authorization_code(
        self,
        request: Request,
        form_data: dict[str, str],
    ) -> Response:
        code = form_data.get("code")
        if not code:
            return self._token_error(request, "invalid_request", "Missing code.")

        payload = self.code_codec.verify(code)
        if payload is None:
            return self._token_error(
                request, "invalid_grant", "Invalid or expired authorization code."
            )

        if payload.code_challenge:
            code_verifier = form_data.get("code_verifier")
            if not code_verifier:
                return self._token_error(request, "invalid_request", "Missing code_verifier.")
            method = payload.code_challenge_method or "S256"
            if not pkce.matches(code_verifier, payload.code_challenge, method):
                return self._token_error(request, "invalid_grant", "PKCE verification failed.")

        return self._token_success(
            request,
            {
                "access_token": payload.access_token,
                "token_type": "Bearer",
                "expires_in": ACCESS_TOKEN_TTL_SECONDS,
                "refresh_token": payload.refresh_token,
                "scope": self.scope,
            },
        )

    async def _exchange_refresh_token(
        self,
        request: Request,
        form_data: dict[str, str],
    ) -> Response:
        refresh_token = form_data.get("refresh_token")
        if not refresh_token:
            return self._token_error(request, "invalid_request", "Missing refresh_token.")

        try:
            refreshed = await self._refresh_token_fn(
                self.supabase_url,
                self.supabase_anon_key,
                refresh_token,
                timeout=self.upstream_timeout,
            )
        except supabase_auth.TokenRequestError as error:
            LOGGER.warning("Supabase rejected refresh (status %s)", error.status_code)
            return self._token_error(request, "invalid_grant", error.description)
        except (RuntimeError, httpx.HTTPError):
            LOGGER.exception("Supabase refresh failed")
            return self._token_error(request, "server_error", "Failed to refresh token.")

        return self._token_success(
            request,
            {
                "access_token": refreshed.access_token,
                "token_type": "Bearer",
                "expires_in": refreshed.expires_in,
                "refresh_token": refreshed.refresh_token,
                "scope": self.scope,
            },
        )

    # -- helpers ---------------------------------------------------------------

    async def _read_token_body(self, request: Request) -> dict[str, str] | None:
        content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if content_type == "application/x-www-form-urlencoded":
            form = await request.form()
            return {key: str(value) for key, value in form.multi_items()}
        if content_type == "application/json":
            try:
                payload = await request.json()
            except ValueError:
                return None
            if not isinstance(payload, dict):
                return None
            return {key: str(value) for key, value in payload.items() if value is not None}
        return None

    def _token_success(self, request: Request, payload: dict) -> Response:
        return self.cors.apply(request, JSONResponse(payload, headers=NO_STORE_HEADERS))

    def _token_error(self, request: Request, code: str, description: str) -> Response:
        return self.cors.error_response(request, code, description, 400, headers=NO_STORE_HEADERS)

    def _error(self, request: Request, code: str, description: str, status_code: int) -> Response:
        return self.cors.error_response(request, code, description, status_code)
