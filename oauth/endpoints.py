"""OAuth endpoints of the proxy.

This module contains the HTTP surface:
- Discovery metadata (/.well-known/oauth-authorization-server)
- Client registration (/oidc/register)
- Authorization flow (/authorize, /callback)
- Token endpoint (/oauth/token)

Handlers only translate HTTP to FlowOrchestrator calls; all decisions live
in oauth/flow.py. Orchestrator calls that touch the stores run in the
threadpool, since the Supabase backing does blocking I/O.
"""

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from oauth.errors import InvalidClientMetadata, InvalidRequest, OAuthError
from oauth.flow import FlowOrchestrator

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def init_oauth_routes(app: FastAPI, orchestrator: FlowOrchestrator, server_url: str, scopes_supported=None):
    """Attach the orchestrator and public URL to the app and include the router."""
    app.state.orchestrator = orchestrator
    app.state.server_url = server_url.rstrip("/")
    app.state.scopes_supported = list(scopes_supported or ["openid", "profile", "email", "offline_access"])
    app.include_router(router)


def _orchestrator(request: Request) -> FlowOrchestrator:
    return request.app.state.orchestrator


def _error_response(exc: OAuthError, headers: dict = None) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


# ============== OAuth 2.0 Discovery ==============

@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(request: Request):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    base = request.app.state.server_url
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/oauth/token",
        "registration_endpoint": f"{base}/oidc/register",
        "scopes_supported": request.app.state.scopes_supported,
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["client_secret_post"],
    }


# ============== Client Registration ==============

@router.post("/oidc/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        data = await request.json()
    except ValueError:
        return _error_response(InvalidClientMetadata("Request body must be a JSON object"))

    if not isinstance(data, dict):
        return _error_response(InvalidClientMetadata("Request body must be a JSON object"))

    try:
        client = await run_in_threadpool(_orchestrator(request).register_client, data)
    except OAuthError as e:
        logger.info(f"[DCR] Registration rejected: {e.error}")
        return _error_response(e)

    body = {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "client_id_issued_at": client.created_at,
        "client_secret_expires_at": 0,
        "redirect_uris": client.redirect_uris,
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_post",
    }
    if client.client_name is not None:
        body["client_name"] = client.client_name
    return JSONResponse(body, status_code=201, headers=NO_STORE)


# ============== Authorization Flow ==============

@router.get("/authorize")
def authorize(request: Request):
    """OAuth 2.0 Authorization Endpoint - redirects to Entra."""
    try:
        location = _orchestrator(request).authorize(request.query_params)
    except OAuthError as e:
        logger.info(f"[AUTHORIZE] Rejected: {e.error} ({e.description})")
        return _error_response(e)
    return RedirectResponse(url=location, status_code=302)


@router.get("/callback")
def callback(request: Request):
    """Entra redirects here; the proxy redirects on to the MCP client."""
    try:
        location = _orchestrator(request).callback(request.query_params)
    except OAuthError as e:
        logger.info(f"[CALLBACK] Rejected: {e.error} ({e.description})")
        return _error_response(e)
    return RedirectResponse(url=location, status_code=302)


# ============== Token Endpoint ==============

async def _read_token_request(request: Request) -> dict:
    """Parse the token request body as JSON or form data."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequest("Malformed JSON body")
        if not isinstance(data, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/oauth/token")
async def token(request: Request):
    """OAuth 2.0 Token Endpoint - relays the exchange to Entra."""
    try:
        data = await _read_token_request(request)
        result = await _orchestrator(request).exchange_token(data)
    except OAuthError as e:
        logger.info(f"[TOKEN] Rejected: {e.error} ({e.description})")
        return _error_response(e, headers=NO_STORE)

    return JSONResponse(result.body, status_code=result.status_code, headers=NO_STORE)
