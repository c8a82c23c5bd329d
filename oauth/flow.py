"""Authorization-code flow between MCP clients and Entra ID.

The proxy presents a single registered application to Entra on behalf of
every dynamically registered MCP client:

1. /authorize: validate the client, remember the request under a new
   proxy state, redirect to Entra with the proxy's own client_id
2. /callback: consume the proxy state, remember code -> resource,
   redirect back to the client with Entra's code and the client's state
3. /oauth/token: authenticate the client, consume the code record,
   redeem the code at Entra with the proxy's credentials and relay the
   response unchanged

This module has no HTTP framework dependency; endpoints.py adapts it to
FastAPI.
"""

import asyncio
import logging
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from oauth.clients import ClientRegistry
from oauth.correlation import AuthorizationCorrelator, CodeCorrelator
from oauth.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    ServerError,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from oauth.models import AuthorizationRequestRecord, ClientRegistration
from oauth.scopes import NamespacedScopePolicy

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 10.0
DEFAULT_CODE_CHALLENGE_METHOD = "S256"


def _param(params: Mapping[str, Any], name: str) -> Optional[str]:
    """Return a non-empty string parameter, or None."""
    value = params.get(name)
    if isinstance(value, str) and value:
        return value
    return None


def append_query(uri: str, params: dict) -> str:
    """Add params to uri, keeping any query string it already carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class TokenResponse:
    """Provider token endpoint response, relayed verbatim to the caller."""

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body


class FlowOrchestrator:
    """Drives clients through authorize, callback and token exchange."""

    def __init__(
        self,
        clients: ClientRegistry,
        authorizations: AuthorizationCorrelator,
        codes: CodeCorrelator,
        tenants,
        callback_url: str,
        scope_policy=None,
        provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        transport: httpx.AsyncBaseTransport = None,
    ):
        """Initialize the orchestrator.

        Args:
            clients: Registry of DCR clients
            authorizations: Correlator for pending authorize requests
            codes: Correlator for pending code exchanges
            tenants: Resolver with resolve(resource) and a configured property
            callback_url: The proxy's /callback URL registered at the provider
            scope_policy: Scope derivation policy (namespaced by default)
            provider_timeout: Timeout in seconds for the provider token call
            transport: Optional httpx transport (used by tests)
        """
        self.clients = clients
        self.authorizations = authorizations
        self.codes = codes
        self.tenants = tenants
        self.callback_url = callback_url
        self.scope_policy = scope_policy or NamespacedScopePolicy()
        self.provider_timeout = provider_timeout
        self._transport = transport

    # ============== Registration ==============

    def register_client(self, metadata: Any) -> ClientRegistration:
        """Register a client from a DCR request body."""
        if not isinstance(metadata, dict):
            metadata = {}
        return self.clients.register(metadata.get("redirect_uris"), metadata.get("client_name"))

    # ============== Authorization ==============

    def authorize(self, params: Mapping[str, Any]) -> str:
        """Validate an authorize request and return the provider redirect URL.

        No state is stored unless every check passes.
        """
        client_id = _param(params, "client_id")
        redirect_uri = _param(params, "redirect_uri")
        state = _param(params, "state")
        resource = _param(params, "resource")

        if not (client_id and redirect_uri and state and resource):
            raise InvalidRequest("Missing required parameters: client_id, redirect_uri, state, resource")

        response_type = _param(params, "response_type")
        if response_type is not None and response_type != "code":
            raise UnsupportedResponseType(f"Unsupported response_type: {response_type}")

        client = self.clients.lookup(client_id)
        if client is None:
            raise InvalidClient("Unknown client_id", status_code=400)

        if redirect_uri not in client.redirect_uris:
            raise InvalidRequest("redirect_uri not registered for this client")

        if not self.tenants.configured:
            raise ServerError("Tenant not configured")
        tenant = self.tenants.resolve(resource)
        if tenant is None:
            raise InvalidRequest("Unknown resource")

        code_challenge = _param(params, "code_challenge")
        code_challenge_method = None
        if code_challenge:
            code_challenge_method = _param(params, "code_challenge_method") or DEFAULT_CODE_CHALLENGE_METHOD
        scope = _param(params, "scope")

        proxy_state = self.authorizations.create(AuthorizationRequestRecord(
            client_id=client_id,
            redirect_uri=redirect_uri,
            original_state=state,
            resource=resource,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=scope,
        ))

        upstream_params = {
            "client_id": tenant.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "state": proxy_state,
            "scope": self.scope_policy.derive(scope, resource),
        }
        if code_challenge:
            upstream_params["code_challenge"] = code_challenge
            upstream_params["code_challenge_method"] = code_challenge_method

        logger.info(f"[AUTHORIZE] client={client_id} resource={resource} tenant={tenant.tenant_id}")
        return append_query(tenant.authorize_url, upstream_params)

    def callback(self, params: Mapping[str, Any]) -> str:
        """Consume the proxy state and return the redirect URL back to the client."""
        state = _param(params, "state")
        if not state:
            raise InvalidRequest("Missing state parameter")

        record = self.authorizations.consume(state)
        if record is None:
            raise InvalidRequest("Unknown or expired state")

        error = _param(params, "error")
        if error:
            client_params = {"error": error}
            error_description = _param(params, "error_description")
            if error_description:
                client_params["error_description"] = error_description
            client_params["state"] = record.original_state
            logger.info(f"[CALLBACK] Provider returned error '{error}' for client={record.client_id}")
            return append_query(record.redirect_uri, client_params)

        code = _param(params, "code")
        if not code:
            raise InvalidRequest("Missing code parameter")

        self.codes.remember(code, record.resource)

        logger.info(f"[CALLBACK] Code issued for client={record.client_id} resource={record.resource}")
        return append_query(record.redirect_uri, {"code": code, "state": record.original_state})

    # ============== Token ==============

    async def exchange_token(self, params: Mapping[str, Any]) -> TokenResponse:
        """Redeem an authorization code at the provider on behalf of a client."""
        grant_type = params.get("grant_type")
        if grant_type != "authorization_code":
            raise UnsupportedGrantType(f"Grant type '{grant_type}' is not supported")

        client_id = _param(params, "client_id")
        client_secret = _param(params, "client_secret")
        code = _param(params, "code")
        if not (client_id and client_secret and code):
            raise InvalidRequest("Missing required parameters: client_id, client_secret, code")

        await asyncio.to_thread(self.clients.authenticate, client_id, client_secret)

        # Consumed before contacting the provider: a failed exchange cannot be retried
        exchange = await asyncio.to_thread(self.codes.consume, code)
        if exchange is None:
            raise InvalidGrant("Unknown or expired authorization code")

        tenant = self.tenants.resolve(exchange.resource)
        if tenant is None:
            raise ServerError("Tenant configuration not found")

        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.callback_url,
            "client_id": tenant.client_id,
            "client_secret": tenant.client_secret,
        }
        code_verifier = _param(params, "code_verifier")
        if code_verifier:
            token_data["code_verifier"] = code_verifier

        try:
            async with httpx.AsyncClient(timeout=self.provider_timeout, transport=self._transport) as client:
                response = await client.post(
                    tenant.token_url,
                    data=token_data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.error(f"[TOKEN] Token endpoint request failed for tenant={tenant.tenant_id}: {e}")
            raise ServerError("Token endpoint unreachable") from e

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"[TOKEN] Token endpoint returned non-JSON body (status {response.status_code})")
            raise ServerError("Invalid response from token endpoint") from e

        logger.info(f"[TOKEN] Exchange for client={client_id} returned status {response.status_code}")
        return TokenResponse(response.status_code, body)
