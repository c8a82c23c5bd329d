"""Entra MCP Proxy.

An OAuth 2.0 proxy that lets MCP clients register dynamically (RFC 7591)
and sign in with Entra ID, while Entra only ever sees one pre-registered
confidential application.

It handles:
- Dynamic Client Registration (/oidc/register)
- Authorization code flow (/authorize, /callback)
- Token exchange relayed to Entra (/oauth/token)
- Discovery metadata (/.well-known/oauth-authorization-server)

Run with ``python main.py`` or ``uvicorn main:build_app_from_env --factory``.
"""
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Config, ConfigError, build_tenant_resolver, load_config
from logging_config import flush_logs, setup_logging
from oauth.clients import ClientRegistry
from oauth.correlation import AuthorizationCorrelator, CodeCorrelator
from oauth.endpoints import init_oauth_routes
from oauth.flow import FlowOrchestrator
from oauth.scopes import get_scope_policy
from oauth.stores import StoreSweeper, SupabaseTtlStore, TtlStore

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

SERVICE_NAME = "entra-mcp-proxy"
VERSION = "1.0.0"

# Supabase tables used by STORE_BACKEND=supabase
CLIENTS_TABLE = "oauth_clients"
AUTHORIZATIONS_TABLE = "oauth_authorization_requests"
CODES_TABLE = "oauth_code_exchanges"

logger = logging.getLogger(__name__)


def create_supabase_client(config: Config):
    """Create a Supabase client if credentials are configured."""
    if not (config.supabase_url and config.supabase_key):
        return None
    from supabase import create_client
    return create_client(config.supabase_url, config.supabase_key)


def build_stores(config: Config, supabase_client=None):
    """Return (clients, authorizations, codes) stores for the configured backend."""
    ttl = config.state_ttl_seconds
    if config.store_backend == "supabase":
        if supabase_client is None:
            raise ConfigError("STORE_BACKEND=supabase requires a Supabase client")
        return (
            SupabaseTtlStore(supabase_client, CLIENTS_TABLE),
            SupabaseTtlStore(supabase_client, AUTHORIZATIONS_TABLE, ttl_seconds=ttl),
            SupabaseTtlStore(supabase_client, CODES_TABLE, ttl_seconds=ttl),
        )
    return TtlStore(), TtlStore(ttl_seconds=ttl), TtlStore(ttl_seconds=ttl)


def create_app(config: Config, supabase_client=None, transport=None) -> FastAPI:
    """Build the FastAPI app and its stores from config.

    Args:
        config: Loaded configuration
        supabase_client: Client for the durable store backend (optional)
        transport: httpx transport for the provider token call (tests only)
    """
    config.validate()

    client_store, authorization_store, code_store = build_stores(config, supabase_client)
    tenants = build_tenant_resolver(config)
    orchestrator = FlowOrchestrator(
        clients=ClientRegistry(client_store),
        authorizations=AuthorizationCorrelator(authorization_store),
        codes=CodeCorrelator(code_store),
        tenants=tenants,
        callback_url=config.callback_url,
        scope_policy=get_scope_policy(config.scope_policy, config.fixed_scopes),
        provider_timeout=config.provider_timeout_seconds,
        transport=transport,
    )
    sweeper = StoreSweeper([authorization_store, code_store], interval=config.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper.start()
        logger.info(f"[STARTUP] {SERVICE_NAME} ready at {config.proxy_base_url} "
                    f"(store: {config.store_backend}, tenant configured: {tenants.configured})")
        try:
            yield
        finally:
            sweeper.stop()
            flush_logs()

    app = FastAPI(
        title="Entra MCP Proxy",
        description="OAuth 2.0 proxy bridging MCP Dynamic Client Registration to Entra ID",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.sweeper = sweeper

    # Add CORS middleware for browser-based MCP clients (discovery and DCR)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        # Path only: query strings carry codes and state values
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(
            f"[REQUEST] {request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            {"error": "server_error", "error_description": "Internal server error"},
            status_code=500,
        )

    init_oauth_routes(app, orchestrator, config.proxy_base_url)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": SERVICE_NAME}

    return app


def build_app_from_env() -> FastAPI:
    """App factory for uvicorn: configure logging and build the app from the environment."""
    config = load_config()
    supabase_client = create_supabase_client(config)
    setup_logging(service_name=SERVICE_NAME, supabase_client=supabase_client, level=config.log_level)
    return create_app(config, supabase_client=supabase_client)


def run():
    """Console entry point."""
    import uvicorn

    config = load_config()
    app = build_app_from_env()
    logger.info(f"Starting {SERVICE_NAME} on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    run()
