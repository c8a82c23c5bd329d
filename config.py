"""Config management for entra-mcp-proxy.

All settings come from environment variables (optionally loaded from a
.env file by main.py). Tenant settings can alternatively come from a JSON
file mapping resource identifiers to Entra applications.
"""
import json
import os
from pathlib import Path
from typing import Optional

from oauth.models import TenantConfig
from oauth.tenants import ResourceTenantResolver, SingleTenantResolver


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed."""


def _required(env: dict, name: str) -> str:
    value = env.get(name)
    if not value:
        raise ConfigError(f"Missing required env var: {name}")
    return value


class Config:
    """Configuration container."""

    def __init__(self, env: dict = None):
        self.env = dict(os.environ if env is None else env)

    @property
    def proxy_base_url(self) -> str:
        return _required(self.env, "PROXY_BASE_URL").rstrip("/")

    @property
    def callback_url(self) -> str:
        return f"{self.proxy_base_url}/callback"

    @property
    def host(self) -> str:
        return self.env.get("HOST", "0.0.0.0")

    @property
    def port(self) -> int:
        return int(self.env.get("PORT", "3000"))

    @property
    def scope_policy(self) -> str:
        return self.env.get("SCOPE_POLICY", "namespaced").lower()

    @property
    def fixed_scopes(self) -> str:
        return self.env.get("FIXED_SCOPES", "openid profile email")

    @property
    def state_ttl_seconds(self) -> float:
        return float(self.env.get("STATE_TTL_SECONDS", "600"))

    @property
    def provider_timeout_seconds(self) -> float:
        return float(self.env.get("PROVIDER_TIMEOUT_SECONDS", "10"))

    @property
    def store_backend(self) -> str:
        return self.env.get("STORE_BACKEND", "memory").lower()

    @property
    def supabase_url(self) -> Optional[str]:
        return self.env.get("SUPABASE_URL") or None

    @property
    def supabase_key(self) -> Optional[str]:
        return self.env.get("SUPABASE_KEY") or None

    @property
    def sweep_interval_seconds(self) -> float:
        return float(self.env.get("SWEEP_INTERVAL_SECONDS", "60"))

    @property
    def log_level(self) -> str:
        return self.env.get("LOG_LEVEL", "INFO").upper()

    @property
    def tenants_file(self) -> Optional[Path]:
        path = self.env.get("ENTRA_TENANTS_FILE")
        return Path(path) if path else None

    @property
    def allowed_resources(self) -> Optional[list[str]]:
        raw = self.env.get("ENTRA_ALLOWED_RESOURCES", "")
        resources = [item.strip() for item in raw.split(",") if item.strip()]
        return resources or None

    def single_tenant(self) -> Optional[TenantConfig]:
        """Return the global tenant, or None if no ENTRA_* variables are set.

        Setting only some of them is a configuration error.
        """
        names = ("ENTRA_TENANT_ID", "ENTRA_CLIENT_ID", "ENTRA_CLIENT_SECRET")
        if not any(self.env.get(name) for name in names):
            return None
        return TenantConfig.from_authority(
            tenant_id=_required(self.env, "ENTRA_TENANT_ID"),
            client_id=_required(self.env, "ENTRA_CLIENT_ID"),
            client_secret=_required(self.env, "ENTRA_CLIENT_SECRET"),
            authority=self.env.get("ENTRA_AUTHORITY") or None,
        )

    def validate(self) -> None:
        """Fail fast on settings every request depends on."""
        _required(self.env, "PROXY_BASE_URL")
        if self.store_backend not in ("memory", "supabase"):
            raise ConfigError(f"Unknown STORE_BACKEND: {self.store_backend}")
        if self.store_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigError("STORE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_KEY")


def load_config(env: dict = None) -> Config:
    """Load config from the environment."""
    return Config(env)


def load_tenants_file(path: Path) -> dict[str, TenantConfig]:
    """Load a resource -> tenant mapping from a JSON file.

    Format:
        {
          "https://api.example.com": {
            "tenant_id": "...", "client_id": "...", "client_secret": "...",
            "authority": "https://login.microsoftonline.com/..."   (optional)
          }
        }
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise ConfigError(f"Could not read tenants file {path}: {e}") from e

    if not isinstance(data, dict) or not data:
        raise ConfigError(f"Tenants file {path} must be a non-empty JSON object")

    tenants = {}
    for resource, entry in data.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"Tenant entry for {resource} must be an object")
        try:
            tenants[resource] = TenantConfig.from_authority(
                tenant_id=entry["tenant_id"],
                client_id=entry["client_id"],
                client_secret=entry["client_secret"],
                authority=entry.get("authority"),
            )
        except KeyError as e:
            raise ConfigError(f"Tenant entry for {resource} is missing {e.args[0]}") from e
    return tenants


def build_tenant_resolver(config: Config):
    """Per-resource resolution when a tenants file is configured, else one global tenant."""
    if config.tenants_file:
        return ResourceTenantResolver(load_tenants_file(config.tenants_file))
    return SingleTenantResolver(config.single_tenant(), config.allowed_resources)
