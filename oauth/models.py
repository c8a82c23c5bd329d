"""Records held by the proxy's stores.

Each record round-trips through a plain dict so it can live either in an
in-process store or in a JSON column.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Optional


DEFAULT_AUTHORITY = "https://login.microsoftonline.com/{tenant_id}"


@dataclass
class ClientRegistration:
    """A downstream MCP client registered via DCR."""

    client_id: str
    client_secret: str
    redirect_uris: list[str]
    client_name: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ClientRegistration":
        return cls(
            client_id=data["client_id"],
            client_secret=data["client_secret"],
            redirect_uris=list(data["redirect_uris"]),
            client_name=data.get("client_name"),
            created_at=data.get("created_at", 0),
        )


@dataclass
class AuthorizationRequestRecord:
    """Pending authorize step, keyed by the proxy state."""

    client_id: str
    redirect_uri: str
    original_state: str
    resource: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    scope: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthorizationRequestRecord":
        return cls(**data)


@dataclass
class CodeExchangeRecord:
    """Pending token exchange, keyed by the provider's authorization code."""

    resource: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CodeExchangeRecord":
        return cls(resource=data["resource"])


@dataclass(frozen=True)
class TenantConfig:
    """The proxy's own application at the identity provider."""

    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)
    authorize_url: str
    token_url: str

    @classmethod
    def from_authority(
        cls,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority: str = None,
    ) -> "TenantConfig":
        """Build a tenant config from an Entra authority URL.

        Args:
            tenant_id: Entra tenant (directory) ID
            client_id: The proxy's application (client) ID in that tenant
            client_secret: The proxy's client secret
            authority: Authority base URL, defaults to the public cloud login host

        Returns:
            TenantConfig with v2.0 authorize and token endpoints
        """
        authority = (authority or DEFAULT_AUTHORITY.format(tenant_id=tenant_id)).rstrip("/")
        return cls(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
            authorize_url=f"{authority}/oauth2/v2.0/authorize",
            token_url=f"{authority}/oauth2/v2.0/token",
        )
