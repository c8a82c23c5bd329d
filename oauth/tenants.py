"""Resolution of a requested resource to the Entra tenant that serves it.

Resolvers are pure lookups: an unknown resource resolves to None and the
caller rejects the request.
"""

from typing import Iterable, Mapping, Optional

from oauth.models import TenantConfig


class SingleTenantResolver:
    """Every resource is served by one global tenant.

    If allowed_resources is given, only those resource identifiers resolve.
    """

    def __init__(self, tenant: Optional[TenantConfig], allowed_resources: Iterable[str] = None):
        self.tenant = tenant
        self.allowed_resources = frozenset(allowed_resources) if allowed_resources else None

    @property
    def configured(self) -> bool:
        return self.tenant is not None

    def resolve(self, resource: str) -> Optional[TenantConfig]:
        if not resource or self.tenant is None:
            return None
        if self.allowed_resources is not None and resource not in self.allowed_resources:
            return None
        return self.tenant


class ResourceTenantResolver:
    """Each resource identifier maps to its own tenant configuration."""

    def __init__(self, tenants: Mapping[str, TenantConfig]):
        self.tenants = dict(tenants)

    @property
    def configured(self) -> bool:
        return bool(self.tenants)

    def resolve(self, resource: str) -> Optional[TenantConfig]:
        if not resource:
            return None
        return self.tenants.get(resource)
