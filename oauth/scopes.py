"""Translation of client-facing scopes into Entra scope syntax.

Entra expects resource scopes as ``{resource}/{scope}`` while OIDC scopes
are passed as-is. Which policy applies is chosen at startup.
"""

OIDC_SCOPES = frozenset({"openid", "profile", "email", "offline_access"})
DEFAULT_FIXED_SCOPES = "openid profile email"


class NamespacedScopePolicy:
    """Prefix custom scopes with the resource; always request ``openid``."""

    name = "namespaced"

    def derive(self, scope: str, resource: str) -> str:
        """Build the provider scope string for resource.

        Unlike a plain ``f"{resource}/{scope}"`` join, a trailing slash on
        the resource is not doubled (``https://api.example.com/`` still gives
        ``https://api.example.com/read``) and scopes already qualified with
        the resource are passed through instead of being prefixed twice.
        """
        prefix = resource.rstrip("/") + "/"
        derived = ["openid"]
        for item in (scope or "").split():
            if item not in OIDC_SCOPES and not item.startswith(prefix):
                item = prefix + item
            if item not in derived:
                derived.append(item)
        return " ".join(derived)


class FixedScopePolicy:
    """Ignore the inbound scope and always request the same scope string."""

    name = "fixed"

    def __init__(self, scopes: str = DEFAULT_FIXED_SCOPES):
        items = scopes.split()
        if "openid" not in items:
            items.insert(0, "openid")
        self.scopes = " ".join(items)

    def derive(self, scope: str, resource: str) -> str:
        return self.scopes


def get_scope_policy(name: str, fixed_scopes: str = DEFAULT_FIXED_SCOPES):
    """Return the scope policy registered under name."""
    if name == NamespacedScopePolicy.name:
        return NamespacedScopePolicy()
    if name == FixedScopePolicy.name:
        return FixedScopePolicy(fixed_scopes)
    raise ValueError(f"Unknown scope policy: {name}")
