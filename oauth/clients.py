"""Registry of downstream clients created by Dynamic Client Registration (RFC 7591)."""

import hmac
import logging
import secrets
from typing import Optional
from urllib.parse import urlsplit

from oauth.errors import InvalidClient, InvalidClientMetadata
from oauth.models import ClientRegistration

logger = logging.getLogger(__name__)

# 128-bit client ids, 256-bit secrets
CLIENT_ID_BYTES = 16
CLIENT_SECRET_BYTES = 32


def generate_client_id() -> str:
    return secrets.token_hex(CLIENT_ID_BYTES)


def generate_client_secret() -> str:
    return secrets.token_hex(CLIENT_SECRET_BYTES)


def is_absolute_uri(value: str) -> bool:
    """Check that value is an absolute URI usable as a redirect target.

    Custom schemes (``cursor://callback``) and loopback URLs are accepted.
    Fragments are not allowed in redirect URIs.
    """
    if not value or any(c.isspace() for c in value):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    if not parts.scheme or parts.fragment or "#" in value:
        return False
    return bool(parts.netloc or parts.path)


def validate_client_metadata(redirect_uris, client_name=None) -> None:
    """Raise InvalidClientMetadata if the registration request is malformed."""
    if not isinstance(redirect_uris, list) or not redirect_uris:
        raise InvalidClientMetadata("redirect_uris is required and must be a non-empty array")

    for uri in redirect_uris:
        if not isinstance(uri, str):
            raise InvalidClientMetadata("Each redirect_uri must be a string")
        if not is_absolute_uri(uri):
            raise InvalidClientMetadata(f"Invalid redirect_uri: {uri}")

    if client_name is not None and not isinstance(client_name, str):
        raise InvalidClientMetadata("client_name must be a string")


class ClientRegistry:
    """Issues client credentials and authenticates callers.

    Backed by a store without TTL; registrations never expire on their own.
    """

    def __init__(self, store):
        self.store = store

    def register(self, redirect_uris: list[str], client_name: str = None) -> ClientRegistration:
        validate_client_metadata(redirect_uris, client_name)

        while True:
            registration = ClientRegistration(
                client_id=generate_client_id(),
                client_secret=generate_client_secret(),
                redirect_uris=list(redirect_uris),
                client_name=client_name,
            )
            if self.store.add(registration.client_id, registration.to_dict()):
                break
            logger.warning("[DCR] Generated client_id collided, regenerating")

        logger.info(f"[DCR] Registered client {registration.client_id} ({client_name or 'unnamed'})")
        return registration

    def lookup(self, client_id: str) -> Optional[ClientRegistration]:
        if not client_id:
            return None
        data = self.store.get(client_id)
        if data is None:
            return None
        return ClientRegistration.from_dict(data)

    def authenticate(self, client_id: str, client_secret: str) -> ClientRegistration:
        """Return the registration if the secret matches, else raise InvalidClient.

        Unknown ids and wrong secrets produce the same error.
        """
        registration = self.lookup(client_id)
        if registration is None or not client_secret:
            raise InvalidClient("Client authentication failed")
        if not hmac.compare_digest(
            registration.client_secret.encode("utf-8"),
            client_secret.encode("utf-8"),
        ):
            logger.info(f"[TOKEN] Client secret mismatch for {client_id}")
            raise InvalidClient("Client authentication failed")
        return registration
