"""Single-use correlation records tying the two OAuth hops together.

AuthorizationCorrelator: proxy state -> the client's original authorize request
CodeCorrelator: provider authorization code -> the resource it was issued for

Both are consumed with an atomic read-and-delete, so a state or code can be
redeemed at most once. Entries expire after the store's TTL (10 minutes by
default).
"""

import logging
import secrets
from typing import Optional

from oauth.models import AuthorizationRequestRecord, CodeExchangeRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 10 * 60


def generate_state() -> str:
    return secrets.token_urlsafe(32)


class AuthorizationCorrelator:

    def __init__(self, store):
        self.store = store

    def create(self, record: AuthorizationRequestRecord) -> str:
        """Store record under a fresh, unguessable proxy state and return the state."""
        while True:
            proxy_state = generate_state()
            if self.store.add(proxy_state, record.to_dict()):
                return proxy_state

    def consume(self, proxy_state: str) -> Optional[AuthorizationRequestRecord]:
        """Read and delete the record. Returns None if unknown, expired or already used."""
        if not proxy_state:
            return None
        data = self.store.pop(proxy_state)
        if data is None:
            return None
        return AuthorizationRequestRecord.from_dict(data)


class CodeCorrelator:

    def __init__(self, store):
        self.store = store

    def remember(self, code: str, resource: str) -> None:
        # Provider codes are unique; a replayed callback simply refreshes the entry
        self.store.set(code, CodeExchangeRecord(resource=resource).to_dict())

    def consume(self, code: str) -> Optional[CodeExchangeRecord]:
        if not code:
            return None
        data = self.store.pop(code)
        if data is None:
            return None
        return CodeExchangeRecord.from_dict(data)
