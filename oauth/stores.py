"""Time-bounded key/value stores for OAuth state.

Two backings share one contract:
- TtlStore keeps entries in process memory (lost on restart)
- SupabaseTtlStore keeps entries in a Supabase table so they survive
  restarts and can be shared by several proxy instances

An expired entry is treated as absent by every read, whether or not it has
been swept yet. Sweeping only reclaims space.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from postgrest.exceptions import APIError

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class TtlStore:
    """In-process store with lazy expiry.

    All operations take a single lock, so pop() and add() are atomic with
    respect to each other across threads.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _expiry(self) -> Optional[float]:
        if self.ttl_seconds is None:
            return None
        return self._clock() + self.ttl_seconds

    def _live(self, key: str):
        """Return the entry for key, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._expiry())

    def add(self, key: str, value: Any) -> bool:
        """Insert only if no live entry exists for key."""
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._expiry())
            return True

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def pop(self, key: str) -> Optional[Any]:
        """Read and delete in one step. Only one caller ever gets the value."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry[0]

    def delete(self, key: str) -> bool:
        """Delete key. Returns False if it was absent or already expired."""
        with self._lock:
            if self._live(key) is None:
                return False
            del self._entries[key]
            return True

    def sweep(self) -> int:
        """Remove entries whose expiry has passed. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and now >= expires_at
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SupabaseTtlStore:
    """Durable store backed by a Supabase (PostgREST) table.

    Expected table layout:

        create table <table> (
            key text primary key,
            value jsonb not null,
            expires_at timestamptz
        );

    Values must be JSON-serializable. Expiry is filtered inside each query
    (``expires_at is null or expires_at > now``), so Postgres compares the
    timestamps. pop() is a single ``DELETE ... WHERE key = ? RETURNING *``
    so concurrent callers cannot both receive the same row.
    """

    def __init__(
        self,
        supabase_client,
        table: str,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.supabase = supabase_client
        self.table = table
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _row(self, key: str, value: Any) -> dict:
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = (self._clock() + timedelta(seconds=self.ttl_seconds)).isoformat()
        return {"key": key, "value": value, "expires_at": expires_at}

    def _live_filter(self) -> str:
        return f"expires_at.is.null,expires_at.gt.{self._clock().isoformat()}"

    def _insert(self, key: str, value: Any) -> None:
        self.supabase.table(self.table).insert(self._row(key, value)).execute()

    def set(self, key: str, value: Any) -> None:
        self.supabase.table(self.table).upsert(self._row(key, value), on_conflict="key").execute()

    def add(self, key: str, value: Any) -> bool:
        try:
            self._insert(key, value)
            return True
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                raise

        # The conflicting row may be expired but not yet swept
        now = self._clock().isoformat()
        purged = self.supabase.table(self.table).delete().eq("key", key).lt("expires_at", now).execute()
        if not purged.data:
            return False
        try:
            self._insert(key, value)
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return False
            raise
        return True

    def get(self, key: str) -> Optional[Any]:
        response = (
            self.supabase.table(self.table)
            .select("value")
            .eq("key", key)
            .or_(self._live_filter())
            .execute()
        )
        rows = response.data or []
        return rows[0]["value"] if rows else None

    def pop(self, key: str) -> Optional[Any]:
        response = (
            self.supabase.table(self.table)
            .delete()
            .eq("key", key)
            .or_(self._live_filter())
            .execute()
        )
        rows = response.data or []
        return rows[0]["value"] if rows else None

    def delete(self, key: str) -> bool:
        """Delete a live row. Expired rows are left for sweep() and report False."""
        response = (
            self.supabase.table(self.table)
            .delete()
            .eq("key", key)
            .or_(self._live_filter())
            .execute()
        )
        return bool(response.data)

    def sweep(self) -> int:
        now = self._clock().isoformat()
        response = self.supabase.table(self.table).delete().lt("expires_at", now).execute()
        return len(response.data or [])


class StoreSweeper:
    """Background thread that periodically sweeps expired entries.

    Purely a space-reclamation task: reads already ignore expired entries.
    """

    def __init__(self, stores: Iterable, interval: float = 60.0):
        self.stores = list(stores)
        self.interval = interval
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._sweep_worker, name="store-sweeper", daemon=True)
        self._thread.start()

    def _sweep_worker(self):
        while not self._shutdown.wait(self.interval):
            self.sweep_once()

    def sweep_once(self) -> int:
        """Sweep every store once. Returns the total number of entries removed."""
        removed = 0
        for store in self.stores:
            try:
                removed += store.sweep()
            except Exception as e:
                # Retried on the next tick
                logger.warning(f"[SWEEP] Failed to sweep {type(store).__name__}: {e}")
        if removed:
            logger.info(f"[SWEEP] Removed {removed} expired entries")
        return removed

    def stop(self) -> None:
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
