"""Centralized logging configuration with optional Supabase shipping.

This module provides:
- PlainFormatter for stderr output
- JSONFormatter for structured log records
- SupabaseHandler for centralized log collection (batched)

Messages follow a ``[TAG] message`` convention; JSONFormatter lifts the tag
into its own field. Request fields passed via ``extra=`` (method, path,
status, duration_ms) are copied into the record as well.
"""

import logging
import re
import sys
import threading
from queue import Queue, Empty

TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)

# Attributes the request middleware attaches through ``extra=``
REQUEST_FIELDS = ("method", "path", "status", "duration_ms")


def split_tag(message: str):
    """Return (tag, message) for a ``[TAG] message`` string; tag is None if absent."""
    match = TAG_PATTERN.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class JSONFormatter(logging.Formatter):
    """Turns a record into the dict stored in the logs table."""

    def __init__(self, service_name: str = None, instance: str = None):
        super().__init__()
        self.service_name = service_name or "entra-mcp-proxy"
        self.instance = instance

    def format(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())

        extra = {"logger": record.name, "function": record.funcName, "line": record.lineno}
        for field in REQUEST_FIELDS:
            if hasattr(record, field):
                extra[field] = getattr(record, field)
        if record.exc_info:
            extra["exception"] = self.formatException(record.exc_info)

        return {
            "service": self.service_name,
            "instance": self.instance,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": extra,
        }


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class SupabaseHandler(logging.Handler):
    """Logging handler that batches records into a Supabase table.

    Records are inserted batch_size at a time, every flush_interval seconds
    or as soon as a full batch is queued. flush() drains the whole queue, so
    logging.shutdown() at interpreter exit sends whatever is left.
    """

    def __init__(
        self,
        supabase_client,
        service_name: str,
        instance: str = None,
        table: str = "logs",
        batch_size: int = 20,
        flush_interval: float = 10.0,
    ):
        super().__init__()
        self.supabase = supabase_client
        self.table = table
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.setFormatter(JSONFormatter(service_name, instance))

        self._queue: Queue = Queue()
        self._send_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._flush_thread = threading.Thread(target=self._flush_worker, name="log-shipper", daemon=True)
        self._flush_thread.start()

    def emit(self, record: logging.LogRecord):
        try:
            self._queue.put(self.formatter.format(record))
            if self._queue.qsize() >= self.batch_size:
                self._send_batch()
        except Exception:
            self.handleError(record)

    def _flush_worker(self):
        while not self._shutdown.wait(self.flush_interval):
            self.flush()

    def _take_batch(self) -> list:
        batch = []
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        return batch

    def _send_batch(self) -> int:
        """Insert up to batch_size queued entries. Returns how many were taken."""
        with self._send_lock:
            batch = self._take_batch()
            if not batch:
                return 0
            try:
                self.supabase.table(self.table).insert(batch).execute()
            except Exception as e:
                # stderr only; logging here would recurse into this handler
                print(f"[WARNING] Dropped {len(batch)} log records, Supabase insert failed: {e}",
                      file=sys.stderr)
            return len(batch)

    def flush(self):
        while self._send_batch():
            pass

    def close(self):
        self._shutdown.set()
        self.flush()
        super().close()


def setup_logging(
    service_name: str = "entra-mcp-proxy",
    supabase_client=None,
    level: str = "INFO",
    instance: str = None,
) -> logging.Logger:
    """Configure logging with optional Supabase integration.

    Args:
        service_name: Service name attached to structured records.
        supabase_client: Supabase client instance for remote logging.
        level: Root log level name.
        instance: Optional instance identifier (e.g. hostname).

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    if supabase_client:
        supabase_handler = SupabaseHandler(supabase_client, service_name, instance=instance)
        supabase_handler.setLevel(level)
        root_logger.addHandler(supabase_handler)

    # Suppress noisy HTTP client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if supabase_client:
        logger.info(f"[STARTUP] Supabase logging enabled for {service_name}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")

    return root_logger


def flush_logs():
    """Flush every handler on the root logger."""
    for handler in logging.getLogger().handlers:
        handler.flush()
