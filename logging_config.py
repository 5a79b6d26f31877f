"""Logging setup for the proxy.

Log lines carry a bracketed tag ("[TOKEN] Issued ...") that the JSON output
splits into its own field. Codes, tokens and client secrets must never reach
a log sink in full: call sites pass them through redact(), and
SecretScrubFilter catches any that slip through in URLs or headers.

Remote collection is optional. With SUPABASE_URL and SUPABASE_KEY set, rows
are queued and inserted into the `logs` table in batches by a background
thread.
"""

import atexit
import json
import logging
import re
import sys
import threading
from queue import Empty, Queue
from typing import Optional

SERVICE_NAME = "tasks-oauth-proxy"

TAG_PATTERN = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)

# query parameters and headers whose values are credentials
SECRET_PATTERN = re.compile(
    r"(?P<key>(?:access_token|refresh_token|client_secret|code|code_verifier)=|Bearer\s+)"
    r"(?P<value>[^\s&\"',]+)",
    re.IGNORECASE,
)


def redact(secret: Optional[str], keep: int = 8) -> str:
    """Show only a short prefix of a code, token or client secret."""
    if not secret:
        return "<none>"
    return f"{secret[:keep]}..."


def split_tag(message: str) -> tuple[Optional[str], str]:
    match = TAG_PATTERN.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class SecretScrubFilter(logging.Filter):
    """Rewrites credential values in a record's message to their redacted form.

    Mostly guards third-party loggers (uvicorn access lines with ?code=...);
    our own call sites already redact.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = SECRET_PATTERN.sub(
            lambda m: m.group("key") + redact(m.group("value"), keep=4), message
        )
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; also builds the rows sent to Supabase."""

    def __init__(self, service_name: str = SERVICE_NAME, instance: Optional[str] = None):
        super().__init__()
        self.service_name = service_name
        self.instance = instance

    def to_entry(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())
        entry = {
            "service": self.service_name,
            "instance": self.instance,
            "level": record.levelname,
            "logger": record.name,
            "tag": tag,
            "message": message,
            "extra": {"module": record.module, "function": record.funcName, "line": record.lineno},
        }
        if record.exc_info:
            entry["extra"]["exception"] = self.formatException(record.exc_info)
        return entry

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.to_entry(record))


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class SupabaseHandler(logging.Handler):
    """Queues log rows and inserts them into a Supabase table in batches.

    A batch goes out when batch_size rows are waiting, every flush_interval
    seconds from the worker thread, and once more at interpreter exit.
    Insert failures are reported on stderr and the batch is dropped.
    """

    def __init__(
        self,
        supabase_client,
        table: str = "logs",
        batch_size: int = 20,
        flush_interval: float = 10.0,
        instance: Optional[str] = None,
        start_worker: bool = True,
    ):
        super().__init__()
        self.supabase = supabase_client
        self.table = table
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.entries = JSONFormatter(instance=instance)

        self._pending: Queue = Queue()
        self._stopped = threading.Event()
        self._worker = None
        if start_worker:
            self._worker = threading.Thread(
                target=self._run, name="supabase-log-flush", daemon=True
            )
            self._worker.start()
            atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        try:
            self._pending.put(self.entries.to_entry(record))
        except Exception:
            self.handleError(record)
            return
        if self._pending.qsize() >= self.batch_size:
            self.flush()

    def _run(self):
        while not self._stopped.wait(self.flush_interval):
            self.flush()

    def _drain(self) -> list[dict]:
        rows = []
        while len(rows) < self.batch_size * 2:
            try:
                rows.append(self._pending.get_nowait())
            except Empty:
                break
        return rows

    def flush(self):
        rows = self._drain()
        if not rows:
            return
        try:
            self.supabase.table(self.table).insert(rows).execute()
        except Exception as e:
            # not through logging: this handler would receive it
            print(f"[LOGGING] Dropped {len(rows)} log rows, Supabase insert failed: {e}", file=sys.stderr)

    def close(self):
        self._stopped.set()
        self.flush()
        super().close()


_remote_handler: Optional[SupabaseHandler] = None


def create_supabase_client(url: Optional[str], key: Optional[str]):
    """Supabase client for the log sink, or None when not configured."""
    if not url or not key:
        return None
    from supabase import create_client
    return create_client(url, key)


def setup_logging(
    level: str = "INFO",
    log_format: str = "plain",
    supabase_client=None,
    instance: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger: stderr always, Supabase when a client is given."""
    global _remote_handler

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    scrub = SecretScrubFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(JSONFormatter(instance=instance) if log_format == "json" else PlainFormatter())
    console.addFilter(scrub)
    root.addHandler(console)

    if supabase_client is not None:
        _remote_handler = SupabaseHandler(supabase_client, instance=instance)
        _remote_handler.setLevel(logging.INFO)
        _remote_handler.addFilter(scrub)
        root.addHandler(_remote_handler)

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if _remote_handler is not None:
        logger.info(f"[STARTUP] Shipping logs to Supabase table '{_remote_handler.table}'")
    return root


def flush_logs():
    """Push any queued rows to Supabase now."""
    if _remote_handler is not None:
        _remote_handler.flush()
