"""
Lacquer — JobLogger
Structured, leveled log buffer for one ingestion job. Every entry is also
forwarded to the process logger; flush() merges the base metrics plus the
`logs` array into the job row's metrics_json.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger("lacquer.ingestion.job")

LEVELS = ("debug", "info", "warn", "error")
_PY_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

MAX_ENTRIES = 500
TRIM_FRACTION = 0.2


class JobLogger:
    """Accumulates {ts, level, msg, data?} entries for a job's metrics.logs."""

    def __init__(self, job_id, flush_fn: Optional[Callable[[str, dict], object]] = None,
                 base_metrics: Optional[dict] = None, max_entries: int = MAX_ENTRIES,
                 entries: Optional[List[dict]] = None):
        self.job_id = str(job_id)
        self._flush_fn = flush_fn
        self.base_metrics = dict(base_metrics or {})
        self.max_entries = max_entries
        # entries already persisted by an earlier delivery are carried forward
        self.entries: List[dict] = [e for e in (entries or []) if isinstance(e, dict)][-max_entries:]
        self._dirty = False

    def _add(self, level: str, msg: str, data: Optional[dict] = None):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "msg": msg,
        }
        if data:
            entry["data"] = data
        if len(self.entries) >= self.max_entries:
            del self.entries[:max(1, int(self.max_entries * TRIM_FRACTION))]
        self.entries.append(entry)
        self._dirty = True
        suffix = f" {data}" if data else ""
        logger.log(_PY_LEVELS[level], f"[job {self.job_id}] {msg}{suffix}")

    def debug(self, msg: str, data: Optional[dict] = None):
        self._add("debug", msg, data)

    def info(self, msg: str, data: Optional[dict] = None):
        self._add("info", msg, data)

    def warn(self, msg: str, data: Optional[dict] = None):
        self._add("warn", msg, data)

    def error(self, msg: str, data: Optional[dict] = None):
        self._add("error", msg, data)

    def update_metrics(self, **metrics):
        self.base_metrics.update(metrics)
        self._dirty = True

    def metrics_with_logs(self) -> dict:
        out = dict(self.base_metrics)
        out["logs"] = list(self.entries)
        return out

    def flush(self):
        """Persist pending metrics/logs. Failures are logged, never raised."""
        if not self._dirty or self._flush_fn is None:
            return
        try:
            self._flush_fn(self.job_id, self.metrics_with_logs())
            self._dirty = False
        except Exception as e:
            logger.warning(f"Failed to flush logs for job {self.job_id}: {e}")
