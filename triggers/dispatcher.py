"""
Lacquer — Ingestion JobDispatcher
Validates a run request, creates the ingestion_job row (status queued) and
puts one message on the ingestion queue. Unknown sources are rejected here,
before any row or message exists.

Queue message contract (consumed by triggers/ingestion_worker.py):
    {
      "jobId": "42",                 # string
      "userId": "7",                 # string, positive integer
      "queuedAt": "2025-...Z",       # ISO-8601
      "request": {source, searchTerm, page, pageSize, maxRecords, recentDays,
                  materializeToInventory, detectHexFromImage, overwriteDetectedHex},
      "requestedMetrics": {... request echo ..., "triggeredByUserId": 7}
    }
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from models.ingestion_store import TERMINAL_JOB_STATUSES, job_to_api
from orchestrator.errors import ConflictError, InputError, NotFoundError
from triggers.connectors import SUPPORTED_SOURCES, is_supported_source

logger = logging.getLogger("lacquer.ingestion.dispatcher")


def clamp_int(value, fallback: int, min_value: int, max_value: int) -> int:
    """Parse an int (strings allowed); unparseable → fallback; then clamp."""
    if isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip()) if value is not None else None
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        return fallback
    return min(max_value, max(min_value, parsed))


def parse_bool(value, default: bool) -> Optional[bool]:
    """True/False/"true"/"false"; None → default; anything else → None."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


class JobDispatcher:
    """Request validation + job row + enqueue; also job cancellation."""

    def __init__(self, job_store, queue, ingestion_config=None):
        from config.settings import IngestionConfig

        self.jobs = job_store
        self.queue = queue
        self.cfg = ingestion_config or IngestionConfig()

    def normalize_request(self, body: Optional[dict], user_id: int) -> tuple:
        """Return (request, requested_metrics) or raise InputError."""
        if not isinstance(body, dict):
            raise InputError("Request body must be a JSON object")
        cfg = self.cfg
        source = body.get("source").strip() if isinstance(body.get("source"), str) else ""
        if not source:
            raise InputError("source is required")
        if not is_supported_source(source):
            raise InputError(f"Unsupported source '{source}'. Supported: {', '.join(SUPPORTED_SOURCES)}")

        page = clamp_int(body.get("page"), cfg.default_page, 1, cfg.max_page)
        page_size = clamp_int(body.get("pageSize"), cfg.default_page_size, 1, cfg.max_page_size)
        max_records = clamp_int(body.get("maxRecords"), cfg.default_max_records, 1, cfg.max_records)
        recent_days = None
        if body.get("recentDays") is not None:
            recent_days = clamp_int(body.get("recentDays"), cfg.default_recent_days, 1, cfg.max_recent_days)
        search_term = body.get("searchTerm")
        search_term = search_term.strip() if isinstance(search_term, str) and search_term.strip() else cfg.default_search_term

        flags = {}
        for key, default in (("materializeToInventory", True),
                             ("detectHexFromImage", True),
                             ("overwriteDetectedHex", False)):
            parsed = parse_bool(body.get(key), default)
            if parsed is None:
                raise InputError(f"{key} must be a boolean")
            flags[key] = parsed

        request = {
            "source": source,
            "searchTerm": search_term,
            "page": page,
            "pageSize": page_size,
            "maxRecords": max_records,
            "recentDays": recent_days,
            **flags,
        }
        requested_metrics = {
            "searchTerm": search_term,
            "requestedPage": page,
            "requestedPageSize": page_size,
            "maxRecords": max_records,
            "recentDays": recent_days,
            "materializeToInventory": flags["materializeToInventory"],
            "detectHexFromImage": flags["detectHexFromImage"],
            "overwriteDetectedHex": flags["overwriteDetectedHex"],
            "triggeredByUserId": user_id,
        }
        return request, requested_metrics

    def dispatch(self, body: Optional[dict], user_id: int) -> dict:
        request, requested_metrics = self.normalize_request(body, user_id)
        queued_at = datetime.now(timezone.utc).isoformat()
        metrics = dict(requested_metrics)
        metrics["pipeline"] = {"status": "queued", "stage": "queued", "updatedAt": queued_at}

        job = self.jobs.create_job(request["source"], self.cfg.job_type, metrics)
        job_id = str(job["ingestion_job_id"])
        message = {
            "jobId": job_id,
            "userId": str(user_id),
            "queuedAt": queued_at,
            "request": request,
            "requestedMetrics": requested_metrics,
        }
        try:
            self.queue.send(message)
        except Exception as e:
            logger.error(f"Failed to enqueue ingestion job {job_id}: {e}")
            self.jobs.mark_failed(job_id, f"Failed to enqueue ingestion job: {e}")
            raise
        logger.info(f"Ingestion job {job_id} queued ({request['source']}) by user {user_id}")
        return job_to_api(job)

    def cancel(self, job_id, reason: Optional[str] = None) -> dict:
        reason = reason.strip() if isinstance(reason, str) and reason.strip() else "Cancelled by administrator"
        job = self.jobs.get_job(job_id)
        if job is None:
            raise NotFoundError("Ingestion job not found")
        if job["status"] in TERMINAL_JOB_STATUSES:
            raise ConflictError(f"Ingestion job is already {job['status']}")
        now = datetime.now(timezone.utc).isoformat()
        if not self.jobs.mark_cancelled(job_id, reason, {"pipeline": {"status": "cancelled", "stage": "cancelled", "updatedAt": now}}):
            current = self.jobs.get_job(job_id)
            raise ConflictError(f"Ingestion job is already {current['status'] if current else 'gone'}")
        logger.info(f"Ingestion job {job_id} cancelled: {reason}")
        return job_to_api(self.jobs.get_job(job_id))
