"""
Lacquer — Ingestion job persistence (IngestionJobStore).

ingestion_job rows move forward only:
    queued → running → succeeded | failed | cancelled
    queued → failed | cancelled

Every transition is a guarded UPDATE (`WHERE status IN (...)`), so a duplicate
queue delivery or a late worker can never re-enter a terminal state. Metrics
are merged key-by-key into metrics_json (jsonb `||`), never replaced.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from models import db

logger = logging.getLogger("lacquer.models.ingestion_store")

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

ACTIVE_JOB_STATUSES = (JOB_QUEUED, JOB_RUNNING)
TERMINAL_JOB_STATUSES = frozenset({JOB_SUCCEEDED, JOB_FAILED, JOB_CANCELLED})


def _iso(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def job_to_api(row: Optional[dict]) -> Optional[dict]:
    if row is None:
        return None
    return {
        "id": str(row["ingestion_job_id"]),
        "source": row["source"],
        "jobType": row["job_type"],
        "status": row["status"],
        "startedAt": _iso(row.get("started_at")),
        "finishedAt": _iso(row.get("finished_at")),
        "metrics": row.get("metrics_json") or {},
        "error": row.get("error"),
    }


def _parse_job_id(job_id) -> Optional[int]:
    try:
        value = int(str(job_id).strip())
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class IngestionJobStore:
    """Persistence boundary for ingestion_job rows."""

    def __init__(self, transaction_factory=None):
        self._transaction = transaction_factory or db.transaction

    def transaction(self):
        return self._transaction()

    def create_job(self, source: str, job_type: str, metrics: dict) -> dict:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO ingestion_job (source, job_type, status, metrics_json)
                VALUES (%s, %s, %s, %s::jsonb)
                RETURNING *
                """,
                (source, job_type, JOB_QUEUED, json.dumps(metrics, default=str)),
            )
            row = cur.fetchone()
        logger.info(f"Ingestion job {row['ingestion_job_id']} created ({source}, {job_type})")
        return dict(row)

    def get_job(self, job_id) -> Optional[dict]:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return None
        with self.transaction() as cur:
            cur.execute("SELECT * FROM ingestion_job WHERE ingestion_job_id = %s", (parsed,))
            row = cur.fetchone()
        return dict(row) if row else None

    def get_status(self, job_id) -> Optional[str]:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return None
        with self.transaction() as cur:
            cur.execute("SELECT status FROM ingestion_job WHERE ingestion_job_id = %s", (parsed,))
            row = cur.fetchone()
        return row["status"] if row else None

    def list_jobs(self, limit: int = 20, source: Optional[str] = None) -> dict:
        where = ""
        params = []
        if source:
            where = "WHERE source = %s"
            params.append(source)
        with self.transaction() as cur:
            cur.execute(f"SELECT COUNT(*) AS total FROM ingestion_job {where}", tuple(params))
            total = cur.fetchone()["total"]
            cur.execute(
                f"""
                SELECT * FROM ingestion_job {where}
                ORDER BY started_at DESC, ingestion_job_id DESC
                LIMIT %s
                """,
                tuple(params + [limit]),
            )
            rows = cur.fetchall()
        return {"jobs": [dict(r) for r in rows], "total": total}

    # -------------------------------------------------------
    # Guarded transitions
    # -------------------------------------------------------

    def _transition(self, job_id, to_status: str, from_statuses, metrics: Optional[dict] = None,
                    error: Optional[str] = None, finished: bool = False) -> bool:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return False
        with self.transaction() as cur:
            cur.execute(
                f"""
                UPDATE ingestion_job
                SET status = %s,
                    metrics_json = metrics_json || %s::jsonb,
                    error = COALESCE(%s, error)
                    {", finished_at = NOW()" if finished else ""}
                WHERE ingestion_job_id = %s AND status IN %s
                RETURNING ingestion_job_id
                """,
                (
                    to_status,
                    json.dumps(metrics or {}, default=str),
                    error,
                    parsed,
                    tuple(from_statuses),
                ),
            )
            changed = cur.fetchone() is not None
        if changed:
            logger.info(f"Ingestion job {parsed} → {to_status}")
        else:
            logger.info(f"Ingestion job {parsed}: transition to {to_status} ignored (not in {list(from_statuses)})")
        return changed

    def mark_running(self, job_id, metrics: Optional[dict] = None) -> bool:
        return self._transition(job_id, JOB_RUNNING, ACTIVE_JOB_STATUSES, metrics)

    def mark_succeeded(self, job_id, metrics: dict) -> bool:
        return self._transition(job_id, JOB_SUCCEEDED, (JOB_RUNNING,), metrics, finished=True)

    def mark_failed(self, job_id, error: str, metrics: Optional[dict] = None) -> bool:
        return self._transition(job_id, JOB_FAILED, ACTIVE_JOB_STATUSES, metrics, error=error, finished=True)

    def mark_cancelled(self, job_id, reason: str, metrics: Optional[dict] = None) -> bool:
        metrics = dict(metrics or {})
        metrics["cancelReason"] = reason
        return self._transition(job_id, JOB_CANCELLED, ACTIVE_JOB_STATUSES, metrics, error=reason, finished=True)

    def merge_metrics(self, job_id, metrics: dict) -> bool:
        """Merge keys into metrics_json without touching status."""
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return False
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE ingestion_job
                SET metrics_json = metrics_json || %s::jsonb
                WHERE ingestion_job_id = %s
                RETURNING ingestion_job_id
                """,
                (json.dumps(metrics, default=str), parsed),
            )
            return cur.fetchone() is not None
