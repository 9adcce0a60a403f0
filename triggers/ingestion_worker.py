"""
Lacquer — IngestionJobWorker
Consumes ingestion queue messages produced by triggers/dispatcher.py.

Flow per message:
    1. Validate the payload (jobId, userId, request). A bad payload marks the
       job failed and returns; it is never retried.
    2. Short-circuit if the job is already terminal (duplicate delivery).
    3. queued → running, then stages:
         fetching → persisting → materializing → detecting_hex → completed
       with a cancellation check between pages, stages and every few records.
    4. Connector failures mark the job failed. Per-record hex detection
       failures are only logged and counted.

Anything else that raises (DB outage) propagates so the queue message is not
acknowledged and comes back after the visibility timeout. On the last delivery
the queue allows, the job is marked failed instead of being left running.
A redelivered running job keeps its earlier log entries and restarts at fetch.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from models import db
from models.catalog import ProductRecord, UPSERT_INSERTED, UPSERT_SKIPPED, UPSERT_UPDATED
from models.ingestion_store import (
    JOB_CANCELLED,
    JOB_RUNNING,
    TERMINAL_JOB_STATUSES,
)
from orchestrator.capture_types import normalize_hex
from orchestrator.errors import PayloadIntegrityError
from triggers.connectors import PullOptions
from triggers.job_logger import JobLogger

logger = logging.getLogger("lacquer.ingestion.worker")

STAGE_VALIDATION = "queue_payload_validation"
STAGE_FETCHING = "fetching"
STAGE_PERSISTING = "persisting"
STAGE_MATERIALIZING = "materializing"
STAGE_DETECTING_HEX = "detecting_hex"
STAGE_COMPLETED = "completed"
STAGE_CANCELLED = "cancelled"
STAGE_FAILED = "failed"

OUTCOME_INVALID = "invalid"
OUTCOME_SKIPPED = "skipped"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"

# Records handled between two cancellation checks
CANCEL_CHECK_EVERY = 10


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_queue_payload(body) -> Optional[dict]:
    """Queue bodies arrive as a JSON string or an already-decoded dict."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return None
    return body if isinstance(body, dict) else None


def parse_positive_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _parse_flag(value, default: bool) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    return None


def parse_normalized_request(value) -> Optional[dict]:
    """Strict re-validation of the dispatcher's request block. None = invalid."""
    if not isinstance(value, dict):
        return None
    source = value.get("source")
    search_term = value.get("searchTerm")
    if not isinstance(source, str) or not source.strip():
        return None
    if not isinstance(search_term, str) or not search_term.strip():
        return None
    page = parse_positive_int(value.get("page"))
    page_size = parse_positive_int(value.get("pageSize"))
    max_records = parse_positive_int(value.get("maxRecords"))
    if page is None or page_size is None or max_records is None:
        return None
    recent_days = None
    if value.get("recentDays") is not None:
        recent_days = parse_positive_int(value.get("recentDays"))
        if recent_days is None:
            return None
    materialize = _parse_flag(value.get("materializeToInventory"), True)
    detect_hex = _parse_flag(value.get("detectHexFromImage"), True)
    overwrite = _parse_flag(value.get("overwriteDetectedHex"), False)
    if materialize is None or detect_hex is None or overwrite is None:
        return None
    return {
        "source": source.strip(),
        "searchTerm": search_term.strip(),
        "page": page,
        "pageSize": page_size,
        "maxRecords": max_records,
        "recentDays": recent_days,
        "materializeToInventory": materialize,
        "detectHexFromImage": detect_hex,
        "overwriteDetectedHex": overwrite,
    }


class JobCancelled(Exception):
    """Raised at a checkpoint when the job row was cancelled underneath us."""


class IngestionJobWorker:
    """Executes one ingestion job per queue message."""

    def __init__(self, job_store, catalog, connector_factory: Callable[[str], object],
                 hex_detector=None, ingestion_config=None, transaction_factory=None):
        from config.settings import IngestionConfig

        self.jobs = job_store
        self.catalog = catalog
        self.connector_factory = connector_factory
        self.hex_detector = hex_detector
        self.cfg = ingestion_config or IngestionConfig()
        self._transaction = transaction_factory or db.transaction

    # -------------------------------------------------------
    # Queue plumbing
    # -------------------------------------------------------

    def drain(self, queue, batch_size: Optional[int] = None) -> int:
        """Receive and handle one batch. Returns the number of messages acknowledged."""
        acked = 0
        for message in queue.receive(batch_size or self.cfg.drain_batch_size):
            try:
                outcome = self.handle(message.body, delivery=message.dequeue_count)
            except Exception as e:
                logger.error(
                    f"Ingestion message {message.message_id} failed unexpectedly "
                    f"(delivery {message.dequeue_count}); leaving it for redelivery: {e}",
                    exc_info=True,
                )
                continue
            queue.delete(message.message_id)
            acked += 1
            logger.info(f"Ingestion message {message.message_id} handled: {outcome}")
        return acked

    # -------------------------------------------------------
    # Validation
    # -------------------------------------------------------

    def _validate(self, payload: Optional[dict]):
        if payload is None:
            raise PayloadIntegrityError("payload is not a JSON object")
        job_id = parse_positive_int(payload.get("jobId"))
        if job_id is None:
            raise PayloadIntegrityError("jobId is required")
        user_id = parse_positive_int(payload.get("userId"))
        if user_id is None:
            raise PayloadIntegrityError("userId is required")
        request = parse_normalized_request(payload.get("request"))
        if request is None:
            raise PayloadIntegrityError("request is invalid")
        return job_id, user_id, request

    def mark_payload_invalid(self, job_id: Optional[int], reason: str, requested_metrics: Optional[dict] = None):
        message = f"Invalid ingestion queue payload: {reason}"
        if job_id is None:
            logger.error(message)
            return
        job = self.jobs.get_job(job_id)
        if job is None:
            logger.warning(f"{message} (job {job_id} not found)")
            return
        if job["status"] in TERMINAL_JOB_STATUSES:
            logger.info(f"{message} (job {job_id} already {job['status']}; ignoring)")
            return
        now = _now()
        metrics = dict(requested_metrics or {})
        metrics["pipeline"] = {"status": "failed", "stage": STAGE_VALIDATION, "updatedAt": now}
        metrics["invalidQueuePayload"] = {
            "reason": reason,
            "queueName": self.cfg.queue_name,
            "failedAt": now,
        }
        self.jobs.mark_failed(job_id, message, metrics)
        logger.error(f"Ingestion job {job_id}: {message}")

    # -------------------------------------------------------
    # Execution
    # -------------------------------------------------------

    def handle(self, body, delivery: Optional[int] = None) -> str:
        """Run one delivery of a job. `delivery` is the queue dequeue count, when known."""
        payload = parse_queue_payload(body)
        try:
            job_id, user_id, request = self._validate(payload)
        except PayloadIntegrityError as e:
            raw_job_id = parse_positive_int(payload.get("jobId")) if payload else None
            requested = payload.get("requestedMetrics") if payload else None
            self.mark_payload_invalid(raw_job_id, str(e), requested if isinstance(requested, dict) else None)
            return OUTCOME_INVALID

        job = self.jobs.get_job(job_id)
        if job is None:
            logger.warning(f"Ingestion job {job_id} not found; dropping message")
            return OUTCOME_INVALID
        if job["status"] in TERMINAL_JOB_STATUSES:
            logger.info(f"Ingestion job {job_id} already {job['status']}; skipping duplicate delivery")
            return OUTCOME_SKIPPED

        # A running job is a redelivery after a crash: carry its metrics and logs forward
        stored = job.get("metrics_json") or {}
        requested = payload.get("requestedMetrics")
        base = dict(stored)
        stored_logs = base.pop("logs", None)
        if isinstance(requested, dict):
            base.update(requested)
        # work restarts from fetch, so counters restart too
        for counter in ("processed", "inserted", "updated", "skipped"):
            base[counter] = 0
        base.setdefault("queuedAt", payload.get("queuedAt") or _now())
        attempt = parse_positive_int(stored.get("deliveryAttempts")) or 0
        attempt = max(attempt + 1, delivery or 0)
        base["deliveryAttempts"] = attempt
        log = JobLogger(job_id, flush_fn=self.jobs.merge_metrics, base_metrics=base,
                        entries=stored_logs if isinstance(stored_logs, list) else None)

        if not self.jobs.mark_running(job_id, {
            "pipeline": self._pipeline("running", STAGE_FETCHING),
            "deliveryAttempts": attempt,
        }):
            logger.info(f"Ingestion job {job_id} could not move to running; skipping")
            return OUTCOME_SKIPPED
        if job["status"] == JOB_RUNNING:
            log.warn(f"Redelivered while running (attempt {attempt}); restarting from fetch")
        log.info("Job started", {"source": request["source"], "userId": user_id})

        try:
            records, connector_meta = self._fetch(job_id, request, log)
            self._persist(job_id, request, records, log)
            materialized = []
            if request["materializeToInventory"]:
                materialized = self._materialize(job_id, user_id, records, log)
            else:
                log.info("Materialization disabled for this job")
            if request["detectHexFromImage"] and materialized:
                self._detect_hex(job_id, request, materialized, log)
        except JobCancelled:
            log.warn("Cancellation detected; stopping record processing")
            log.update_metrics(pipeline=self._pipeline(JOB_CANCELLED, STAGE_CANCELLED))
            log.flush()
            return OUTCOME_CANCELLED
        except _ConnectorFailure as e:
            log.error("Connector fetch failed", {"error": str(e)})
            final = log.metrics_with_logs()
            final["pipeline"] = self._pipeline("failed", STAGE_FAILED)
            self.jobs.mark_failed(job_id, str(e), final)
            return OUTCOME_FAILED
        except Exception as e:
            final_delivery = attempt >= self.cfg.max_dequeue_count
            log.error("Processing failed", {"error": str(e), "attempt": attempt, "finalAttempt": final_delivery})
            if not final_delivery:
                log.flush()
                raise
            logger.error(f"Ingestion job {job_id} failed on its last allowed delivery: {e}", exc_info=True)
            final = log.metrics_with_logs()
            final["pipeline"] = self._pipeline("failed", STAGE_FAILED)
            self.jobs.mark_failed(job_id, f"Ingestion job failed after {attempt} attempt(s): {e}", final)
            return OUTCOME_FAILED

        log.update_metrics(**connector_meta)
        log.update_metrics(pipeline=self._pipeline("succeeded", STAGE_COMPLETED))
        log.info("Job completed", {
            "processed": log.base_metrics["processed"],
            "inserted": log.base_metrics["inserted"],
            "updated": log.base_metrics["updated"],
            "skipped": log.base_metrics["skipped"],
        })
        if not self.jobs.mark_succeeded(job_id, log.metrics_with_logs()):
            status = self.jobs.get_status(job_id)
            logger.warning(f"Ingestion job {job_id} finished work but is now {status}; not marking succeeded")
            return OUTCOME_CANCELLED if status == JOB_CANCELLED else OUTCOME_SKIPPED
        return OUTCOME_SUCCEEDED

    @staticmethod
    def _pipeline(status: str, stage: str) -> dict:
        return {"status": status, "stage": stage, "updatedAt": _now()}

    def _checkpoint(self, job_id):
        if self.jobs.get_status(job_id) == JOB_CANCELLED:
            raise JobCancelled()

    def _stage(self, job_id, stage: str, log: JobLogger):
        self._checkpoint(job_id)
        log.update_metrics(pipeline=self._pipeline("running", stage))
        log.flush()

    def _fetch(self, job_id, request: dict, log: JobLogger):
        self._stage(job_id, STAGE_FETCHING, log)
        try:
            connector = self.connector_factory(request["source"])
        except Exception as e:
            raise _ConnectorFailure(str(e)) from e

        records: List[ProductRecord] = []
        meta = {}
        page = request["page"]
        max_records = request["maxRecords"]
        pages_fetched = 0
        while len(records) < max_records and page <= self.cfg.max_page:
            if pages_fetched:
                self._checkpoint(job_id)
            options = PullOptions(
                search_term=request["searchTerm"],
                page=page,
                page_size=request["pageSize"],
                max_records=max_records - len(records),
                recent_days=request["recentDays"],
            )
            try:
                result = connector.pull(options)
            except Exception as e:
                raise _ConnectorFailure(str(e)) from e
            pages_fetched += 1
            log.debug(f"Fetched page {page}", {"records": len(result.records)})
            meta = dict(result.metadata or {})
            if not result.records:
                break
            records.extend(result.records)
            if len(result.records) < request["pageSize"]:
                break
            page += 1

        records = records[:max_records]
        meta["pagesFetched"] = pages_fetched
        log.update_metrics(fetched=len(records))
        log.info(f"Fetched {len(records)} record(s) from {request['source']}", {"pages": pages_fetched})
        return records, meta

    def _persist(self, job_id, request: dict, records: List[ProductRecord], log: JobLogger):
        self._stage(job_id, STAGE_PERSISTING, log)
        counts = {UPSERT_INSERTED: 0, UPSERT_UPDATED: 0, UPSERT_SKIPPED: 0}
        for i, record in enumerate(records):
            if i and i % CANCEL_CHECK_EVERY == 0:
                self._checkpoint(job_id)
            with self._transaction() as cur:
                outcome = self.catalog.upsert_external_product(cur, request["source"], record)
            counts[outcome] += 1
        log.update_metrics(
            processed=len(records),
            inserted=counts[UPSERT_INSERTED],
            updated=counts[UPSERT_UPDATED],
            skipped=counts[UPSERT_SKIPPED],
        )
        log.info("External products persisted", dict(counts))

    def _materialize(self, job_id, user_id: int, records: List[ProductRecord], log: JobLogger) -> list:
        self._stage(job_id, STAGE_MATERIALIZING, log)
        brands_created = shades_created = inv_inserted = inv_updated = not_materialized = 0
        materialized = []
        for i, record in enumerate(records):
            if i and i % CANCEL_CHECK_EVERY == 0:
                self._checkpoint(job_id)
            with self._transaction() as cur:
                result = self.catalog.materialize_record(cur, user_id, record)
            if result is None:
                not_materialized += 1
                log.debug("Record lacks brand or shade; not materialized", {"externalId": record.external_id})
                continue
            brands_created += int(result["brandCreated"])
            shades_created += int(result["shadeCreated"])
            if result["inventoryCreated"]:
                inv_inserted += 1
            else:
                inv_updated += 1
            materialized.append((record, result))
        log.update_metrics(
            brandsCreated=brands_created,
            shadesCreated=shades_created,
            inventoryInserted=inv_inserted,
            inventoryUpdated=inv_updated,
            notMaterialized=not_materialized,
        )
        log.info(f"Materialized {len(materialized)} record(s) into inventory for user {user_id}")
        return materialized

    def _detect_hex(self, job_id, request: dict, materialized: list, log: JobLogger):
        from tools.hex_detection import HexDetectionError

        self._stage(job_id, STAGE_DETECTING_HEX, log)
        if self.hex_detector is None:
            log.warn("Hex detection requested but no detector is configured")
            log.update_metrics(hexDetected=0, hexSkipped=len(materialized), hexDetectionFailed=0)
            return
        detected = skipped = failed = 0
        seen_shades = set()
        for i, (record, result) in enumerate(materialized):
            if i and i % CANCEL_CHECK_EVERY == 0:
                self._checkpoint(job_id)
            shade_id = result["shadeId"]
            if shade_id in seen_shades or not record.image_url:
                skipped += 1
                continue
            seen_shades.add(shade_id)
            if not request["overwriteDetectedHex"]:
                with self._transaction() as cur:
                    existing = self.catalog.get_detected_hex(cur, shade_id)
                if existing:
                    skipped += 1
                    continue
            try:
                hex_value = normalize_hex(self.hex_detector.detect(image_url=record.image_url))
            except HexDetectionError as e:
                failed += 1
                log.warn("Hex detection failed", {"shadeId": shade_id, "error": str(e)})
                continue
            if not hex_value:
                failed += 1
                log.warn("Hex detection returned no colour", {"shadeId": shade_id})
                continue
            with self._transaction() as cur:
                self.catalog.update_detected_hex(cur, shade_id, hex_value)
            detected += 1
        log.update_metrics(hexDetected=detected, hexSkipped=skipped, hexDetectionFailed=failed)
        log.info("Hex detection finished", {"detected": detected, "skipped": skipped, "failed": failed})


class _ConnectorFailure(Exception):
    """Wraps any exception raised by the connector collaborator."""
