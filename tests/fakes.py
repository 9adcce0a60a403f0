"""
Shared test doubles: in-memory capture store, catalog, job store and queue.
They honour the same call signatures as the PostgreSQL-backed classes and
roll their state back when the body of a transaction raises.
"""
import copy
from contextlib import contextmanager
from datetime import datetime, timezone

from models.catalog import UPSERT_INSERTED, UPSERT_SKIPPED, UPSERT_UPDATED
from models.ingestion_store import (
    ACTIVE_JOB_STATUSES,
    JOB_CANCELLED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
)
from orchestrator.capture_types import (
    CaptureFrame,
    CaptureQuestion,
    CaptureSession,
    CatalogEntry,
    QUESTION_ANSWERED,
    QUESTION_OPEN,
)
from triggers.job_queue import QueueMessage


class _Transactional:
    """Snapshot/restore of the listed attributes around a transaction."""

    _state_attrs = ()

    @contextmanager
    def transaction(self):
        snapshot = {a: copy.deepcopy(getattr(self, a)) for a in self._state_attrs}
        try:
            yield object()
        except Exception:
            for attr, value in snapshot.items():
                setattr(self, attr, value)
            raise


class FakeCaptureStore(_Transactional):
    _state_attrs = ("sessions", "frames", "questions", "answers", "images", "_seq")

    def __init__(self):
        self.sessions = {}
        self.frames = []
        self.questions = []
        self.answers = []
        self.images = {}
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def insert_session(self, cur, capture_id, user_id, metadata, status):
        session = CaptureSession(id=self._next(), capture_id=capture_id, user_id=user_id,
                                 status=status, metadata=copy.deepcopy(metadata))
        self.sessions[capture_id] = session
        return copy.deepcopy(session)

    def get_session(self, cur, capture_id, user_id, for_update=False):
        session = self.sessions.get(capture_id)
        if session is None or session.user_id != user_id:
            return None
        return copy.deepcopy(session)

    def update_session(self, cur, session):
        self.sessions[session.capture_id] = copy.deepcopy(session)

    def insert_image(self, cur, user_id, asset):
        image_id = self._next()
        stored = copy.deepcopy(asset)
        stored.id = image_id
        self.images[image_id] = (user_id, stored)
        return image_id

    def get_image(self, cur, image_id, user_id):
        entry = self.images.get(image_id)
        if entry is None or entry[0] != user_id:
            return None
        return copy.deepcopy(entry[1])

    def insert_frame(self, cur, session_id, frame_type, image_id, quality):
        frame = CaptureFrame(id=self._next(), session_id=session_id, frame_type=frame_type,
                             image_id=image_id, quality=copy.deepcopy(quality or {}))
        self.frames.append(frame)
        return copy.deepcopy(frame)

    def list_frames(self, cur, session_id):
        return [copy.deepcopy(f) for f in self.frames if f.session_id == session_id]

    def get_frame(self, cur, session_id, frame_id):
        for f in self.frames:
            if f.session_id == session_id and f.id == frame_id:
                return copy.deepcopy(f)
        return None

    def update_frame_quality(self, cur, frame_id, quality):
        for f in self.frames:
            if f.id == frame_id:
                f.quality = copy.deepcopy(quality)

    def get_open_question(self, cur, session_id):
        for q in self.questions:
            if q.session_id == session_id and q.status == QUESTION_OPEN:
                return copy.deepcopy(q)
        return None

    def insert_question(self, cur, session_id, key, prompt, question_type, options):
        question = CaptureQuestion(id=self._next(), session_id=session_id, key=key, prompt=prompt,
                                   type=question_type, options=options, status=QUESTION_OPEN)
        self.questions.append(question)
        return copy.deepcopy(question)

    def close_question(self, cur, question_id, status=QUESTION_ANSWERED):
        for q in self.questions:
            if q.id == question_id and q.status == QUESTION_OPEN:
                q.status = status

    def insert_answer(self, cur, question_id, user_id, answer):
        answer_id = self._next()
        self.answers.append({"id": answer_id, "questionId": question_id, "userId": user_id, "answer": answer})
        return answer_id

    # test helpers
    def session(self, capture_id):
        return self.sessions[capture_id]

    def open_questions(self, session_id):
        return [q for q in self.questions if q.session_id == session_id and q.status == QUESTION_OPEN]


class FakeCatalog(_Transactional):
    """Catalog + lookup double. bind() returns self."""

    _state_attrs = ("inventory", "external", "hexes")

    def __init__(self):
        self.by_gtin = {}
        self.text_results = []
        self.color_rows = []
        self.inventory = {}
        self.external = {}
        self.hexes = {}
        self.materialize_results = {}

    def bind(self, cur):
        return self

    def find_by_gtin(self, gtin):
        return self.by_gtin.get(gtin)

    def search_text(self, brand, shade_name, limit=10):
        return list(self.text_results)[:limit]

    def color_entries(self, limit=500):
        return list(self.color_rows)[:limit]

    def ensure_inventory_item(self, cur, user_id, entity_type, entity_id, shade_id=None):
        key = (user_id, entity_type, entity_id)
        if key in self.inventory:
            return self.inventory[key], False
        self.inventory[key] = len(self.inventory) + 100
        return self.inventory[key], True

    def upsert_external_product(self, cur, source, record):
        key = (source, record.external_id)
        raw = record.raw
        if key not in self.external:
            self.external[key] = raw
            return UPSERT_INSERTED
        if self.external[key] == raw:
            return UPSERT_SKIPPED
        self.external[key] = raw
        return UPSERT_UPDATED

    def materialize_record(self, cur, user_id, record):
        if not record.brand or not record.shade_name:
            return None
        shade_id = self.materialize_results.get(record.external_id, 500 + len(self.materialize_results))
        self.materialize_results[record.external_id] = shade_id
        item_id, created = self.ensure_inventory_item(cur, user_id, "shade", shade_id)
        return {
            "brandId": 1, "shadeId": shade_id, "skuId": None, "inventoryItemId": item_id,
            "brandCreated": False, "shadeCreated": created, "inventoryCreated": created,
        }

    def get_detected_hex(self, cur, shade_id):
        return self.hexes.get(shade_id)

    def update_detected_hex(self, cur, shade_id, hex_value):
        self.hexes[shade_id] = hex_value


class FakeJobStore:
    """IngestionJobStore double with the same guarded transitions."""

    def __init__(self):
        self.jobs = {}
        self._seq = 0
        self.status_overrides = []

    def create_job(self, source, job_type, metrics):
        self._seq += 1
        row = {
            "ingestion_job_id": self._seq,
            "source": source,
            "job_type": job_type,
            "status": JOB_QUEUED,
            "started_at": datetime.now(timezone.utc),
            "finished_at": None,
            "metrics_json": dict(metrics),
            "error": None,
        }
        self.jobs[self._seq] = row
        return dict(row)

    def get_job(self, job_id):
        try:
            row = self.jobs.get(int(job_id))
        except (TypeError, ValueError):
            return None
        return copy.deepcopy(row) if row else None

    def get_status(self, job_id):
        if self.status_overrides:
            forced = self.status_overrides.pop(0)
            if forced:
                self.jobs[int(job_id)]["status"] = forced
        row = self.jobs.get(int(job_id))
        return row["status"] if row else None

    def list_jobs(self, limit=20, source=None):
        rows = [r for r in self.jobs.values() if source is None or r["source"] == source]
        rows.sort(key=lambda r: r["ingestion_job_id"], reverse=True)
        return {"jobs": [dict(r) for r in rows[:limit]], "total": len(rows)}

    def _transition(self, job_id, to_status, from_statuses, metrics=None, error=None, finished=False):
        row = self.jobs.get(int(job_id))
        if row is None or row["status"] not in from_statuses:
            return False
        row["status"] = to_status
        row["metrics_json"].update(metrics or {})
        if error is not None:
            row["error"] = error
        if finished:
            row["finished_at"] = datetime.now(timezone.utc)
        return True

    def mark_running(self, job_id, metrics=None):
        return self._transition(job_id, JOB_RUNNING, ACTIVE_JOB_STATUSES, metrics)

    def mark_succeeded(self, job_id, metrics):
        return self._transition(job_id, JOB_SUCCEEDED, (JOB_RUNNING,), metrics, finished=True)

    def mark_failed(self, job_id, error, metrics=None):
        return self._transition(job_id, JOB_FAILED, ACTIVE_JOB_STATUSES, metrics, error=error, finished=True)

    def mark_cancelled(self, job_id, reason, metrics=None):
        metrics = dict(metrics or {})
        metrics["cancelReason"] = reason
        return self._transition(job_id, JOB_CANCELLED, ACTIVE_JOB_STATUSES, metrics, error=reason, finished=True)

    def merge_metrics(self, job_id, metrics):
        row = self.jobs.get(int(job_id))
        if row is None:
            return False
        row["metrics_json"].update(metrics)
        return True


class FakeQueue:
    def __init__(self, name="ingestion-jobs"):
        self.queue_name = name
        self.messages = []
        self.deleted = []
        self._seq = 0

    def send(self, body):
        self._seq += 1
        self.messages.append(QueueMessage(message_id=self._seq, body=copy.deepcopy(body), dequeue_count=0))
        return self._seq

    def receive(self, max_messages=1):
        out = self.messages[:max_messages]
        for m in out:
            m.dequeue_count += 1
        return list(out)

    def delete(self, message_id):
        self.deleted.append(message_id)
        self.messages = [m for m in self.messages if m.message_id != message_id]

    def purge(self):
        purged = len(self.messages)
        self.messages = []
        return purged

    def stats(self):
        return {"queueName": self.queue_name, "messageCount": len(self.messages),
                "timestamp": datetime.now(timezone.utc).isoformat()}


def catalog_entry(entity_id, label, entity_type="shade", shade_id=None, hex_value=None):
    return CatalogEntry(entity_type=entity_type, entity_id=entity_id, label=label,
                        shade_id=shade_id if shade_id is not None else entity_id, hex=hex_value)

