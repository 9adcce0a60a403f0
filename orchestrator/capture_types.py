"""
Lacquer — Capture data model.

Typed views over the JSONB documents stored on capture rows:
  - SessionMetadata: hint fields + `pipeline` + `resolver` sub-documents
  - PipelineState:   ingest/finalize sub-state and counters
  - ResolverState:   decision step, append-only audit trail, pending candidates
  - FrameExtracted:  evidence derived from a frame's `quality` at write time

Each sub-document carries a `schemaVersion`. Unknown keys found at the top
level of the metadata, `pipeline` and `resolver` documents are kept and
written back, so metadata only ever grows.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

SESSION_PROCESSING = "processing"
SESSION_NEEDS_QUESTION = "needs_question"
SESSION_MATCHED = "matched"
SESSION_FAILED = "failed"

SESSION_STATUSES = (SESSION_PROCESSING, SESSION_NEEDS_QUESTION, SESSION_MATCHED, SESSION_FAILED)
TERMINAL_SESSION_STATUSES = frozenset({SESSION_MATCHED, SESSION_FAILED})

# Allowed forward transitions of the session state machine
SESSION_TRANSITIONS = {
    SESSION_PROCESSING: {SESSION_NEEDS_QUESTION, SESSION_MATCHED, SESSION_FAILED},
    SESSION_NEEDS_QUESTION: {SESSION_PROCESSING},
    SESSION_MATCHED: set(),
    SESSION_FAILED: set(),
}

FRAME_TYPES = ("barcode", "label", "color", "other")

QUESTION_CAPTURE_FRAME = "capture_frame"
QUESTION_CANDIDATE_SELECT = "candidate_select"
QUESTION_BRAND_SHADE = "brand_shade"

QUESTION_SINGLE_SELECT = "single_select"
QUESTION_FREE_TEXT = "free_text"

QUESTION_OPEN = "open"
QUESTION_ANSWERED = "answered"

SKIP_ANSWER = "skip"

ENTITY_SKU = "sku"
ENTITY_SHADE = "shade"

# pipeline.status values
PIPELINE_AWAITING_FRAMES = "awaiting_frames"
PIPELINE_READY = "ready_for_finalize"
PIPELINE_AWAITING_ANSWER = "awaiting_answer"
PIPELINE_MATCHED = "matched"
PIPELINE_FAILED = "failed"

# resolver.step values
STEP_AWAITING_FRAMES = "awaiting_frames"
STEP_AWAITING_BRAND_SHADE = "awaiting_brand_shade"
STEP_AWAITING_CANDIDATE = "awaiting_candidate_select"
STEP_MATCHED_BY_BARCODE = "matched_by_barcode"
STEP_MATCHED_BY_SHADE = "matched_by_shade_similarity"
STEP_MATCHED_BY_COLOR = "matched_by_color_similarity"
STEP_MATCHED_BY_SELECTION = "matched_by_candidate_select"
STEP_ANSWER_RECEIVED = "answer_received"
STEP_ANSWER_SKIPPED = "answer_skipped"
STEP_ATTEMPTS_EXHAUSTED = "finalize_attempts_exhausted"

SCHEMA_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# pipeline sub-document
# ---------------------------------------------------------------------------

@dataclass
class IngestCounters:
    frames_received: int = 0
    by_type: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in FRAME_TYPES})
    frames_with_evidence: int = 0
    last_frame_had_evidence: bool = False
    last_frame_id: Optional[str] = None
    updated_at: Optional[str] = None

    def record_frame(self, frame_id: str, frame_type: str, has_evidence: bool):
        self.frames_received += 1
        self.by_type[frame_type] = self.by_type.get(frame_type, 0) + 1
        if has_evidence:
            self.frames_with_evidence += 1
        self.last_frame_had_evidence = has_evidence
        self.last_frame_id = frame_id
        self.updated_at = utc_now_iso()

    def to_dict(self) -> dict:
        return {
            "framesReceived": self.frames_received,
            "byType": dict(self.by_type),
            "framesWithEvidence": self.frames_with_evidence,
            "lastFrameHadEvidence": self.last_frame_had_evidence,
            "lastFrameId": self.last_frame_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "IngestCounters":
        data = data or {}
        by_type = {t: 0 for t in FRAME_TYPES}
        for k, v in (data.get("byType") or {}).items():
            by_type[k] = _as_int(v)
        return cls(
            frames_received=_as_int(data.get("framesReceived")),
            by_type=by_type,
            frames_with_evidence=_as_int(data.get("framesWithEvidence")),
            last_frame_had_evidence=bool(data.get("lastFrameHadEvidence", False)),
            last_frame_id=data.get("lastFrameId"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class FinalizeCounters:
    attempt: int = 0
    last_attempt_at: Optional[str] = None
    evidence_key: Optional[str] = None
    attempts_for_evidence: int = 0

    def record_attempt(self):
        self.attempt += 1
        self.last_attempt_at = utc_now_iso()

    def record_evaluation(self, evidence_key: str) -> int:
        """Count evaluations of one evidence set; a new key restarts the count."""
        if evidence_key == self.evidence_key:
            self.attempts_for_evidence += 1
        else:
            self.evidence_key = evidence_key
            self.attempts_for_evidence = 1
        return self.attempts_for_evidence

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "lastAttemptAt": self.last_attempt_at,
            "evidenceKey": self.evidence_key,
            "attemptsForEvidence": self.attempts_for_evidence,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FinalizeCounters":
        data = data or {}
        return cls(
            attempt=_as_int(data.get("attempt")),
            last_attempt_at=data.get("lastAttemptAt"),
            evidence_key=data.get("evidenceKey"),
            attempts_for_evidence=_as_int(data.get("attemptsForEvidence")),
        )


_PIPELINE_KEYS = ("schemaVersion", "status", "ingest", "finalize")
_RESOLVER_KEYS = ("schemaVersion", "step", "audit", "pendingCandidates", "inventoryItemId")


@dataclass
class PipelineState:
    status: str = PIPELINE_AWAITING_FRAMES
    ingest: IngestCounters = field(default_factory=IngestCounters)
    finalize: FinalizeCounters = field(default_factory=FinalizeCounters)
    schema_version: int = SCHEMA_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = dict(self.extra)
        out.update({
            "schemaVersion": self.schema_version,
            "status": self.status,
            "ingest": self.ingest.to_dict(),
            "finalize": self.finalize.to_dict(),
        })
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PipelineState":
        data = data or {}
        return cls(
            status=data.get("status") or PIPELINE_AWAITING_FRAMES,
            ingest=IngestCounters.from_dict(data.get("ingest")),
            finalize=FinalizeCounters.from_dict(data.get("finalize")),
            schema_version=_as_int(data.get("schemaVersion"), SCHEMA_VERSION),
            extra={k: v for k, v in data.items() if k not in _PIPELINE_KEYS},
        )


# ---------------------------------------------------------------------------
# resolver sub-document
# ---------------------------------------------------------------------------

@dataclass
class ResolverAuditEntry:
    at: str
    attempt: int
    frame_count: int
    signal: Optional[str]
    decision: str
    step: Optional[str]
    scores: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "at": self.at,
            "attempt": self.attempt,
            "frameCount": self.frame_count,
            "signal": self.signal,
            "decision": self.decision,
            "step": self.step,
            "scores": list(self.scores),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResolverAuditEntry":
        return cls(
            at=data.get("at") or "",
            attempt=_as_int(data.get("attempt")),
            frame_count=_as_int(data.get("frameCount")),
            signal=data.get("signal"),
            decision=data.get("decision") or "",
            step=data.get("step"),
            scores=list(data.get("scores") or []),
        )


@dataclass
class ResolverState:
    step: Optional[str] = None
    audit: List[ResolverAuditEntry] = field(default_factory=list)
    # Candidates offered by the currently open candidate_select question
    pending_candidates: List[dict] = field(default_factory=list)
    inventory_item_id: Optional[int] = None
    schema_version: int = SCHEMA_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)

    def record(self, entry: ResolverAuditEntry):
        self.audit.append(entry)
        self.step = entry.step

    def to_dict(self) -> dict:
        out = dict(self.extra)
        out.update({
            "schemaVersion": self.schema_version,
            "step": self.step,
            "audit": [a.to_dict() for a in self.audit],
            "pendingCandidates": list(self.pending_candidates),
            "inventoryItemId": self.inventory_item_id,
        })
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ResolverState":
        data = data or {}
        item_id = data.get("inventoryItemId")
        return cls(
            step=data.get("step"),
            audit=[ResolverAuditEntry.from_dict(a) for a in (data.get("audit") or []) if isinstance(a, dict)],
            pending_candidates=[c for c in (data.get("pendingCandidates") or []) if isinstance(c, dict)],
            inventory_item_id=_as_int(item_id) if item_id is not None else None,
            schema_version=_as_int(data.get("schemaVersion"), SCHEMA_VERSION),
            extra={k: v for k, v in data.items() if k not in _RESOLVER_KEYS},
        )


# ---------------------------------------------------------------------------
# session metadata
# ---------------------------------------------------------------------------

_HINT_KEYS = ("brand", "shadeName", "gtin", "source")


@dataclass
class SessionMetadata:
    brand: Optional[str] = None
    shade_name: Optional[str] = None
    gtin: Optional[str] = None
    source: Optional[str] = None
    pipeline: PipelineState = field(default_factory=PipelineState)
    resolver: ResolverState = field(default_factory=ResolverState)
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge_hints(self, brand: Optional[str] = None, shade_name: Optional[str] = None,
                    gtin: Optional[str] = None):
        """Overlay non-empty hint values; empty values never erase existing ones."""
        if brand:
            self.brand = brand
        if shade_name:
            self.shade_name = shade_name
        if gtin:
            self.gtin = gtin

    def to_dict(self) -> dict:
        out = dict(self.extra)
        out.update({
            "brand": self.brand,
            "shadeName": self.shade_name,
            "gtin": self.gtin,
            "source": self.source,
            "pipeline": self.pipeline.to_dict(),
            "resolver": self.resolver.to_dict(),
        })
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SessionMetadata":
        data = dict(data or {})
        extra = {k: v for k, v in data.items() if k not in _HINT_KEYS + ("pipeline", "resolver")}
        return cls(
            brand=_clean_text(data.get("brand")),
            shade_name=_clean_text(data.get("shadeName")),
            gtin=normalize_gtin(data.get("gtin")),
            source=_clean_text(data.get("source")),
            pipeline=PipelineState.from_dict(data.get("pipeline")),
            resolver=ResolverState.from_dict(data.get("resolver")),
            extra=extra,
        )


# ---------------------------------------------------------------------------
# frame evidence
# ---------------------------------------------------------------------------

def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = " ".join(value.split())
    return value or None


def normalize_gtin(value: Any) -> Optional[str]:
    """Digits-only GTIN/UPC/EAN, 8–14 digits long, else None."""
    if value is None:
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    digits = "".join(ch for ch in value if ch.isdigit())
    if 8 <= len(digits) <= 14:
        return digits
    return None


def normalize_hex(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip().lstrip("#")
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    if len(value) != 6:
        return None
    try:
        int(value, 16)
    except ValueError:
        return None
    return "#" + value.upper()


@dataclass
class FrameExtracted:
    gtin: Optional[str] = None
    brand: Optional[str] = None
    shade_name: Optional[str] = None
    color_hex: Optional[str] = None
    source: str = "request_quality"
    schema_version: int = SCHEMA_VERSION

    def has_evidence(self) -> bool:
        return bool(self.gtin or self.brand or self.shade_name or self.color_hex)

    def to_dict(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "source": self.source,
            "gtin": self.gtin,
            "brand": self.brand,
            "shadeName": self.shade_name,
            "colorHex": self.color_hex,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FrameExtracted":
        data = data or {}
        return cls(
            gtin=normalize_gtin(data.get("gtin")),
            brand=_clean_text(data.get("brand")),
            shade_name=_clean_text(data.get("shadeName")),
            color_hex=normalize_hex(data.get("colorHex")),
            source=data.get("source") or "request_quality",
            schema_version=_as_int(data.get("schemaVersion"), SCHEMA_VERSION),
        )

    @classmethod
    def from_quality(cls, quality: Optional[dict]) -> "FrameExtracted":
        """Derive evidence from the raw hints a client sent with a frame."""
        quality = quality or {}
        gtin = None
        for key in ("gtin", "barcode", "upc", "ean"):
            gtin = normalize_gtin(quality.get(key))
            if gtin:
                break
        return cls(
            gtin=gtin,
            brand=_clean_text(quality.get("brand")),
            shade_name=_clean_text(quality.get("shadeName") or quality.get("shade_name")),
            color_hex=normalize_hex(quality.get("colorHex") or quality.get("hex")),
        )


# ---------------------------------------------------------------------------
# rows
# ---------------------------------------------------------------------------

@dataclass
class CaptureSession:
    id: int
    capture_id: str
    user_id: int
    status: str
    metadata: SessionMetadata
    top_confidence: Optional[float] = None
    accepted_entity_type: Optional[str] = None
    accepted_entity_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


@dataclass
class CaptureFrame:
    id: int
    session_id: int
    frame_type: str
    image_id: Optional[int]
    quality: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def extracted(self) -> FrameExtracted:
        return FrameExtracted.from_dict(self.quality.get("extracted"))


@dataclass
class CaptureQuestion:
    id: int
    session_id: int
    key: str
    prompt: str
    type: str
    options: Optional[List[str]]
    status: str
    created_at: Optional[str] = None

    def to_api(self) -> dict:
        return {
            "id": str(self.id),
            "key": self.key,
            "prompt": self.prompt,
            "type": self.type,
            "options": list(self.options) if self.options is not None else None,
            "status": self.status,
            "createdAt": self.created_at,
        }


@dataclass
class ImageAsset:
    id: Optional[int]
    storage_url: str
    checksum_sha256: Optional[str] = None
    byte_size: Optional[int] = None
    mime_type: Optional[str] = None
    content: Optional[bytes] = None


@dataclass
class CatalogEntry:
    """One row the catalog offers as a match target."""
    entity_type: str
    entity_id: int
    label: str
    shade_id: Optional[int] = None
    hex: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    entity_type: str
    entity_id: int
    score: float
    signal: str
    label: str = ""
    shade_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "score": round(self.score, 4),
            "signal": self.signal,
            "label": self.label,
            "shadeId": self.shade_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Candidate":
        return cls(
            entity_type=data.get("entityType") or ENTITY_SHADE,
            entity_id=int(data["entityId"]),
            score=float(data.get("score") or 0.0),
            signal=data.get("signal") or "",
            label=data.get("label") or "",
            shade_id=data.get("shadeId"),
        )
