"""
Lacquer — Capture Resolver
Owns the capture session lifecycle:

    processing ──► needs_question ──► processing ──► ...
        │                                  │
        ├──► matched                       ├──► matched
        └──► failed                        └──► failed

Every public operation runs in one store transaction with the session row
locked (SELECT ... FOR UPDATE), so concurrent frame uploads and finalize calls
on the same session are serialized: ingest counters are never lost and at most
one question is ever open. Any exception rolls the whole operation back.

Matching itself is delegated to orchestrator/matcher.py; this module only
turns a MatchDecision into rows (question, inventory item, audit entry).
"""
import logging
import re
import uuid
from typing import Any, Optional

from orchestrator import images, matcher
from orchestrator.capture_types import (
    Candidate,
    CaptureSession,
    FRAME_TYPES,
    FrameExtracted,
    PIPELINE_AWAITING_ANSWER,
    PIPELINE_AWAITING_FRAMES,
    PIPELINE_FAILED,
    PIPELINE_MATCHED,
    PIPELINE_READY,
    QUESTION_BRAND_SHADE,
    QUESTION_CANDIDATE_SELECT,
    QUESTION_CAPTURE_FRAME,
    QUESTION_FREE_TEXT,
    QUESTION_SINGLE_SELECT,
    ResolverAuditEntry,
    SESSION_FAILED,
    SESSION_MATCHED,
    SESSION_NEEDS_QUESTION,
    SESSION_PROCESSING,
    SESSION_TRANSITIONS,
    SKIP_ANSWER,
    STEP_ATTEMPTS_EXHAUSTED,
    STEP_AWAITING_BRAND_SHADE,
    STEP_AWAITING_CANDIDATE,
    STEP_AWAITING_FRAMES,
    STEP_MATCHED_BY_BARCODE,
    STEP_MATCHED_BY_COLOR,
    STEP_MATCHED_BY_SHADE,
    SessionMetadata,
    normalize_gtin,
    normalize_hex,
    utc_now_iso,
)
from orchestrator.errors import ConflictError, InputError, NotActionableError, NotFoundError

logger = logging.getLogger("lacquer.capture.resolver")

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

CAPTURE_FRAME_PROMPT = "Upload at least one barcode or label frame so we can continue matching."
CAPTURE_FRAME_OPTIONS = ["scan_barcode", "upload_label_photo", SKIP_ANSWER]
CANDIDATE_SELECT_PROMPT = "Which of these is the polish you captured?"
BRAND_SHADE_PROMPT = "What brand and shade name are printed on the bottle? (e.g. \"Holo Taco - Rainbow Capsule\")"

_MATCH_STEPS = {
    matcher.SIGNAL_BARCODE: STEP_MATCHED_BY_BARCODE,
    matcher.SIGNAL_SHADE: STEP_MATCHED_BY_SHADE,
    matcher.SIGNAL_COLOR: STEP_MATCHED_BY_COLOR,
}

# How many scored candidates each audit entry keeps
AUDIT_SCORE_LIMIT = 5


def validate_capture_id(capture_id) -> str:
    if not capture_id or not isinstance(capture_id, str):
        raise InputError("Capture id is required")
    if not _UUID_RE.match(capture_id):
        raise InputError("Capture id must be a valid UUID")
    return capture_id.lower()


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise InputError(f"{name} must be a positive integer")
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise InputError(f"{name} must be a positive integer")
    if parsed <= 0:
        raise InputError(f"{name} must be a positive integer")
    return parsed


def transition(session: CaptureSession, to_status: str):
    """Move a session along the state machine or raise ConflictError."""
    if session.status == to_status:
        return
    allowed = SESSION_TRANSITIONS.get(session.status, set())
    if to_status not in allowed:
        raise ConflictError(f"Capture session cannot move from {session.status} to {to_status}")
    logger.debug(f"Session {session.capture_id}: {session.status} → {to_status}")
    session.status = to_status


def candidate_label(candidate: Candidate) -> str:
    return candidate.label or f"{candidate.entity_type} #{candidate.entity_id}"


class CaptureResolver:
    """Start / add frame / finalize / status for capture sessions."""

    def __init__(self, store, catalog, capture_config=None, distance=None, hex_detector=None):
        from config.settings import CaptureConfig

        self.store = store
        self.catalog = catalog
        self.cfg = capture_config or CaptureConfig()
        self.distance = distance
        self.hex_detector = hex_detector
        self.policy = matcher.MatchPolicy(
            auto_match_threshold=self.cfg.auto_match_threshold,
            candidate_threshold=self.cfg.candidate_threshold,
            max_candidate_options=self.cfg.max_candidate_options,
        )

    # -------------------------------------------------------
    # start
    # -------------------------------------------------------

    def start(self, user_id: int, metadata: Optional[dict] = None) -> dict:
        if metadata is not None and not isinstance(metadata, dict):
            raise InputError("metadata must be an object")
        meta = SessionMetadata.from_dict(metadata or {})
        capture_id = str(uuid.uuid4())
        with self.store.transaction() as cur:
            session = self.store.insert_session(cur, capture_id, user_id, meta, SESSION_PROCESSING)
        logger.info(f"Capture {capture_id} started for user {user_id}")

        upload_urls = []
        if self.cfg.upload_base_url:
            upload_urls.append(f"{self.cfg.upload_base_url.rstrip('/')}/capture/{capture_id}/frame")
        return {
            "captureId": session.capture_id,
            "status": session.status,
            "uploadUrls": upload_urls,
            "guidanceConfig": {
                "recommendedFrameTypes": list(self.cfg.recommended_frame_types),
                "maxFrames": self.cfg.max_frames,
            },
        }

    # -------------------------------------------------------
    # add frame
    # -------------------------------------------------------

    def add_frame(self, capture_id: str, user_id: int, frame_type: Optional[str],
                  image_id: Any = None, image_blob_url: Optional[str] = None,
                  quality: Optional[dict] = None) -> dict:
        capture_id = validate_capture_id(capture_id)
        if not frame_type:
            raise InputError("frameType is required")
        if frame_type not in FRAME_TYPES:
            raise InputError(f"frameType must be one of: {', '.join(FRAME_TYPES)}")
        if image_id is None and not image_blob_url:
            raise InputError("Either imageId or imageBlobUrl is required")
        if quality is not None and not isinstance(quality, dict):
            raise InputError("quality must be an object")
        if image_id is not None:
            image_id = _positive_int(image_id, "imageId")
        else:
            images.check_reference(image_blob_url)

        with self.store.transaction() as cur:
            session = self.locked_session(cur, capture_id, user_id)
            if session.is_terminal:
                raise ConflictError(f"Cannot add frames to a {session.status} session")
            ingest = session.metadata.pipeline.ingest
            if ingest.frames_received >= self.cfg.max_frames:
                raise ConflictError(f"Capture session already has the maximum of {self.cfg.max_frames} frames")

            if image_id is not None:
                asset = self.store.get_image(cur, image_id, user_id)
                if asset is None:
                    raise NotFoundError("Image not found")
            else:
                asset = images.normalize_image_reference(
                    image_blob_url, capture_id, ingest.frames_received + 1,
                    max_bytes=self.cfg.max_inline_image_bytes,
                )
                asset.id = self.store.insert_image(cur, user_id, asset)

            extracted = FrameExtracted.from_quality(quality)
            quality_doc = dict(quality or {})
            quality_doc["extracted"] = extracted.to_dict()
            frame = self.store.insert_frame(cur, session.id, frame_type, asset.id, quality_doc)

            ingest.record_frame(str(frame.id), frame_type, extracted.has_evidence())
            pipeline = session.metadata.pipeline
            if pipeline.status == PIPELINE_AWAITING_FRAMES and self._has_evidence(session):
                pipeline.status = PIPELINE_READY
            self.store.update_session(cur, session)

        logger.info(
            f"Capture {capture_id}: frame {frame.id} ({frame_type}) stored, "
            f"evidence={extracted.has_evidence()}, frames={ingest.frames_received}"
        )
        return {
            "received": True,
            "captureId": session.capture_id,
            "frameId": str(frame.id),
            "status": session.status,
            "pipelineStatus": session.metadata.pipeline.status,
        }

    @staticmethod
    def _has_evidence(session: CaptureSession) -> bool:
        meta = session.metadata
        if meta.pipeline.ingest.frames_with_evidence > 0:
            return True
        return bool(meta.gtin or (meta.brand and meta.shade_name))

    # -------------------------------------------------------
    # finalize
    # -------------------------------------------------------

    def finalize(self, capture_id: str, user_id: int) -> dict:
        capture_id = validate_capture_id(capture_id)
        with self.store.transaction() as cur:
            session = self.locked_session(cur, capture_id, user_id)
            if session.is_terminal:
                # Idempotent: the decision stands, only the replay is audited
                self._audit_noop(cur, session, "already_decided")
                return self.view(cur, session)

            session.metadata.pipeline.finalize.record_attempt()
            open_question = self.store.get_open_question(cur, session.id)
            if open_question is not None:
                self._audit_noop(cur, session, "question_open")
                return self.view(cur, session, open_question)

            if session.status == SESSION_NEEDS_QUESTION:
                transition(session, SESSION_PROCESSING)
            self.evaluate_locked(cur, session)
            return self.view(cur, session)

    def evaluate_locked(self, cur, session: CaptureSession):
        """Run the matcher and apply its decision. Caller holds the session lock."""
        meta = session.metadata
        frames = self.store.list_frames(cur, session.id)
        lookup = self.catalog.bind(cur)
        hints = matcher.merge_hints(meta, frames)

        evaluations = meta.pipeline.finalize.record_evaluation(hints.fingerprint())
        if evaluations > self.cfg.max_finalize_attempts:
            self._fail_exhausted(cur, session, hints, len(frames))
            return

        decision = matcher.evaluate(meta, frames, lookup, distance=self.distance, policy=self.policy)
        if decision.action == matcher.ACTION_AUTO_MATCH:
            step = _MATCH_STEPS.get(decision.signal, STEP_MATCHED_BY_SHADE)
            self.accept_locked(cur, session, decision.top, step, decision.signal,
                               frame_count=len(frames), scores=decision.candidates)
            return
        self._ask(cur, session, decision, len(frames))

    def _audit_noop(self, cur, session: CaptureSession, signal: str):
        meta = session.metadata
        meta.resolver.record(ResolverAuditEntry(
            at=utc_now_iso(),
            attempt=meta.pipeline.finalize.attempt,
            frame_count=len(self.store.list_frames(cur, session.id)),
            signal=signal,
            decision="noop",
            step=meta.resolver.step,
        ))
        self.store.update_session(cur, session)

    def _fail_exhausted(self, cur, session: CaptureSession, hints, frame_count: int):
        meta = session.metadata
        transition(session, SESSION_FAILED)
        meta.pipeline.status = PIPELINE_FAILED
        meta.resolver.pending_candidates = []
        meta.resolver.record(ResolverAuditEntry(
            at=utc_now_iso(),
            attempt=meta.pipeline.finalize.attempt,
            frame_count=frame_count,
            signal=None,
            decision="fail",
            step=STEP_ATTEMPTS_EXHAUSTED,
        ))
        self.store.update_session(cur, session)
        logger.warning(
            f"Capture {session.capture_id}: finalize exhausted after "
            f"{self.cfg.max_finalize_attempts} evaluations of evidence {hints.fingerprint()}"
        )

    def accept_locked(self, cur, session: CaptureSession, candidate: Candidate, step: str,
                      signal: Optional[str], frame_count: int, scores=None, decision: str = matcher.ACTION_AUTO_MATCH):
        """Persist a match and its inventory row inside the caller's transaction."""
        meta = session.metadata
        item_id, created = self.catalog.ensure_inventory_item(
            cur, session.user_id, candidate.entity_type, candidate.entity_id, candidate.shade_id,
        )
        transition(session, SESSION_MATCHED)
        session.top_confidence = candidate.score
        session.accepted_entity_type = candidate.entity_type
        session.accepted_entity_id = candidate.entity_id
        meta.pipeline.status = PIPELINE_MATCHED
        meta.resolver.pending_candidates = []
        meta.resolver.inventory_item_id = item_id
        meta.resolver.record(ResolverAuditEntry(
            at=utc_now_iso(),
            attempt=meta.pipeline.finalize.attempt,
            frame_count=frame_count,
            signal=signal,
            decision=decision,
            step=step,
            scores=[c.to_dict() for c in (scores or [candidate])[:AUDIT_SCORE_LIMIT]],
        ))
        self.store.update_session(cur, session)
        logger.info(
            f"Capture {session.capture_id} matched {candidate.entity_type} {candidate.entity_id} "
            f"({step}, score={candidate.score:.3f}); inventory item {item_id} "
            f"{'created' if created else 'reused'}"
        )

    def _ask(self, cur, session: CaptureSession, decision, frame_count: int):
        meta = session.metadata
        key = decision.question_key
        if key == QUESTION_CANDIDATE_SELECT:
            options = [candidate_label(c) for c in decision.candidates] + [SKIP_ANSWER]
            question = self.store.insert_question(
                cur, session.id, key, CANDIDATE_SELECT_PROMPT, QUESTION_SINGLE_SELECT, options,
            )
            meta.resolver.pending_candidates = [c.to_dict() for c in decision.candidates]
            step = STEP_AWAITING_CANDIDATE
        elif key == QUESTION_BRAND_SHADE:
            question = self.store.insert_question(
                cur, session.id, key, BRAND_SHADE_PROMPT, QUESTION_FREE_TEXT, None,
            )
            meta.resolver.pending_candidates = []
            step = STEP_AWAITING_BRAND_SHADE
        else:
            question = self.store.insert_question(
                cur, session.id, QUESTION_CAPTURE_FRAME, CAPTURE_FRAME_PROMPT,
                QUESTION_SINGLE_SELECT, list(CAPTURE_FRAME_OPTIONS),
            )
            meta.resolver.pending_candidates = []
            step = STEP_AWAITING_FRAMES

        transition(session, SESSION_NEEDS_QUESTION)
        session.top_confidence = decision.top_score
        meta.pipeline.status = PIPELINE_AWAITING_ANSWER
        meta.resolver.record(ResolverAuditEntry(
            at=utc_now_iso(),
            attempt=meta.pipeline.finalize.attempt,
            frame_count=frame_count,
            signal=decision.signal,
            decision=question.key,
            step=step,
            scores=[c.to_dict() for c in decision.candidates[:AUDIT_SCORE_LIMIT]],
        ))
        self.store.update_session(cur, session)
        logger.info(
            f"Capture {session.capture_id} needs question {question.key} "
            f"(top={decision.top_score:.3f}, frames={frame_count})"
        )

    # -------------------------------------------------------
    # status
    # -------------------------------------------------------

    def get_status(self, capture_id: str, user_id: int) -> dict:
        capture_id = validate_capture_id(capture_id)
        with self.store.transaction() as cur:
            session = self.store.get_session(cur, capture_id, user_id)
            if session is None:
                raise NotFoundError("Capture session not found")
            return self.view(cur, session)

    # -------------------------------------------------------
    # frame colour re-detection
    # -------------------------------------------------------

    def detect_frame_hex(self, capture_id: str, user_id: int, frame_id) -> dict:
        """Run hex detection on a stored frame image and merge colorHex into its evidence."""
        capture_id = validate_capture_id(capture_id)
        frame_id = _positive_int(frame_id, "frameId")
        if self.hex_detector is None:
            raise NotActionableError("Hex detection is not configured")

        with self.store.transaction() as cur:
            session = self.store.get_session(cur, capture_id, user_id)
            if session is None:
                raise NotFoundError("Capture session not found")
            frame = self.store.get_frame(cur, session.id, frame_id)
            if frame is None:
                raise NotFoundError("Capture frame not found")
            asset = self.store.get_image(cur, frame.image_id, user_id) if frame.image_id else None

        if not images.is_dereferenceable(asset):
            raise NotActionableError("No image available for this frame to detect a color from")

        from tools.hex_detection import HexDetectionError

        try:
            hex_value = self.hex_detector.detect(
                image_url=asset.storage_url if images.url_scheme(asset.storage_url) in ("http", "https") else None,
                content=asset.content,
                mime_type=asset.mime_type,
            )
        except HexDetectionError as e:
            raise NotActionableError(f"Hex detection failed: {e}")
        hex_value = normalize_hex(hex_value)
        if not hex_value:
            raise NotActionableError("No color could be detected in this image")

        with self.store.transaction() as cur:
            session = self.locked_session(cur, capture_id, user_id)
            frame = self.store.get_frame(cur, session.id, frame_id)
            if frame is None:
                raise NotFoundError("Capture frame not found")
            quality = dict(frame.quality or {})
            extracted = frame.extracted
            extracted.color_hex = hex_value
            extracted.source = "ai_hex_detection"
            quality["extracted"] = extracted.to_dict()
            self.store.update_frame_quality(cur, frame.id, quality)

        logger.info(f"Capture {capture_id}: frame {frame_id} colour detected as {hex_value}")
        return {
            "captureId": capture_id,
            "frameId": str(frame_id),
            "colorHex": hex_value,
            "extracted": quality["extracted"],
        }

    # -------------------------------------------------------
    # helpers
    # -------------------------------------------------------

    def locked_session(self, cur, capture_id: str, user_id: int) -> CaptureSession:
        session = self.store.get_session(cur, capture_id, user_id, for_update=True)
        if session is None:
            raise NotFoundError("Capture session not found")
        return session

    def view(self, cur, session: CaptureSession, question=None) -> dict:
        if question is None and not session.is_terminal:
            question = self.store.get_open_question(cur, session.id)
        return {
            "captureId": session.capture_id,
            "status": session.status,
            "topConfidence": session.top_confidence,
            "acceptedEntityType": session.accepted_entity_type,
            "acceptedEntityId": session.accepted_entity_id,
            "metadata": session.metadata.to_dict(),
            "question": question.to_api() if question is not None else None,
        }


def parse_brand_shade(answer) -> tuple:
    """Parse a brand_shade answer into (brand, shade_name, gtin).

    Accepts {"brand": ..., "shadeName": ...} or a "Brand - Shade" /
    "Brand / Shade" string. Missing parts come back as None; a bare
    string is taken as the shade name.
    """
    if isinstance(answer, dict):
        brand = answer.get("brand")
        shade = answer.get("shadeName") or answer.get("shade_name") or answer.get("shade")
        gtin = normalize_gtin(answer.get("gtin"))
        return (
            brand.strip() if isinstance(brand, str) and brand.strip() else None,
            shade.strip() if isinstance(shade, str) and shade.strip() else None,
            gtin,
        )
    if isinstance(answer, str):
        text = " ".join(answer.split())
        for sep in (" - ", " – ", " / ", " | ", ":"):
            if sep in text:
                brand, _, shade = text.partition(sep)
                return brand.strip() or None, shade.strip() or None, None
        return None, text or None, None
    return None, None, None

