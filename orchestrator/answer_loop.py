"""
Lacquer — Question/Answer loop for capture sessions.

An answer always targets the session's single open question:
  - "skip"            → close it, back to processing; finalize is NOT re-run
  - candidate_select  → 0-based index (or exact option label) into the
                        offered candidates; accepted directly → matched
  - brand_shade       → parsed into {brand, shadeName}, merged into the
                        session hints, then the resolver re-evaluates
  - capture_frame     → close it, back to processing and wait for frames

Every answer is written to capture_answer before the question is closed,
all inside the resolver's per-session lock.
"""
import logging
from typing import Optional

from orchestrator.capture_types import (
    Candidate,
    CaptureQuestion,
    PIPELINE_AWAITING_FRAMES,
    PIPELINE_READY,
    QUESTION_BRAND_SHADE,
    QUESTION_CANDIDATE_SELECT,
    QUESTION_CAPTURE_FRAME,
    ResolverAuditEntry,
    SESSION_PROCESSING,
    SKIP_ANSWER,
    STEP_ANSWER_RECEIVED,
    STEP_ANSWER_SKIPPED,
    STEP_AWAITING_FRAMES,
    STEP_MATCHED_BY_SELECTION,
    utc_now_iso,
)
from orchestrator.errors import ConflictError, InputError
from orchestrator.resolver import (
    CaptureResolver,
    parse_brand_shade,
    transition,
    validate_capture_id,
)

logger = logging.getLogger("lacquer.capture.answers")


def is_skip(answer) -> bool:
    return isinstance(answer, str) and answer.strip().lower() == SKIP_ANSWER


def select_candidate(question: CaptureQuestion, pending: list, answer) -> Candidate:
    """Resolve a candidate_select answer to one of the offered candidates."""
    index = None
    if isinstance(answer, int) and not isinstance(answer, bool):
        index = answer
    elif isinstance(answer, str) and answer.strip().lstrip("-").isdigit():
        index = int(answer.strip())
    elif isinstance(answer, dict) and "index" in answer:
        return select_candidate(question, pending, answer.get("index"))
    elif isinstance(answer, str) and question.options:
        try:
            index = question.options.index(answer.strip())
        except ValueError:
            index = None

    if index is None or index < 0 or index >= len(pending):
        raise InputError("answer must be the index of an offered candidate or one of the listed options")
    return Candidate.from_dict(pending[index])


class QuestionAnswerLoop:
    """Applies answers to open capture questions."""

    def __init__(self, resolver: CaptureResolver):
        self.resolver = resolver
        self.store = resolver.store

    def answer(self, capture_id: str, user_id: int, answer, question_id: Optional[str] = None) -> dict:
        capture_id = validate_capture_id(capture_id)
        if answer is None:
            raise InputError("answer is required")
        requested_id = None
        if question_id is not None:
            try:
                requested_id = int(str(question_id).strip())
            except (TypeError, ValueError):
                requested_id = None
            if requested_id is None or requested_id <= 0:
                raise InputError("questionId must be a positive integer when provided")

        with self.store.transaction() as cur:
            session = self.resolver.locked_session(cur, capture_id, user_id)
            if session.is_terminal:
                raise ConflictError(f"Capture session is already {session.status}")
            question = self.store.get_open_question(cur, session.id)
            if question is None:
                raise ConflictError("No open question found for this capture session")
            if requested_id is not None and requested_id != question.id:
                raise InputError("questionId does not match the open question")

            meta = session.metadata
            self.store.insert_answer(cur, question.id, user_id, answer)

            if is_skip(answer):
                self.store.close_question(cur, question.id)
                transition(session, SESSION_PROCESSING)
                meta.pipeline.status = PIPELINE_READY
                meta.resolver.pending_candidates = []
                self._audit(session, question, "skip", STEP_ANSWER_SKIPPED)
                self.store.update_session(cur, session)
                logger.info(f"Capture {capture_id}: question {question.id} ({question.key}) skipped")
                return self.resolver.view(cur, session)

            if question.key == QUESTION_CANDIDATE_SELECT:
                candidate = select_candidate(question, meta.resolver.pending_candidates, answer)
                self.store.close_question(cur, question.id)
                transition(session, SESSION_PROCESSING)
                frame_count = meta.pipeline.ingest.frames_received
                self.resolver.accept_locked(
                    cur, session, candidate, STEP_MATCHED_BY_SELECTION, candidate.signal,
                    frame_count=frame_count, decision=QUESTION_CANDIDATE_SELECT,
                )
                return self.resolver.view(cur, session)

            if question.key == QUESTION_BRAND_SHADE:
                brand, shade_name, gtin = parse_brand_shade(answer)
                if not (brand or shade_name or gtin):
                    raise InputError("brand_shade answer must include a brand or shade name")
                self.store.close_question(cur, question.id)
                transition(session, SESSION_PROCESSING)
                meta.merge_hints(brand=brand, shade_name=shade_name, gtin=gtin)
                meta.pipeline.status = PIPELINE_READY
                self._audit(session, question, QUESTION_BRAND_SHADE, STEP_ANSWER_RECEIVED)
                logger.info(f"Capture {capture_id}: brand/shade answered ({brand!r}, {shade_name!r}); re-evaluating")
                self.resolver.evaluate_locked(cur, session)
                return self.resolver.view(cur, session)

            # capture_frame and any other key: the client will follow up with frames
            self.store.close_question(cur, question.id)
            transition(session, SESSION_PROCESSING)
            if question.key == QUESTION_CAPTURE_FRAME:
                meta.pipeline.status = PIPELINE_AWAITING_FRAMES if not meta.pipeline.ingest.frames_received else PIPELINE_READY
                step = STEP_AWAITING_FRAMES
            else:
                step = STEP_ANSWER_RECEIVED
            self._audit(session, question, question.key, step)
            self.store.update_session(cur, session)
            logger.info(f"Capture {capture_id}: question {question.id} ({question.key}) answered")
            return self.resolver.view(cur, session)

    @staticmethod
    def _audit(session, question: CaptureQuestion, decision: str, step: str):
        meta = session.metadata
        meta.resolver.record(ResolverAuditEntry(
            at=utc_now_iso(),
            attempt=meta.pipeline.finalize.attempt,
            frame_count=meta.pipeline.ingest.frames_received,
            signal=None,
            decision=f"answer:{decision}",
            step=step,
        ))
