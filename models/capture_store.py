"""
Lacquer — Capture session persistence (CaptureSessionStore).

Row access for capture_session, capture_frame, capture_question,
capture_answer and image_asset. Every method takes the cursor of an open
transaction (see models.db.transaction) so the resolver can group a frame
insert with its image insert, or a match with its inventory insert, into one
all-or-nothing unit.

get_session(..., for_update=True) takes a row lock on the session; the
resolver holds it for the whole operation so concurrent frame uploads and
finalize calls on the same session are serialized.
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

import psycopg2

from models import db
from orchestrator.capture_types import (
    CaptureFrame,
    CaptureQuestion,
    CaptureSession,
    ImageAsset,
    QUESTION_ANSWERED,
    QUESTION_OPEN,
    SessionMetadata,
)

logger = logging.getLogger("lacquer.models.capture_store")


def _iso(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _json(value) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _session_from_row(row: dict) -> CaptureSession:
    top = row.get("top_confidence")
    return CaptureSession(
        id=row["capture_session_id"],
        capture_id=str(row["capture_uuid"]),
        user_id=row["user_id"],
        status=row["status"],
        metadata=SessionMetadata.from_dict(row.get("metadata")),
        top_confidence=float(top) if top is not None else None,
        accepted_entity_type=row.get("accepted_entity_type"),
        accepted_entity_id=row.get("accepted_entity_id"),
        created_at=_iso(row.get("created_at")),
        updated_at=_iso(row.get("updated_at")),
    )


def _frame_from_row(row: dict) -> CaptureFrame:
    return CaptureFrame(
        id=row["capture_frame_id"],
        session_id=row["capture_session_id"],
        frame_type=row["frame_type"],
        image_id=row.get("image_id"),
        quality=row.get("quality_json") or {},
        created_at=_iso(row.get("created_at")),
    )


def _question_from_row(row: dict) -> CaptureQuestion:
    options = row.get("options_json")
    if isinstance(options, list):
        options = [o for o in options if isinstance(o, str)]
    else:
        options = None
    return CaptureQuestion(
        id=row["capture_question_id"],
        session_id=row["capture_session_id"],
        key=row["question_key"],
        prompt=row["prompt"],
        type=row["question_type"],
        options=options,
        status=row["status"],
        created_at=_iso(row.get("created_at")),
    )


def _image_from_row(row: dict) -> ImageAsset:
    content = row.get("content")
    return ImageAsset(
        id=row["image_id"],
        storage_url=row["storage_url"],
        checksum_sha256=row.get("checksum_sha256"),
        byte_size=row.get("byte_size"),
        mime_type=row.get("mime_type"),
        content=bytes(content) if content is not None else None,
    )


class CaptureSessionStore:
    """Persistence boundary for capture sessions and their children."""

    def __init__(self, transaction_factory=None):
        self._transaction = transaction_factory or db.transaction

    def transaction(self):
        return self._transaction()

    # -------------------------------------------------------
    # Sessions
    # -------------------------------------------------------

    def insert_session(self, cur, capture_id: str, user_id: int, metadata: SessionMetadata,
                       status: str) -> CaptureSession:
        cur.execute(
            """
            INSERT INTO capture_session (capture_uuid, user_id, status, metadata)
            VALUES (%s::uuid, %s, %s, %s::jsonb)
            RETURNING *
            """,
            (capture_id, user_id, status, _json(metadata.to_dict())),
        )
        return _session_from_row(cur.fetchone())

    def get_session(self, cur, capture_id: str, user_id: int,
                    for_update: bool = False) -> Optional[CaptureSession]:
        sql = """
            SELECT * FROM capture_session
            WHERE capture_uuid = %s::uuid AND user_id = %s
        """
        if for_update:
            sql += " FOR UPDATE"
        cur.execute(sql, (capture_id, user_id))
        row = cur.fetchone()
        return _session_from_row(row) if row else None

    def update_session(self, cur, session: CaptureSession):
        cur.execute(
            """
            UPDATE capture_session
            SET status = %s,
                top_confidence = %s,
                accepted_entity_type = %s,
                accepted_entity_id = %s,
                metadata = %s::jsonb,
                updated_at = NOW()
            WHERE capture_session_id = %s
            """,
            (
                session.status,
                round(session.top_confidence, 3) if session.top_confidence is not None else None,
                session.accepted_entity_type,
                session.accepted_entity_id,
                _json(session.metadata.to_dict()),
                session.id,
            ),
        )

    # -------------------------------------------------------
    # Images
    # -------------------------------------------------------

    def insert_image(self, cur, user_id: int, asset: ImageAsset) -> int:
        cur.execute(
            """
            INSERT INTO image_asset
                (owner_type, owner_id, storage_url, checksum_sha256, byte_size, mime_type, content)
            VALUES ('user', %s, %s, %s, %s, %s, %s)
            RETURNING image_id
            """,
            (
                user_id,
                asset.storage_url,
                asset.checksum_sha256,
                asset.byte_size,
                asset.mime_type,
                psycopg2.Binary(asset.content) if asset.content is not None else None,
            ),
        )
        return cur.fetchone()["image_id"]

    def get_image(self, cur, image_id: int, user_id: int) -> Optional[ImageAsset]:
        cur.execute(
            """
            SELECT * FROM image_asset
            WHERE image_id = %s AND owner_type = 'user' AND owner_id = %s
            """,
            (image_id, user_id),
        )
        row = cur.fetchone()
        return _image_from_row(row) if row else None

    # -------------------------------------------------------
    # Frames
    # -------------------------------------------------------

    def insert_frame(self, cur, session_id: int, frame_type: str, image_id: Optional[int],
                     quality: dict) -> CaptureFrame:
        cur.execute(
            """
            INSERT INTO capture_frame (capture_session_id, image_id, frame_type, quality_json)
            VALUES (%s, %s, %s, %s::jsonb)
            RETURNING *
            """,
            (session_id, image_id, frame_type, _json(quality)),
        )
        return _frame_from_row(cur.fetchone())

    def list_frames(self, cur, session_id: int) -> List[CaptureFrame]:
        cur.execute(
            """
            SELECT * FROM capture_frame
            WHERE capture_session_id = %s
            ORDER BY capture_frame_id
            """,
            (session_id,),
        )
        return [_frame_from_row(r) for r in cur.fetchall()]

    def get_frame(self, cur, session_id: int, frame_id: int) -> Optional[CaptureFrame]:
        cur.execute(
            "SELECT * FROM capture_frame WHERE capture_frame_id = %s AND capture_session_id = %s",
            (frame_id, session_id),
        )
        row = cur.fetchone()
        return _frame_from_row(row) if row else None

    def update_frame_quality(self, cur, frame_id: int, quality: dict):
        cur.execute(
            "UPDATE capture_frame SET quality_json = %s::jsonb WHERE capture_frame_id = %s",
            (_json(quality), frame_id),
        )

    # -------------------------------------------------------
    # Questions & answers
    # -------------------------------------------------------

    def get_open_question(self, cur, session_id: int) -> Optional[CaptureQuestion]:
        cur.execute(
            """
            SELECT * FROM capture_question
            WHERE capture_session_id = %s AND status = %s
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (session_id, QUESTION_OPEN),
        )
        row = cur.fetchone()
        return _question_from_row(row) if row else None

    def insert_question(self, cur, session_id: int, key: str, prompt: str, question_type: str,
                        options: Optional[List[str]]) -> CaptureQuestion:
        cur.execute(
            """
            INSERT INTO capture_question
                (capture_session_id, question_key, prompt, question_type, options_json, status)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
            RETURNING *
            """,
            (session_id, key, prompt, question_type, _json(options), QUESTION_OPEN),
        )
        question = _question_from_row(cur.fetchone())
        logger.info(f"Opened question {question.id} ({key}) on session {session_id}")
        return question

    def close_question(self, cur, question_id: int, status: str = QUESTION_ANSWERED):
        cur.execute(
            "UPDATE capture_question SET status = %s WHERE capture_question_id = %s AND status = %s",
            (status, question_id, QUESTION_OPEN),
        )

    def insert_answer(self, cur, question_id: int, user_id: int, answer) -> int:
        cur.execute(
            """
            INSERT INTO capture_answer (capture_question_id, user_id, answer_json)
            VALUES (%s, %s, %s::jsonb)
            RETURNING capture_answer_id
            """,
            (question_id, user_id, _json(answer)),
        )
        return cur.fetchone()["capture_answer_id"]
