"""
Capture resolver state machine scenarios against the in-memory store.
"""
import pytest

from orchestrator.capture_types import (
    PIPELINE_AWAITING_ANSWER,
    PIPELINE_FAILED,
    PIPELINE_MATCHED,
    PIPELINE_READY,
    QUESTION_BRAND_SHADE,
    QUESTION_CANDIDATE_SELECT,
    QUESTION_CAPTURE_FRAME,
    SESSION_FAILED,
    SESSION_MATCHED,
    SESSION_NEEDS_QUESTION,
    SESSION_PROCESSING,
    STEP_ATTEMPTS_EXHAUSTED,
    STEP_MATCHED_BY_BARCODE,
    SessionMetadata,
)
from orchestrator.errors import ConflictError, InputError, NotActionableError, NotFoundError
from orchestrator.answer_loop import QuestionAnswerLoop
from orchestrator.resolver import CaptureResolver, parse_brand_shade
from tests.fakes import catalog_entry

USER = 7
GTIN = "0850123456789"


@pytest.fixture
def resolver(capture_store, catalog, capture_config):
    return CaptureResolver(capture_store, catalog, capture_config)


def _start(resolver, metadata=None):
    return resolver.start(USER, metadata)["captureId"]


def test_start_returns_guidance(resolver, capture_store):
    result = resolver.start(USER, {"source": "mobile"})
    assert result["status"] == SESSION_PROCESSING
    assert result["uploadUrls"] == []
    assert result["guidanceConfig"]["maxFrames"] == 6
    assert "barcode" in result["guidanceConfig"]["recommendedFrameTypes"]
    assert capture_store.session(result["captureId"]).metadata.source == "mobile"


def test_malformed_capture_id_is_input_error(resolver):
    with pytest.raises(InputError, match="valid UUID"):
        resolver.finalize("not-a-uuid", USER)


def test_unknown_session_is_not_found(resolver):
    with pytest.raises(NotFoundError):
        resolver.get_status("6f1c2a9e-4b7d-4c1e-9a3f-2d5e8b7c6a10", USER)


def test_other_users_session_is_not_found(resolver):
    capture_id = _start(resolver)
    with pytest.raises(NotFoundError):
        resolver.get_status(capture_id, USER + 1)


def test_barcode_frame_auto_matches_sku(resolver, catalog, capture_store):
    catalog.by_gtin[GTIN] = catalog_entry(11, "Holo Taco - One Coat Black", entity_type="sku", shade_id=4)
    capture_id = _start(resolver)

    frame = resolver.add_frame(capture_id, USER, "barcode",
                               image_blob_url="data:image/png;base64,YWJj",
                               quality={"barcode": GTIN})
    assert frame["received"] is True
    assert frame["pipelineStatus"] == PIPELINE_READY

    result = resolver.finalize(capture_id, USER)

    assert result["status"] == SESSION_MATCHED
    assert result["topConfidence"] == 1.0
    assert result["acceptedEntityType"] == "sku"
    assert result["acceptedEntityId"] == 11
    assert result["question"] is None
    meta = result["metadata"]
    assert meta["pipeline"]["status"] == PIPELINE_MATCHED
    assert meta["resolver"]["step"] == STEP_MATCHED_BY_BARCODE
    assert meta["resolver"]["audit"][-1]["frameCount"] == 1
    assert catalog.inventory == {(USER, "sku", 11): meta["resolver"]["inventoryItemId"]}


def test_finalize_is_idempotent_once_matched(resolver, catalog, capture_store):
    catalog.by_gtin[GTIN] = catalog_entry(11, "Black", entity_type="sku")
    capture_id = _start(resolver, {"gtin": GTIN})
    first = resolver.finalize(capture_id, USER)
    second = resolver.finalize(capture_id, USER)
    for key in ("status", "topConfidence", "acceptedEntityType", "acceptedEntityId"):
        assert first[key] == second[key]
    assert len(catalog.inventory) == 1

    audit = second["metadata"]["resolver"]["audit"]
    assert len(audit) == len(first["metadata"]["resolver"]["audit"]) + 1
    assert audit[-1]["decision"] == "noop"
    assert audit[-1]["signal"] == "already_decided"
    assert second["metadata"]["resolver"]["step"] == first["metadata"]["resolver"]["step"]


def test_zero_frames_asks_capture_frame(resolver, capture_store):
    capture_id = _start(resolver)
    result = resolver.finalize(capture_id, USER)
    assert result["status"] == SESSION_NEEDS_QUESTION
    assert result["question"]["key"] == QUESTION_CAPTURE_FRAME
    assert result["metadata"]["pipeline"]["status"] == PIPELINE_AWAITING_ANSWER


def test_repeated_finalize_keeps_single_open_question(resolver, capture_store):
    capture_id = _start(resolver)
    first = resolver.finalize(capture_id, USER)
    second = resolver.finalize(capture_id, USER)
    session = capture_store.session(capture_id)

    assert len(capture_store.open_questions(session.id)) == 1
    assert first["question"]["id"] == second["question"]["id"]
    assert session.metadata.pipeline.finalize.attempt == 2
    last = session.metadata.resolver.audit[-1]
    assert (last.decision, last.signal, last.attempt) == ("noop", "question_open", 2)


def test_mid_confidence_offers_candidates(resolver, catalog):
    catalog.text_results = [
        (catalog_entry(3, "Holo Taco - Rainbow Capsule"), 0.80),
        (catalog_entry(8, "Holo Taco - Rainbow Sprinkles"), 0.70),
    ]
    capture_id = _start(resolver, {"brand": "Holo Taco", "shadeName": "Rainbow"})
    result = resolver.finalize(capture_id, USER)

    assert result["question"]["key"] == QUESTION_CANDIDATE_SELECT
    assert result["question"]["options"] == [
        "Holo Taco - Rainbow Capsule", "Holo Taco - Rainbow Sprinkles", "skip",
    ]
    assert result["topConfidence"] == pytest.approx(0.80)
    assert len(result["metadata"]["resolver"]["pendingCandidates"]) == 2


def test_low_confidence_with_frames_asks_brand_shade(resolver, catalog):
    catalog.text_results = [(catalog_entry(3, "Something"), 0.3)]
    capture_id = _start(resolver)
    resolver.add_frame(capture_id, USER, "label", image_blob_url="https://cdn.example.com/a.jpg",
                       quality={"brand": "Mystery"})
    result = resolver.finalize(capture_id, USER)
    assert result["question"]["key"] == QUESTION_BRAND_SHADE


def test_exhausted_finalize_fails_session(resolver, capture_store):
    answers = QuestionAnswerLoop(resolver)
    capture_id = _start(resolver)
    for _ in range(5):
        result = resolver.finalize(capture_id, USER)
        assert result["status"] == SESSION_NEEDS_QUESTION
        answers.answer(capture_id, USER, "skip")

    result = resolver.finalize(capture_id, USER)

    assert result["status"] == SESSION_FAILED
    assert result["metadata"]["resolver"]["step"] == STEP_ATTEMPTS_EXHAUSTED
    assert result["metadata"]["pipeline"]["status"] == PIPELINE_FAILED
    # terminal: finalize no longer changes anything
    assert resolver.finalize(capture_id, USER) == result


def test_new_evidence_resets_exhaustion_count(resolver, capture_store):
    answers = QuestionAnswerLoop(resolver)
    capture_id = _start(resolver)
    for _ in range(4):
        resolver.finalize(capture_id, USER)
        answers.answer(capture_id, USER, "skip")
    resolver.add_frame(capture_id, USER, "color", image_blob_url="https://cdn.example.com/c.jpg")
    result = resolver.finalize(capture_id, USER)
    assert result["status"] == SESSION_NEEDS_QUESTION
    assert capture_store.session(capture_id).metadata.pipeline.finalize.attempts_for_evidence == 1


def test_blob_url_rejected_before_any_write(resolver, capture_store):
    capture_id = _start(resolver)
    with pytest.raises(InputError, match="blob"):
        resolver.add_frame(capture_id, USER, "label", image_blob_url="blob:https://app.example.com/1")
    assert capture_store.frames == []
    assert capture_store.images == {}


def test_data_url_frame_stores_checksummed_asset(resolver, capture_store):
    capture_id = _start(resolver)
    resolver.add_frame(capture_id, USER, "label", image_blob_url="data:image/png;base64,YWJj")
    (_, asset), = capture_store.images.values()
    assert asset.byte_size == 3
    assert len(asset.checksum_sha256) == 64
    assert asset.storage_url.startswith(f"inline://capture/{capture_id}/")


def test_frame_counters_accumulate(resolver, capture_store):
    capture_id = _start(resolver)
    resolver.add_frame(capture_id, USER, "label", image_blob_url="https://cdn.example.com/a.jpg")
    resolver.add_frame(capture_id, USER, "barcode", image_blob_url="https://cdn.example.com/b.jpg",
                       quality={"upc": "012345678905"})
    ingest = capture_store.session(capture_id).metadata.pipeline.ingest
    assert ingest.frames_received == 2
    assert ingest.by_type["label"] == 1
    assert ingest.by_type["barcode"] == 1
    assert ingest.frames_with_evidence == 1
    assert ingest.last_frame_had_evidence is True


@pytest.mark.parametrize("kwargs,message", [
    ({"frame_type": None, "image_blob_url": "https://x/a.jpg"}, "frameType is required"),
    ({"frame_type": "selfie", "image_blob_url": "https://x/a.jpg"}, "frameType must be one of"),
    ({"frame_type": "label"}, "Either imageId or imageBlobUrl is required"),
])
def test_add_frame_input_validation(resolver, kwargs, message):
    capture_id = _start(resolver)
    frame_type = kwargs.pop("frame_type")
    with pytest.raises(InputError, match=message):
        resolver.add_frame(capture_id, USER, frame_type, **kwargs)


def test_frames_rejected_after_match(resolver, catalog):
    catalog.by_gtin[GTIN] = catalog_entry(11, "Black", entity_type="sku")
    capture_id = _start(resolver, {"gtin": GTIN})
    resolver.finalize(capture_id, USER)
    with pytest.raises(ConflictError):
        resolver.add_frame(capture_id, USER, "label", image_blob_url="https://cdn.example.com/a.jpg")


def test_max_frames_enforced(resolver, capture_config):
    capture_id = _start(resolver)
    for i in range(capture_config.max_frames):
        resolver.add_frame(capture_id, USER, "other", image_blob_url=f"https://cdn.example.com/{i}.jpg")
    with pytest.raises(ConflictError, match="maximum"):
        resolver.add_frame(capture_id, USER, "other", image_blob_url="https://cdn.example.com/x.jpg")


def test_failed_frame_insert_rolls_back(resolver, capture_store, monkeypatch):
    capture_id = _start(resolver)

    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(capture_store, "insert_frame", boom)
    with pytest.raises(RuntimeError):
        resolver.add_frame(capture_id, USER, "label", image_blob_url="data:image/png;base64,YWJj")
    assert capture_store.images == {}
    assert capture_store.session(capture_id).metadata.pipeline.ingest.frames_received == 0



def test_failed_inventory_insert_rolls_back_finalize(resolver, catalog, capture_store, monkeypatch):
    catalog.by_gtin[GTIN] = catalog_entry(11, "Holo Taco - One Coat Black", entity_type="sku", shade_id=4)
    capture_id = _start(resolver)
    resolver.add_frame(capture_id, USER, "barcode",
                       image_blob_url="data:image/png;base64,YWJj",
                       quality={"barcode": GTIN})

    def boom(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(catalog, "ensure_inventory_item", boom)
    with pytest.raises(RuntimeError):
        resolver.finalize(capture_id, USER)

    session = capture_store.session(capture_id)
    assert session.status == SESSION_PROCESSING
    assert session.accepted_entity_id is None
    assert session.metadata.resolver.audit == []
    assert session.metadata.pipeline.finalize.attempt == 0
    assert catalog.inventory == {}


def test_detect_hex_without_image_is_not_actionable(capture_store, catalog, capture_config):
    detector = type("Detector", (), {"detect": lambda self, **kw: "#ff0000"})()
    resolver = CaptureResolver(capture_store, catalog, capture_config, hex_detector=detector)
    capture_id = _start(resolver)
    session = capture_store.session(capture_id)
    frame = capture_store.insert_frame(None, session.id, "color", None, {})
    with pytest.raises(NotActionableError):
        resolver.detect_frame_hex(capture_id, USER, frame.id)


def test_detect_hex_merges_colour_into_frame(capture_store, catalog, capture_config):
    detector = type("Detector", (), {"detect": lambda self, **kw: "#ff0000"})()
    resolver = CaptureResolver(capture_store, catalog, capture_config, hex_detector=detector)
    capture_id = _start(resolver)
    frame_id = resolver.add_frame(capture_id, USER, "color",
                                  image_blob_url="data:image/png;base64,YWJj")["frameId"]

    result = resolver.detect_frame_hex(capture_id, USER, frame_id)

    assert result["colorHex"] == "#FF0000"
    assert result["extracted"]["source"] == "ai_hex_detection"
    assert capture_store.frames[-1].quality["extracted"]["colorHex"] == "#FF0000"


@pytest.mark.parametrize("answer,expected", [
    ({"brand": "Holo Taco", "shadeName": "Rainbow Capsule"}, ("Holo Taco", "Rainbow Capsule", None)),
    ("Holo Taco - Rainbow Capsule", ("Holo Taco", "Rainbow Capsule", None)),
    ("Holo Taco / Rainbow Capsule", ("Holo Taco", "Rainbow Capsule", None)),
    ("Rainbow Capsule", (None, "Rainbow Capsule", None)),
    (42, (None, None, None)),
])
def test_parse_brand_shade(answer, expected):
    assert parse_brand_shade(answer) == expected


def test_unknown_metadata_keys_survive_finalize(resolver, capture_store):
    capture_id = _start(resolver)
    stored = capture_store.sessions[capture_id]
    doc = stored.metadata.to_dict()
    doc["pipeline"]["ocrEngine"] = "v2"
    doc["resolver"]["reviewer"] = {"id": 3}
    doc["clientBuild"] = "417"
    stored.metadata = SessionMetadata.from_dict(doc)

    resolver.finalize(capture_id, USER)

    written = capture_store.session(capture_id).metadata.to_dict()
    assert written["pipeline"]["ocrEngine"] == "v2"
    assert written["resolver"]["reviewer"] == {"id": 3}
    assert written["clientBuild"] == "417"
    assert written["pipeline"]["finalize"]["attempt"] == 1
