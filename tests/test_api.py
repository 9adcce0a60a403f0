"""
HTTP surface: auth, admin gating, error mapping and the happy paths, with the
app wired to in-memory stores.
"""
import pytest
from fastapi.testclient import TestClient

from config.settings import AuthConfig, LacquerConfig
from orchestrator.answer_loop import QuestionAnswerLoop
from orchestrator.resolver import CaptureResolver
from outputs.dashboard import Services, create_app
from triggers.dispatcher import JobDispatcher
from tests.fakes import catalog_entry

USER = {"Authorization": "Bearer dev:7"}
ADMIN = {"Authorization": "Bearer dev:1"}
MISSING_UUID = "6f1c2a9e-4b7d-4c1e-9a3f-2d5e8b7c6a10"


@pytest.fixture
def client(capture_store, catalog, capture_config, ingestion_config, job_store, queue):
    cfg = LacquerConfig(
        capture=capture_config,
        ingestion=ingestion_config,
        auth=AuthConfig(dev_bypass=True, api_key="gateway-secret", admin_user_ids=[1]),
    )
    resolver = CaptureResolver(capture_store, catalog, capture_config)
    services = Services(
        resolver=resolver,
        answers=QuestionAnswerLoop(resolver),
        job_store=job_store,
        queue=queue,
        dispatcher=JobDispatcher(job_store, queue, ingestion_config),
    )
    return TestClient(create_app(cfg, services=services))


# ------------------------------------------------------------------
# Auth
# ------------------------------------------------------------------

def test_missing_auth_is_401(client):
    r = client.post("/capture/start", json={})
    assert r.status_code == 401
    assert "error" in r.json()


def test_malformed_dev_token_is_401(client):
    r = client.post("/capture/start", json={}, headers={"Authorization": "Bearer dev:abc"})
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid dev token format. Expected: dev:<userId>"


def test_gateway_key_with_user_header(client):
    r = client.post("/capture/start", json={},
                    headers={"X-Lacquer-Key": "gateway-secret", "X-User-Id": "7"})
    assert r.status_code == 201


def test_wrong_gateway_key_is_401(client):
    r = client.post("/capture/start", json={},
                    headers={"X-Lacquer-Key": "nope", "X-User-Id": "7"})
    assert r.status_code == 401


def test_admin_routes_reject_regular_users(client):
    r = client.post("/ingestion/jobs", json={"source": "MakeupAPI"}, headers=USER)
    assert r.status_code == 403
    assert r.json() == {"error": "Admin access required"}


# ------------------------------------------------------------------
# Capture
# ------------------------------------------------------------------

def test_start_capture(client):
    r = client.post("/capture/start", json={"metadata": {"brand": "Holo Taco"}}, headers=USER)
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "processing"
    assert body["guidanceConfig"]["maxFrames"] == 6
    assert body["captureId"]


def test_start_capture_without_body(client):
    r = client.post("/capture/start", headers=USER)
    assert r.status_code == 201


def test_non_object_body_is_400(client):
    r = client.post("/capture/start", json=["metadata"], headers=USER)
    assert r.status_code == 400
    assert r.json() == {"error": "Request body must be a JSON object"}


def test_bad_capture_id_is_400(client):
    r = client.get("/capture/not-a-uuid/status", headers=USER)
    assert r.status_code == 400
    assert r.json()["error"] == "Capture id must be a valid UUID"


def test_unknown_capture_is_404(client):
    r = client.get(f"/capture/{MISSING_UUID}/status", headers=USER)
    assert r.status_code == 404


def test_other_users_capture_is_404(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    r = client.get(f"/capture/{capture_id}/status", headers={"Authorization": "Bearer dev:8"})
    assert r.status_code == 404


def test_frame_then_finalize_matches_by_barcode(client, catalog):
    catalog.by_gtin["0123456789012"] = catalog_entry(41, "Holo Taco - Scattered Holo")
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]

    r = client.post(f"/capture/{capture_id}/frame", headers=USER, json={
        "frameType": "barcode",
        "imageBlobUrl": "https://cdn.example.com/b.jpg",
        "quality": {"barcode": "0123456789012"},
    })
    assert r.status_code == 201

    r = client.post(f"/capture/{capture_id}/finalize", headers=USER)
    assert r.status_code == 200
    assert r.json()["status"] == "matched"
    assert r.json()["acceptedEntityId"] == 41


def test_frame_requires_frame_type(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    r = client.post(f"/capture/{capture_id}/frame", headers=USER,
                    json={"imageBlobUrl": "https://cdn.example.com/b.jpg"})
    assert r.status_code == 400
    assert r.json()["error"] == "frameType is required"


def test_answer_requires_answer_field(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    r = client.post(f"/capture/{capture_id}/answer", headers=USER, json={"questionId": 1})
    assert r.status_code == 400
    assert r.json()["error"] == "answer is required"


def test_answer_without_open_question_is_409(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    r = client.post(f"/capture/{capture_id}/answer", headers=USER, json={"answer": "skip"})
    assert r.status_code == 409


def test_finalize_then_skip(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    question = client.post(f"/capture/{capture_id}/finalize", headers=USER).json()["question"]
    assert question["key"] == "capture_frame"

    r = client.post(f"/capture/{capture_id}/answer", headers=USER,
                    json={"questionId": question["id"], "answer": "skip"})
    assert r.status_code == 200
    assert r.json()["question"] is None


def test_detect_hex_without_detector_is_422(client):
    capture_id = client.post("/capture/start", json={}, headers=USER).json()["captureId"]
    r = client.post(f"/capture/{capture_id}/frames/1/detect-hex", headers=USER)
    assert r.status_code == 422


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------

def test_run_job_is_accepted(client, queue):
    r = client.post("/ingestion/jobs", headers=ADMIN, json={"source": "MakeupAPI", "maxRecords": 10})
    assert r.status_code == 202
    job = r.json()
    assert job["status"] == "queued"
    assert job["metrics"]["maxRecords"] == 10
    assert len(queue.messages) == 1


def test_run_job_unknown_source_is_400(client, queue):
    r = client.post("/ingestion/jobs", headers=ADMIN, json={"source": "Sephora"})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Unsupported source 'Sephora'")
    assert queue.messages == []


def test_get_job(client):
    job_id = client.post("/ingestion/jobs", headers=ADMIN, json={"source": "MakeupAPI"}).json()["id"]
    r = client.get(f"/ingestion/jobs/{job_id}", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["id"] == job_id


@pytest.mark.parametrize("job_id,status", [("abc", 400), ("0", 400), ("999", 404)])
def test_get_job_errors(client, job_id, status):
    r = client.get(f"/ingestion/jobs/{job_id}", headers=ADMIN)
    assert r.status_code == status


def test_list_jobs_clamps_limit(client):
    for _ in range(3):
        client.post("/ingestion/jobs", headers=ADMIN, json={"source": "MakeupAPI"})
    client.post("/ingestion/jobs", headers=ADMIN, json={"source": "OpenBeautyFacts"})

    r = client.get("/ingestion/jobs", headers=ADMIN, params={"limit": "0"})
    assert r.status_code == 200
    assert len(r.json()["jobs"]) == 1
    assert r.json()["total"] == 4

    r = client.get("/ingestion/jobs", headers=ADMIN, params={"source": "MakeupAPI"})
    assert r.json()["total"] == 3


def test_cancel_job_twice_conflicts(client):
    job_id = client.post("/ingestion/jobs", headers=ADMIN, json={"source": "MakeupAPI"}).json()["id"]
    r = client.post(f"/ingestion/jobs/{job_id}/cancel", headers=ADMIN, json={"reason": "oops"})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    r = client.post(f"/ingestion/jobs/{job_id}/cancel", headers=ADMIN)
    assert r.status_code == 409


def test_queue_stats_and_purge(client):
    client.post("/ingestion/jobs", headers=ADMIN, json={"source": "MakeupAPI"})
    stats = client.get("/ingestion/queue/stats", headers=ADMIN).json()
    assert stats["messageCount"] == 1
    assert stats["queueName"] == "ingestion-jobs"

    r = client.post("/ingestion/queue/purge", headers=ADMIN)
    assert r.json() == {"purged": 1}
    assert client.get("/ingestion/queue/stats", headers=ADMIN).json()["messageCount"] == 0


def test_worker_status(client):
    r = client.get("/worker/status", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["running"] is False
