"""Run-request normalization, enqueue contract and job cancellation."""
from unittest.mock import MagicMock

import pytest

from models.ingestion_store import JOB_CANCELLED, JOB_FAILED, JOB_QUEUED
from orchestrator.errors import ConflictError, InputError, NotFoundError
from triggers.dispatcher import JobDispatcher, clamp_int, parse_bool
from triggers.ingestion_worker import parse_normalized_request


@pytest.fixture
def dispatcher(job_store, queue, ingestion_config):
    return JobDispatcher(job_store, queue, ingestion_config)


def test_dispatch_creates_job_and_enqueues_message(dispatcher, job_store, queue):
    job = dispatcher.dispatch({"source": "HoloTacoShopify", "pageSize": "50"}, 7)

    assert job["status"] == JOB_QUEUED
    assert job["source"] == "HoloTacoShopify"
    assert job["jobType"] == "connector_verify"
    (message,) = queue.messages
    body = message.body
    assert body["jobId"] == job["id"]
    assert body["userId"] == "7"
    assert body["queuedAt"]
    assert body["request"]["pageSize"] == 50
    assert body["request"]["searchTerm"] == "nail polish"
    assert body["requestedMetrics"]["triggeredByUserId"] == 7
    assert body["requestedMetrics"]["requestedPageSize"] == 50
    # the worker accepts exactly what the dispatcher produces
    assert parse_normalized_request(body["request"]) == body["request"]


@pytest.mark.parametrize("body,message", [
    ({}, "source is required"),
    ({"source": "   "}, "source is required"),
    ({"source": "Sephora"}, "Unsupported source 'Sephora'. Supported: "),
])
def test_bad_source_rejected_before_job_or_message(dispatcher, job_store, queue, body, message):
    with pytest.raises(InputError, match=message):
        dispatcher.dispatch(body, 7)
    assert job_store.jobs == {}
    assert queue.messages == []


def test_request_values_are_clamped(dispatcher, ingestion_config):
    request, metrics = dispatcher.normalize_request(
        {"source": "MakeupAPI", "page": 0, "pageSize": 10_000, "maxRecords": "abc", "recentDays": 99999}, 3,
    )
    assert request["page"] == 1
    assert request["pageSize"] == ingestion_config.max_page_size
    assert request["maxRecords"] == ingestion_config.default_max_records
    assert request["recentDays"] == ingestion_config.max_recent_days
    assert metrics["recentDays"] == ingestion_config.max_recent_days


def test_recent_days_null_stays_null(dispatcher):
    request, metrics = dispatcher.normalize_request({"source": "MakeupAPI", "recentDays": None}, 3)
    assert request["recentDays"] is None
    assert metrics["recentDays"] is None


def test_non_boolean_flag_rejected(dispatcher):
    with pytest.raises(InputError, match="materializeToInventory"):
        dispatcher.normalize_request({"source": "MakeupAPI", "materializeToInventory": "maybe"}, 3)


def test_enqueue_failure_marks_job_failed(job_store, ingestion_config):
    broken = MagicMock()
    broken.send.side_effect = RuntimeError("queue unavailable")
    dispatcher = JobDispatcher(job_store, broken, ingestion_config)

    with pytest.raises(RuntimeError):
        dispatcher.dispatch({"source": "MakeupAPI"}, 7)

    (row,) = job_store.jobs.values()
    assert row["status"] == JOB_FAILED
    assert "Failed to enqueue" in row["error"]


def test_cancel_queued_job(dispatcher, job_store):
    job = dispatcher.dispatch({"source": "MakeupAPI"}, 7)
    result = dispatcher.cancel(job["id"], "wrong source")
    assert result["status"] == JOB_CANCELLED
    assert result["error"] == "wrong source"
    assert result["metrics"]["cancelReason"] == "wrong source"
    assert result["finishedAt"] is not None


def test_cancel_missing_job(dispatcher):
    with pytest.raises(NotFoundError):
        dispatcher.cancel(404)


def test_cancel_terminal_job_conflicts(dispatcher, job_store):
    job = dispatcher.dispatch({"source": "MakeupAPI"}, 7)
    dispatcher.cancel(job["id"])
    with pytest.raises(ConflictError, match="already cancelled"):
        dispatcher.cancel(job["id"])


@pytest.mark.parametrize("value,expected", [
    (None, 20), ("", 20), ("7", 7), (7, 7), (0, 1), (500, 100), ("x", 20), (True, 20),
])
def test_clamp_int(value, expected):
    assert clamp_int(value, 20, 1, 100) == expected


def test_parse_bool():
    assert parse_bool(None, True) is True
    assert parse_bool("false", True) is False
    assert parse_bool("TRUE", False) is True
    assert parse_bool(1, False) is None
