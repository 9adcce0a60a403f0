"""Unit tests for the per-job structured log buffer."""
from unittest.mock import MagicMock

from triggers.job_logger import JobLogger


def test_entries_are_timestamped_and_leveled():
    log = JobLogger(1)
    log.info("started")
    log.warn("slow page", {"page": 2})
    entries = log.metrics_with_logs()["logs"]
    assert [e["level"] for e in entries] == ["info", "warn"]
    assert entries[1]["data"] == {"page": 2}
    assert "data" not in entries[0]
    assert all(e["ts"] for e in entries)


def test_flush_merges_base_metrics_and_logs():
    flush = MagicMock()
    log = JobLogger(9, flush_fn=flush, base_metrics={"processed": 0})
    log.update_metrics(processed=4)
    log.error("boom")
    log.flush()
    job_id, metrics = flush.call_args[0]
    assert job_id == "9"
    assert metrics["processed"] == 4
    assert metrics["logs"][0]["msg"] == "boom"


def test_flush_is_skipped_when_nothing_changed():
    flush = MagicMock()
    log = JobLogger(1, flush_fn=flush)
    log.debug("x")
    log.flush()
    log.flush()
    assert flush.call_count == 1


def test_flush_failure_is_not_raised():
    log = JobLogger(1, flush_fn=MagicMock(side_effect=RuntimeError("db down")))
    log.info("x")
    log.flush()  # logged, not raised
    assert log.metrics_with_logs()["logs"]


def test_buffer_drops_oldest_fifth_when_full():
    log = JobLogger(1, max_entries=10)
    for i in range(11):
        log.debug(f"m{i}")
    msgs = [e["msg"] for e in log.entries]
    assert len(msgs) == 9
    assert msgs[0] == "m2"
    assert msgs[-1] == "m10"


def test_seeded_entries_are_kept_ahead_of_new_ones():
    earlier = [{"ts": "2025-01-01T00:00:00+00:00", "level": "error", "msg": "db down"}, "junk"]
    log = JobLogger(1, entries=earlier)
    log.info("resumed")
    msgs = [e["msg"] for e in log.metrics_with_logs()["logs"]]
    assert msgs == ["db down", "resumed"]
