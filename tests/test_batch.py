import logging
import threading

import pytest

from studygraph.errors import BatchAlreadyRunning, ErrorType
from studygraph.indexing.batch import BatchRunState, PhaseStatus, SessionBatchTracker, UnitStatus
from studygraph.indexing.batch_log import BatchLog


def test_one_running_batch_per_session():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a"])
    tracker.start("s2", ["b"])
    with pytest.raises(BatchAlreadyRunning):
        tracker.start("s1", ["c"])

    tracker.finish("s1")
    batch = tracker.start("s1", ["c"])
    assert batch.unit_ids == ["c"]


def test_cancel_is_idempotent():
    tracker = SessionBatchTracker()
    assert tracker.cancel("missing") is False
    batch = tracker.start("s1", ["a"])

    assert tracker.cancel("s1") is True
    assert tracker.cancel("s1") is False
    assert batch.token.cancelled
    assert not batch.token.aborted

    tracker.cancel("s1", force=True)
    assert batch.token.aborted


def test_cancel_after_finish_is_refused():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a"])
    tracker.finish("s1")
    assert tracker.cancel("s1") is False


def test_status_snapshot():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a", "b", "c"])
    tracker.set_phase("s1", 1, PhaseStatus.RUNNING)
    tracker.mark_running("s1", "a")
    tracker.mark_running("s1", "b")
    tracker.mark_completed("s1", "a", attempts=2, duration_ms=1500)
    tracker.mark_failed("s1", "b", ErrorType.PARSE_ERROR, "bad json", attempts=3)

    status = tracker.status("s1")
    assert status.state is BatchRunState.RUNNING
    assert status.phase.current == 1
    assert status.phase.phase1.status is PhaseStatus.RUNNING
    assert status.phase.phase2.status is PhaseStatus.PENDING
    assert status.current_unit_ids == []
    assert status.completed_unit_ids == ["a"]
    by_id = {r.id: r for r in status.resources}
    assert by_id["a"].status is UnitStatus.COMPLETED
    assert (by_id["a"].attempts, by_id["a"].duration_ms) == (2, 1500)
    assert by_id["b"].error_type is ErrorType.PARSE_ERROR
    assert by_id["b"].error_message == "bad json"
    assert by_id["c"].status is UnitStatus.PENDING
    assert tracker.status("other") is None

    data = status.model_dump(mode="json")
    assert data["resources"][1]["error_type"] == "parse_error"
    assert data["phase"]["phase1"]["status"] == "running"


def test_finish_after_cancel_marks_leftovers():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a", "b"])
    tracker.mark_completed("s1", "a")
    tracker.set_phase("s1", 1, PhaseStatus.COMPLETED)
    tracker.set_phase("s1", 2, PhaseStatus.RUNNING)
    tracker.cancel("s1")

    assert tracker.finish("s1") is BatchRunState.CANCELLED
    status = tracker.status("s1")
    assert status.cancelled
    assert status.finished_at is not None
    assert [r.status for r in status.resources] == [UnitStatus.COMPLETED, UnitStatus.CANCELLED]
    assert status.phase.phase1.status is PhaseStatus.COMPLETED
    assert status.phase.phase2.status is PhaseStatus.CANCELLED
    assert status.phase.phase5.status is PhaseStatus.CANCELLED
    assert status.phase.current is None


def test_completed_unit_is_never_downgraded():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a"])
    tracker.mark_running("s1", "a")
    tracker.mark_completed("s1", "a", attempts=2, duration_ms=900)
    tracker.mark_failed("s1", "a", ErrorType.LLM_ERROR, "late failure", attempts=1)
    tracker.mark_cancelled("s1", "a")

    (unit,) = tracker.status("s1").resources
    assert unit.status is UnitStatus.COMPLETED
    assert (unit.attempts, unit.duration_ms) == (2, 900)
    assert unit.error_type is None
    assert unit.error_message is None


def test_metadata_outcome_is_recorded_separately():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a", "b"])
    tracker.mark_completed("s1", "a", attempts=1, duration_ms=100)
    tracker.mark_completed("s1", "b", attempts=1, duration_ms=200)

    tracker.mark_metadata("s1", "a", UnitStatus.INDEXING)
    tracker.mark_metadata("s1", "b", UnitStatus.INDEXING)
    assert tracker.status("s1").current_unit_ids == ["a", "b"]
    tracker.mark_metadata("s1", "a", UnitStatus.FAILED, error_type=ErrorType.PARSE_ERROR, message="bad json")

    status = tracker.status("s1")
    assert status.current_unit_ids == ["b"]
    by_id = {r.id: r for r in status.resources}
    assert by_id["a"].status is UnitStatus.COMPLETED
    assert by_id["a"].duration_ms == 100
    assert by_id["a"].error_type is None
    assert by_id["a"].metadata_status is UnitStatus.FAILED
    assert by_id["a"].metadata_error_type is ErrorType.PARSE_ERROR
    assert by_id["a"].metadata_error_message == "bad json"

    tracker.cancel("s1")
    tracker.finish("s1")
    by_id = {r.id: r for r in tracker.status("s1").resources}
    assert by_id["b"].status is UnitStatus.COMPLETED
    assert by_id["b"].metadata_status is UnitStatus.CANCELLED
    assert by_id["a"].metadata_status is UnitStatus.FAILED


def test_phase_fields():
    tracker = SessionBatchTracker()
    tracker.start("s1", [])
    tracker.set_phase("s1", 3, PhaseStatus.COMPLETED, links_added=4)
    tracker.set_phase("s1", 4, PhaseStatus.FAILED, message="cleanup agent failed", stats={"orphaned_concepts_removed": 2})
    status = tracker.status("s1")
    assert status.phase.phase3.links_added == 4
    assert status.phase.phase4.message == "cleanup agent failed"
    assert status.phase.phase4.stats == {"orphaned_concepts_removed": 2}


def test_discard():
    tracker = SessionBatchTracker()
    tracker.start("s1", ["a"])
    tracker.discard("s1")
    assert tracker.get("s1") is None
    tracker.mark_running("s1", "a")


def test_batch_log_files(tmp_path):
    log = logging.getLogger("studygraph.tests.batch_log")
    blog = BatchLog("0123456789abcdef", "s1", tmp_path)
    assert blog.enabled
    assert blog.dir.name.endswith("_01234567")
    assert blog.agents_dir.is_dir()

    ctx = blog.activate()
    try:
        log.warning("before phases")
        blog.start_phase(2)
        log.warning("inside linking")
        blog.end_phase()
        log.warning("after phases")

        other = threading.Thread(target=lambda: log.warning("unrelated context"))
        other.start()
        other.join()
    finally:
        blog.close()
        blog.deactivate(ctx)
    log.warning("after close")

    batch_text = (blog.dir / "batch.log").read_text(encoding="utf-8")
    phase_text = (blog.dir / "phase2-linking.log").read_text(encoding="utf-8")
    assert "before phases" in batch_text
    assert "inside linking" in batch_text
    assert "after phases" in batch_text
    assert "unrelated context" not in batch_text
    assert "after close" not in batch_text
    assert "inside linking" in phase_text
    assert "before phases" not in phase_text
    assert "after phases" not in phase_text


def test_batch_log_disabled_without_directory():
    blog = BatchLog("abc", "s1", None)
    assert not blog.enabled
    assert blog.agents_dir is None
    blog.start_phase(1)
    blog.close()
