from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from chambers_app.importer.pipeline.diagnostics import DiagnosticBuffer, RowDiagnostic
from chambers_app.importer.pipeline.errors import ImportAccessDenied, ImportJobNotFound, InvalidTransitionError
from chambers_app.importer.pipeline.progress import ProgressTracker, percent_complete
from chambers_app.models import ImportJobStatus


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _user(user_id, *, elevated=False):
    return SimpleNamespace(id=user_id, is_authenticated=True, is_elevated=elevated)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persisted():
    return []


@pytest.fixture
def tracker(clock, persisted):
    tracker = ProgressTracker(persister=persisted.append, persist_interval=2.0, capacity=5, clock=clock)
    tracker.register(1, owner_id=10, filename="lex.csv", import_type="enquiries")
    return tracker


def test_percent_complete_rounds_half_up_and_caps():
    assert percent_complete(1, 3) == 33
    assert percent_complete(1, 2) == 50
    assert percent_complete(2, 3) == 67
    assert percent_complete(5, 4) == 100
    assert percent_complete(0, 0) == 0
    assert percent_complete(0, 0, ImportJobStatus.COMPLETED) == 100


def test_lifecycle_pending_processing_completed(tracker, persisted):
    assert tracker.snapshot(1).status is ImportJobStatus.PENDING

    tracker.start(1, total_rows=4)
    tracker.update_progress(1, processed_rows=4, error_rows=1)
    snapshot = tracker.complete(1, summary={"total_rows": 4})

    assert snapshot.status is ImportJobStatus.COMPLETED
    assert snapshot.completed_at is not None
    assert persisted[-1].status is ImportJobStatus.COMPLETED
    view = snapshot.as_view()
    assert view["progress"] == {"total": 4, "processed": 4, "errors": 1, "succeeded": 3, "percent": 100}
    assert view["timing"]["duration_seconds"] is not None


def test_pending_job_can_fail_directly(tracker):
    snapshot = tracker.fail(1, error_summary="Import cancelled before processing started.")
    assert snapshot.status is ImportJobStatus.FAILED


def test_terminal_jobs_reject_further_changes(tracker):
    tracker.start(1, total_rows=1)
    tracker.complete(1)

    with pytest.raises(InvalidTransitionError):
        tracker.fail(1, error_summary="late failure")
    with pytest.raises(InvalidTransitionError):
        tracker.update_progress(1, processed_rows=1, error_rows=0)
    with pytest.raises(InvalidTransitionError):
        tracker.start(1, total_rows=1)


def test_repeated_start_is_a_no_op(tracker):
    tracker.start(1, total_rows=3)
    tracker.start(1, total_rows=3)
    assert tracker.snapshot(1).status is ImportJobStatus.PROCESSING


def test_counters_are_monotonic_and_clamped(tracker):
    tracker.start(1, total_rows=10)
    tracker.update_progress(1, processed_rows=6, error_rows=2)
    tracker.update_progress(1, processed_rows=4, error_rows=1)

    snapshot = tracker.snapshot(1)
    assert snapshot.processed_rows == 6
    assert snapshot.error_rows == 2

    tracker.update_progress(1, processed_rows=50, error_rows=80)
    snapshot = tracker.snapshot(1)
    assert snapshot.processed_rows == 10
    assert snapshot.error_rows == 10


def test_persistence_is_throttled_but_terminal_always_persists(tracker, persisted, clock):
    tracker.start(1, total_rows=100)
    after_start = len(persisted)

    tracker.update_progress(1, processed_rows=10, error_rows=0)
    tracker.update_progress(1, processed_rows=20, error_rows=0)
    assert len(persisted) == after_start

    clock.advance(2.5)
    tracker.update_progress(1, processed_rows=30, error_rows=0)
    assert len(persisted) == after_start + 1
    assert persisted[-1].processed_rows == 30

    tracker.update_progress(1, processed_rows=100, error_rows=0)
    tracker.complete(1)
    assert persisted[-1].status is ImportJobStatus.COMPLETED
    assert persisted[-1].processed_rows == 100


def test_persisted_versions_never_go_backward(tracker, persisted, clock):
    tracker.start(1, total_rows=10)
    clock.advance(5)
    tracker.update_progress(1, processed_rows=5, error_rows=0)
    versions = [snapshot.version for snapshot in persisted]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)


def test_terminal_persist_failure_propagates(clock):
    def broken(snapshot):
        raise RuntimeError("store offline")

    tracker = ProgressTracker(persister=broken, clock=clock)
    tracker.register(2, owner_id=None, filename="lex.csv", import_type="enquiries")
    tracker.start(2, total_rows=1)
    with pytest.raises(RuntimeError):
        tracker.complete(2)


def test_diagnostics_are_bounded_and_counted(tracker):
    tracker.start(1, total_rows=20)
    tracker.add_diagnostics(1, [RowDiagnostic.error(row, "Value", "x", f"bad value {row}") for row in range(2, 14)])
    tracker.add_diagnostics(1, [RowDiagnostic.warning(3, "Fee Earner", "Mr X", "Name will be normalized to: X")])

    snapshot = tracker.snapshot(1)
    assert snapshot.error_count == 12
    assert len(snapshot.errors) == 5
    assert snapshot.errors[-1].row == 13
    assert snapshot.warning_count == 1

    view = snapshot.as_view()
    assert view["errors"]["count"] == 12
    assert view["errors"]["has_more"] is True
    assert len(view["errors"]["items"]) == 5


def test_view_truncates_messages_and_redacts_values(tracker):
    tracker.start(1, total_rows=1)
    tracker.add_diagnostics(1, [RowDiagnostic.error(2, "Client", "clerk@chambers.example", "x" * 500)])

    item = tracker.snapshot(1).as_view()["errors"]["items"][0]
    assert len(item["message"]) == 200
    assert item["message"].endswith("...")
    assert item["value_preview"] == "[email]"


def test_eta_only_after_first_batch(tracker):
    tracker.start(1, total_rows=10)
    tracker.update_progress(1, processed_rows=2, error_rows=0)
    assert tracker.snapshot(1).estimated_completion is None

    tracker.update_progress(1, processed_rows=4, error_rows=0, batch_completed=True)
    assert tracker.snapshot(1).estimated_completion is not None

    tracker.update_progress(1, processed_rows=10, error_rows=0, batch_completed=True)
    assert tracker.complete(1).estimated_completion is None


def test_get_progress_checks_ownership(tracker):
    assert tracker.get_progress(1, _user(10))["id"] == 1
    assert tracker.get_progress(1, _user(99, elevated=True))["id"] == 1
    with pytest.raises(ImportAccessDenied):
        tracker.get_progress(1, _user(11))


def test_unknown_job_falls_back_to_loader(clock):
    loaded = []

    def loader(job_id):
        loaded.append(job_id)
        return None

    tracker = ProgressTracker(loader=loader, clock=clock)
    with pytest.raises(ImportJobNotFound):
        tracker.snapshot_or_load(42)
    assert loaded == [42]


def test_sweep_stale_drops_quiet_trackers(tracker, clock):
    tracker.register(2, owner_id=10, filename="b.csv", import_type="enquiries")
    clock.advance(3600)
    tracker.update_progress(2, processed_rows=0, error_rows=0)
    clock.advance(3600)

    removed = tracker.sweep_stale(timedelta(minutes=90))

    assert removed == [1]
    assert not tracker.is_tracked(1)
    assert tracker.is_tracked(2)
    assert tracker.jobs_for_owner(10) == {2}
    assert len(tracker) == 1


def test_cancel_reason_surfaces_in_snapshot(tracker):
    tracker.start(1, total_rows=5)
    tracker.cancel_token(1).cancel("clerk request")
    snapshot = tracker.fail(1, error_summary="Import cancelled")
    assert snapshot.cancel_reason == "clerk request"


def test_diagnostic_buffer_keeps_most_recent():
    buffer = DiagnosticBuffer(capacity=2)
    buffer.extend(RowDiagnostic.error(row, None, None, "x") for row in (1, 2, 3))
    assert [item.row for item in buffer.items()] == [2, 3]
    assert buffer.total == 3
    assert buffer.has_more
    with pytest.raises(ValueError):
        DiagnosticBuffer(capacity=0)


def test_row_diagnostic_round_trips_through_dict():
    diagnostic = RowDiagnostic.warning(4, "Value", "y" * 150, "Unusually high value detected")
    restored = RowDiagnostic.from_dict(diagnostic.as_dict())
    assert restored == diagnostic
    assert len(restored.value) == 100


def test_stored_values_are_masked():
    contact = RowDiagnostic.error(2, "Client", "Call 07700900123 or clerk@chambers.example", "Client is required")
    card = RowDiagnostic.warning(3, "Notes", "paid with 4111 1111 1111 1111", "Unusually high value detected")

    assert contact.value == "Call [phone] or [email]"
    assert card.value == "paid with [card]"
    assert contact.as_dict()["value"] == "Call [phone] or [email]"


def test_pending_entry_defers_to_the_persisted_record(clock):
    worker = ProgressTracker(clock=clock)
    worker.register(1, owner_id=10, filename="lex.csv", import_type="enquiries")
    worker.start(1, total_rows=3)
    worker.update_progress(1, processed_rows=2, error_rows=1)

    web = ProgressTracker(loader=worker.snapshot, clock=clock)
    web.register(1, owner_id=10, filename="lex.csv", import_type="enquiries")

    view = web.get_progress(1, _user(10))
    assert view["status"] == "processing"
    assert view["progress"]["processed"] == 2
    assert view["progress"]["errors"] == 1


def test_running_entry_is_served_from_memory(clock):
    loaded = []
    tracker = ProgressTracker(loader=loaded.append, clock=clock)
    tracker.register(1, owner_id=10, filename="lex.csv", import_type="enquiries")
    tracker.start(1, total_rows=4)

    assert tracker.snapshot_or_load(1).status is ImportJobStatus.PROCESSING
    assert loaded == []


def test_stale_entries_are_swept_during_normal_use(clock):
    tracker = ProgressTracker(clock=clock, retention=timedelta(hours=1), sweep_interval=600)
    tracker.register(1, owner_id=10, filename="a.csv", import_type="enquiries")
    clock.advance(300)
    tracker.register(2, owner_id=10, filename="b.csv", import_type="enquiries")
    assert len(tracker) == 2

    clock.advance(2 * 3600)
    tracker.register(3, owner_id=10, filename="c.csv", import_type="enquiries")

    assert not tracker.is_tracked(1)
    assert not tracker.is_tracked(2)
    assert tracker.is_tracked(3)


def test_progress_reads_also_sweep(clock):
    tracker = ProgressTracker(clock=clock, retention=timedelta(hours=1), sweep_interval=600)
    tracker.register(1, owner_id=10, filename="a.csv", import_type="enquiries")
    tracker.register(2, owner_id=10, filename="b.csv", import_type="enquiries")
    clock.advance(2 * 3600)
    tracker.update_progress(2, processed_rows=0, error_rows=0)

    tracker.get_progress(2, _user(10))

    assert not tracker.is_tracked(1)
    assert tracker.is_tracked(2)


def test_token_picks_up_recorded_cancel_request(clock):
    requests = {}
    tracker = ProgressTracker(cancel_source=requests.get, clock=clock)
    token = tracker.register(1, owner_id=10, filename="lex.csv", import_type="enquiries")
    tracker.start(1, total_rows=5)

    assert token.check() is False
    requests[1] = "clerk request"

    assert token.check() is True
    assert tracker.snapshot(1).cancel_reason == "clerk request"
