"""Tests for ScanState: claim/release, stop and pause requests, resume slot, status."""

import pytest

from Market_Sweep.engine.scan_state import ScanState
from Market_Sweep.models.enums import JobType, RunStatus
from Market_Sweep.models.resume import DetectorScanResume, FetchDailyResume, ResumeSnapshot
from Market_Sweep.utils.exceptions import ResumeStateError


@pytest.fixture()
def state() -> ScanState:
    return ScanState(JobType.FETCH_DAILY)


class TestLifecycle:
    """Tests for claim, release, and the running/stopping flags."""

    def test_initially_idle(self, state: ScanState) -> None:
        """A new handle is idle with no outcome and no token."""
        assert state.status == RunStatus.IDLE
        assert not state.is_running
        assert not state.is_stopping
        assert state.last_outcome is None
        assert state.cancellation_token is None

    def test_claim_once(self, state: ScanState) -> None:
        """The first claim returns a token; a second claim returns None."""
        token = state.try_claim()

        assert token is not None
        assert state.is_running
        assert state.cancellation_token is token
        assert state.try_claim() is None

    def test_release_records_outcome(self, state: ScanState) -> None:
        """Release returns to idle and keeps the terminal status as last_outcome."""
        state.try_claim()
        state.release(RunStatus.COMPLETED)

        assert state.status == RunStatus.IDLE
        assert not state.is_running
        assert state.last_outcome == RunStatus.COMPLETED
        assert state.cancellation_token is None
        assert state.try_claim() is not None

    def test_disabled_until_next_claim(self, state: ScanState) -> None:
        """mark_disabled shows disabled, and a later claim clears it."""
        state.mark_disabled()
        assert state.status == RunStatus.DISABLED
        assert state.last_outcome == RunStatus.DISABLED

        state.try_claim()
        assert state.status == RunStatus.RUNNING

    def test_mark_disabled_ignored_while_running(self, state: ScanState) -> None:
        """A live run is never relabelled as disabled."""
        state.try_claim()
        state.mark_disabled()
        assert state.status == RunStatus.RUNNING

    def test_retry_phase_label(self, state: ScanState) -> None:
        """enter_retry_phase relabels a running handle, which stays running."""
        state.try_claim()
        state.enter_retry_phase()

        assert state.status == RunStatus.RUNNING_RETRY
        assert state.is_running


class TestStopAndPause:
    """Tests for the cooperative stop and pause commands."""

    def test_stop_while_idle_is_noop(self, state: ScanState) -> None:
        """Stopping an idle handle returns False and changes nothing."""
        assert state.request_stop() is False
        assert state.status == RunStatus.IDLE
        assert not state.should_stop()

    def test_stop_while_running(self, state: ScanState) -> None:
        """A stop sets stopping, trips the token, and is idempotent."""
        token = state.try_claim()
        assert token is not None

        assert state.request_stop() is True
        assert state.request_stop() is True
        assert state.status == RunStatus.STOPPING
        assert state.is_running
        assert state.is_stopping
        assert state.should_stop()
        assert token.is_set

    def test_stop_during_retry_keeps_stopping_label(self, state: ScanState) -> None:
        """Entering retry after a stop request does not hide the stop."""
        state.try_claim()
        state.request_stop()
        state.enter_retry_phase()

        assert state.status == RunStatus.STOPPING

    def test_pause_sets_both_flags(self, state: ScanState) -> None:
        """Pause is a stop flagged as a pause in the status report."""
        state.try_claim()

        assert state.request_pause() is True
        report = state.get_status()
        assert report.stop_requested
        assert report.pause_requested
        assert state.is_stopping

    def test_pause_while_idle_is_noop(self, state: ScanState) -> None:
        assert state.request_pause() is False
        assert not state.get_status().pause_requested

    def test_release_clears_flags(self, state: ScanState) -> None:
        """After release no stop or pause is pending and is_stopping is False."""
        state.try_claim()
        state.request_pause()
        state.release(RunStatus.STOPPED)

        report = state.get_status()
        assert not state.is_stopping
        assert not state.should_stop()
        assert not report.stop_requested
        assert not report.pause_requested

    def test_new_claim_gets_fresh_token(self, state: ScanState) -> None:
        """A stop from a previous run does not leak into the next one."""
        first = state.try_claim()
        state.request_stop()
        state.release(RunStatus.STOPPED)

        second = state.try_claim()
        assert second is not None
        assert second is not first
        assert not second.is_set
        assert not state.should_stop()


class TestResumeSlot:
    """Tests for set_resume_state normalization and can_resume."""

    def test_mapping_is_normalized(self, state: ScanState) -> None:
        """A raw mapping becomes this job's snapshot variant, cleaned up."""
        state.set_resume_state(
            {
                "as_of_date": "2025-01-15",
                "tickers": [" aapl ", "BRK/B", "msft"],
                "next_index": 99,
                "processed_tickers": "3",
                "lookback_days": 5,
            }
        )

        snapshot = state.resume_state
        assert isinstance(snapshot, FetchDailyResume)
        assert snapshot.tickers == ["aapl", "BRK/B", "msft"]
        assert snapshot.total_tickers == 3
        assert snapshot.next_index == 3
        assert snapshot.processed_tickers == 3
        assert snapshot.lookback_days >= 28
        assert not state.can_resume()

    def test_can_resume_with_remaining_work(self, state: ScanState) -> None:
        state.set_resume_state(
            {"as_of_date": "2025-01-15", "tickers": ["AAPL", "MSFT"], "next_index": 1}
        )
        assert state.can_resume()

    def test_can_resume_requires_date(self, state: ScanState) -> None:
        """An undated snapshot is stored but not resumable."""
        state.set_resume_state({"tickers": ["AAPL", "MSFT"], "next_index": 0})
        assert state.resume_state is not None
        assert not state.can_resume()

    def test_clear(self, state: ScanState) -> None:
        state.set_resume_state({"as_of_date": "2025-01-15", "tickers": ["AAPL"]})
        state.set_resume_state(None)
        assert state.resume_state is None
        assert not state.can_resume()

    def test_foreign_variant_is_rekeyed(self, state: ScanState) -> None:
        """A snapshot built for another job is converted to this job's shape."""
        foreign = DetectorScanResume(as_of_date="2025-01-15", tickers=["AAPL"])
        state.set_resume_state(foreign)

        assert isinstance(state.resume_state, FetchDailyResume)
        assert state.resume_state.tickers == ["AAPL"]

    def test_invalid_trigger_raises(self) -> None:
        """A payload that cannot be validated raises ResumeStateError."""
        state = ScanState(JobType.DETECTOR_SCAN)
        with pytest.raises(ResumeStateError):
            state.set_resume_state({"as_of_date": "2025-01-15", "trigger": "bogus"})

    def test_custom_validator(self) -> None:
        """A job-specific validator can veto an otherwise valid snapshot."""

        def _only_recent(snapshot: ResumeSnapshot) -> bool:
            return snapshot.can_resume() and snapshot.as_of_date >= "2025-06-01"

        state = ScanState(JobType.TABLE_BUILD, can_resume_validator=_only_recent)
        state.set_resume_state({"as_of_date": "2025-01-15", "tickers": ["AAPL"]})
        assert not state.can_resume()

        state.set_resume_state({"as_of_date": "2025-06-02", "tickers": ["AAPL"]})
        assert state.can_resume()


class TestStatusReport:
    """Tests for get_status and extra status fields."""

    def test_core_fields(self, state: ScanState) -> None:
        state.try_claim()
        state.update_progress(total=10, processed=4, errors=1)

        report = state.get_status()
        assert report.job_type == JobType.FETCH_DAILY
        assert report.status == RunStatus.RUNNING
        assert report.running
        assert report.total_tickers == 10
        assert report.processed_tickers == 4
        assert report.error_tickers == 1
        assert report.started_at is not None

    def test_extra_fields_merge_and_remove(self, state: ScanState) -> None:
        """Extra fields appear in the report; None removes them."""
        state.set_extra_status({"last_published_date": "2025-01-15", "note": "x"})
        dumped = state.get_status().model_dump()
        assert dumped["last_published_date"] == "2025-01-15"
        assert dumped["note"] == "x"

        state.set_extra_status({"note": None})
        dumped = state.get_status().model_dump()
        assert "note" not in dumped
        assert dumped["last_published_date"] == "2025-01-15"

    def test_reserved_fields_ignored(self, state: ScanState) -> None:
        """Extra fields cannot shadow core status fields."""
        state.set_extra_status({"running": True, "status": "completed"})

        report = state.get_status()
        assert report.running is False
        assert report.status == RunStatus.IDLE
