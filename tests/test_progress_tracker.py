import pytest

from vectorindex.models.job import IndexStage, IndexStatus
from vectorindex.services.progress_tracker import STAGE_WEIGHTS, ProgressTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return ProgressTracker("job-1", "f1", clock=clock)


class TestProgressTracker:

    def test_weights_sum_to_100(self):
        assert sum(STAGE_WEIGHTS.values()) == 100

    def test_percentage_within_first_stage(self, tracker):
        tracker.set_total(5)
        tracker.update(4)

        progress = tracker.get_progress()
        assert progress.current == 4
        assert progress.total == 5
        # Four fifths of the 5% initialization stage
        assert progress.percentage == 4

    def test_percentage_counts_completed_stages(self, tracker):
        tracker.set_stage(IndexStage.EMBEDDING_GENERATION, IndexStatus.EMBEDDING)
        tracker.set_total(4)
        tracker.update(2)

        # initialization 5 + extraction 15 + half of embedding 60
        assert tracker.get_progress().percentage == 50

    def test_set_stage_resets_items(self, tracker, clock):
        tracker.set_total(10)
        tracker.update(7)
        clock.now += 30

        tracker.set_stage(IndexStage.TEXT_EXTRACTION, IndexStatus.EXTRACTING)

        assert tracker.current_items == 0
        assert tracker.current_status == IndexStatus.EXTRACTING
        assert tracker.stage_start_time == clock.now

    def test_percentage_is_clamped(self, tracker):
        tracker.set_stage(IndexStage.UPLOAD, IndexStatus.UPLOADING)
        tracker.set_total(1)
        tracker.update(50)

        assert tracker.get_progress().percentage == 100

    def test_eta_extrapolates_elapsed_time(self, tracker, clock):
        tracker.set_stage(IndexStage.EMBEDDING_GENERATION, IndexStatus.EMBEDDING)
        tracker.set_total(4)
        clock.now += 60
        tracker.update(2)

        # 60s for 50% -> about 60s left
        assert tracker.get_progress().eta == 60

    def test_listeners_receive_updates(self, tracker):
        updates = []
        tracker.on_progress(updates.append)

        tracker.set_total(2)
        tracker.update(1, "one of two")

        assert updates[-1].message == "one of two"
        assert updates[-1].progress.current == 1
        assert updates[-1].stage == IndexStage.INITIALIZATION

    def test_failing_listener_is_isolated(self, tracker):
        received = []

        def broken(update):
            raise RuntimeError("listener exploded")

        tracker.on_progress(broken)
        tracker.on_progress(received.append)

        tracker.update(1)

        assert len(received) == 1

    def test_off_progress(self, tracker):
        received = []
        tracker.on_progress(received.append)
        tracker.off_progress(received.append)

        tracker.update(1)

        assert received == []

    def test_increment_and_set_status(self, tracker):
        updates = []
        tracker.on_progress(updates.append)
        tracker.set_total(10)

        tracker.increment()
        tracker.increment(3, "four done")
        tracker.set_status(IndexStatus.INITIALIZING, "warming up")

        assert tracker.current_items == 4
        assert updates[1].message == "four done"
        assert updates[-1].status == IndexStatus.INITIALIZING

    def test_complete_and_fail(self, tracker):
        tracker.set_total(3)
        tracker.complete()
        assert tracker.current_status == IndexStatus.COMPLETED
        assert tracker.current_items == 3

        tracker.fail("boom")
        assert tracker.current_status == IndexStatus.FAILED

    def test_get_stats(self, tracker, clock):
        clock.now += 12
        stats = tracker.get_stats()

        assert stats["job_id"] == "job-1"
        assert stats["total_elapsed_seconds"] == 12
        assert stats["current_stage"] == IndexStage.INITIALIZATION
