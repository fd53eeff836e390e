"""
Tests for weighted daily aggregation, rollover and dirty tracking
"""
from datetime import datetime, timezone

import pytest

from posture_sync.aggregator import LocalAggregator, posture_status, resolve_date_iso, summarize
from posture_sync.models import AngleSample, DailyAggregate, SyncState


def ms(year, month, day, hour=12, minute=0, second=0):
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp() * 1000)


def sample(ts_ms, deviation, weight, threshold=15.0):
    return AngleSample(
        timestamp_ms=ts_ms,
        angle_degrees=deviation,
        deviation_degrees=deviation,
        is_forward_head_posture=deviation > threshold,
        weight=weight
    )


class FakeClock:
    def __init__(self, t=1_000.0):
        self.t = t

    def __call__(self):
        return self.t


def make_aggregator(clock=None, **kwargs):
    params = dict(tz_name="UTC", checkpoint_every=30, checkpoint_interval=10.0, clock=clock or FakeClock())
    params.update(kwargs)
    return LocalAggregator("user-1", **params)


def test_weighted_sum_and_weight_for_three_samples():
    agg = make_aggregator()
    agg.fold(sample(ms(2024, 3, 5, 9), 0.2, 10.0))
    agg.fold(sample(ms(2024, 3, 5, 10), 0.1, 5.0))
    day = agg.fold(sample(ms(2024, 3, 5, 11), 0.3, 20.0))

    assert day.sum_weighted == pytest.approx(8.5)
    assert day.weight_seconds == pytest.approx(35.0)
    assert day.count == 3
    assert day.weighted_average == pytest.approx(8.5 / 35.0)
    assert day.weighted_average == pytest.approx(0.243, abs=1e-3)
    day.check_invariants()


def test_count_and_weight_equal_folded_samples():
    agg = make_aggregator()
    weights = [1 / 15, 0.05, 0.1, 0.07, 0.2]
    for i, w in enumerate(weights):
        agg.fold(sample(ms(2024, 3, 5, 9, 0, i), 20.0 if i % 2 else 5.0, w))

    day = agg.get("2024-03-05")
    assert day.count == len(weights)
    assert day.weight_seconds == pytest.approx(sum(weights))
    assert day.bad_seconds == pytest.approx(0.05 + 0.07)


def test_empty_aggregate_is_valid():
    empty = DailyAggregate(user_id="user-1", date_iso="2024-03-05")
    empty.check_invariants()
    assert empty.weighted_average is None
    assert summarize(empty)["status"] == "No data"


@pytest.mark.parametrize("values", [
    dict(count=-1),
    dict(count=2, weight_seconds=0.0),
    dict(count=1, weight_seconds=1.0, sum_weighted=float("nan")),
    dict(count=1, weight_seconds=1.0, bad_seconds=2.0),
])
def test_impossible_aggregate_raises_value_error(values):
    with pytest.raises(ValueError):
        DailyAggregate(user_id="user-1", date_iso="2024-03-05", **values).check_invariants()


def test_first_fold_creates_pending_aggregate():
    agg = make_aggregator()
    day = agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    assert day.sync_state == SyncState.PENDING
    assert day.last_local_update_at == 1_000.0
    assert agg.has_dirty


def test_fold_into_synced_day_reopens_it():
    agg = make_aggregator()
    day = agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    day.sync_state = SyncState.SYNCED

    agg.fold(sample(ms(2024, 3, 5, 13), 3.0, 0.1))
    assert day.sync_state == SyncState.PENDING


def test_fold_while_syncing_keeps_syncing_but_bumps_revision():
    agg = make_aggregator()
    day = agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    day.sync_state = SyncState.SYNCING
    before = day.revision

    agg.fold(sample(ms(2024, 3, 5, 13), 3.0, 0.1))
    assert day.sync_state == SyncState.SYNCING
    assert day.revision == before + 1


def test_date_resolved_in_user_timezone():
    late_evening_utc = ms(2024, 3, 5, 20, 0)
    assert resolve_date_iso(late_evening_utc, "UTC") == "2024-03-05"
    assert resolve_date_iso(late_evening_utc, "Asia/Kolkata") == "2024-03-06"
    assert resolve_date_iso(ms(2024, 3, 5, 2), "America/New_York") == "2024-03-04"


def test_rollover_seals_previous_day():
    agg = make_aggregator()
    agg.fold(sample(ms(2024, 3, 5, 23, 59), 3.0, 0.1))
    assert agg.take_sealed() == []

    agg.fold(sample(ms(2024, 3, 6, 0, 1), 3.0, 0.1))
    assert agg.take_sealed() == [("user-1", "2024-03-05")]
    assert agg.take_sealed() == []
    assert agg.live_date == "2024-03-06"


def test_tick_detects_rollover_without_frames():
    clock = FakeClock(ms(2024, 3, 5, 23) / 1000.0)
    agg = make_aggregator(clock=clock)
    agg.fold(sample(ms(2024, 3, 5, 22), 3.0, 0.1))

    clock.t = ms(2024, 3, 6, 0, 5) / 1000.0
    agg.tick()
    assert agg.take_sealed() == [("user-1", "2024-03-05")]


def test_backdated_sample_still_counts_for_its_own_day():
    agg = make_aggregator()
    agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    agg.fold(sample(ms(2024, 3, 6), 3.0, 0.1))
    agg.fold(sample(ms(2024, 3, 5, 18), 3.0, 0.1))

    assert agg.get("2024-03-05").count == 2
    assert agg.live_date == "2024-03-06"


def test_mark_clean_keeps_key_dirty_after_newer_fold():
    agg = make_aggregator()
    agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    [(snapshot, revision)] = agg.dirty()

    agg.fold(sample(ms(2024, 3, 5, 13), 3.0, 0.1))
    agg.mark_clean(snapshot.key, revision)
    assert agg.has_dirty

    [(_, latest)] = agg.dirty()
    agg.mark_clean(snapshot.key, latest)
    assert not agg.has_dirty


def test_snapshot_is_independent_of_later_folds():
    agg = make_aggregator()
    day = agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    snap = day.snapshot()
    agg.fold(sample(ms(2024, 3, 5, 13), 3.0, 0.1))
    assert snap.count == 1
    assert day.count == 2


def test_checkpoint_due_by_fold_count_and_interval():
    clock = FakeClock(0.0)
    agg = make_aggregator(clock=clock, checkpoint_every=3, checkpoint_interval=10.0)
    agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    assert not agg.checkpoint_due()

    clock.t = 11.0
    assert agg.checkpoint_due()

    agg.note_checkpoint()
    for minute in (1, 2, 3):
        agg.fold(sample(ms(2024, 3, 5, 12, minute), 3.0, 0.1))
    assert agg.checkpoint_due()


def test_adopt_keeps_existing_owner():
    agg = make_aggregator()
    live = agg.fold(sample(ms(2024, 3, 5), 3.0, 0.1))
    loaded = DailyAggregate(user_id="user-1", date_iso="2024-03-05", count=99, weight_seconds=9.0)
    assert agg.adopt(loaded) is live


def test_summary_bands():
    assert posture_status(5.0) == "Good posture"
    assert posture_status(12.0) == "Moderate risk"
    assert posture_status(25.0) == "High risk"

    day = DailyAggregate(user_id="u", date_iso="2024-03-05", sum_weighted=600.0,
                         weight_seconds=60.0, count=900, bad_seconds=15.0)
    report = summarize(day)
    assert report["average_deviation_deg"] == pytest.approx(10.0)
    assert report["forward_head_percent"] == pytest.approx(25.0)
    assert report["status"] == "Moderate risk"
