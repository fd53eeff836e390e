# Local Aggregator - Weighted Daily Posture Accumulation (In-Memory)
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from posture_sync import config
from posture_sync import logger
from posture_sync.models import AggregateKey, AngleSample, DailyAggregate, SyncState


def resolve_date_iso(timestamp_ms: float, tz_name: str = None) -> str:
    """
    Calendar date of a timestamp in the user's local timezone

    Args:
        timestamp_ms: Unix timestamp in milliseconds
        tz_name: IANA timezone name (default from config)

    Returns:
        Date as YYYY-MM-DD
    """
    tz = ZoneInfo(tz_name or config.USER_TIMEZONE)
    local = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return local.date().isoformat()


def contribution(sample: AngleSample) -> float:
    """Amount a sample adds to sum_weighted: deviation in degrees × seconds represented"""
    return sample.deviation_degrees * sample.weight


def posture_status(average_deviation: float) -> str:
    """Convert a weighted average deviation to status text"""
    for level, (low, high) in config.STATUS_BANDS.items():
        if low <= average_deviation < high:
            return config.STATUS_LABELS[level]
    return config.STATUS_LABELS["bad"]


def summarize(aggregate: DailyAggregate) -> Dict:
    """
    Human-readable daily report for one aggregate

    Args:
        aggregate: Daily aggregate

    Returns:
        Dict with weighted average deviation, forward-head share and status
    """
    average = aggregate.weighted_average
    if average is None:
        return {
            "date": aggregate.date_iso,
            "status": "No data",
            "average_deviation_deg": None,
            "forward_head_percent": None,
            "measured_minutes": 0.0,
            "samples": aggregate.count,
            "sync_state": aggregate.sync_state.value
        }

    return {
        "date": aggregate.date_iso,
        "status": posture_status(average),
        "average_deviation_deg": round(average, 3),
        "forward_head_percent": round(100.0 * aggregate.bad_seconds / aggregate.weight_seconds, 1),
        "measured_minutes": round(aggregate.weight_seconds / 60.0, 2),
        "samples": aggregate.count,
        "sync_state": aggregate.sync_state.value
    }


class LocalAggregator:
    """
    Owns the in-memory DailyAggregate of every (user, date) key and folds
    samples into them. Folding is synchronous and never fails.

    Rollover is detected lazily: the first fold (or tick) that resolves to a
    later date seals the previous live day and queues it for the pipeline.
    """

    def __init__(self, user_id: str, tz_name: str = None, checkpoint_every: int = None,
                 checkpoint_interval: float = None, clock: Callable[[], float] = time.time):
        self.user_id = str(user_id)
        self.tz_name = tz_name or config.USER_TIMEZONE
        self.checkpoint_every = config.CHECKPOINT_EVERY_N_FOLDS if checkpoint_every is None else int(checkpoint_every)
        self.checkpoint_interval = (
            config.CHECKPOINT_INTERVAL_SECONDS if checkpoint_interval is None else float(checkpoint_interval)
        )
        self.clock = clock

        self._aggregates: Dict[AggregateKey, DailyAggregate] = {}
        self._dirty: Dict[AggregateKey, int] = {}  # key -> revision when marked
        self._sealed_queue: List[AggregateKey] = []
        self.live_date: Optional[str] = None

        self._folds_since_checkpoint = 0
        self._last_checkpoint_at = clock()

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def fold(self, sample: AngleSample) -> DailyAggregate:
        """
        Fold one sample into the aggregate of its local date

        Args:
            sample: Accepted AngleSample

        Returns:
            The (mutated) owner aggregate
        """
        date_iso = resolve_date_iso(sample.timestamp_ms, self.tz_name)
        self._observe_date(date_iso)

        key = (self.user_id, date_iso)
        aggregate = self._aggregates.get(key)
        if aggregate is None:
            aggregate = DailyAggregate(user_id=self.user_id, date_iso=date_iso)
            self._aggregates[key] = aggregate
            logger.log_agg("New Daily Aggregate", {"user_id": self.user_id, "date": date_iso})

        aggregate.sum_weighted += contribution(sample)
        aggregate.weight_seconds += sample.weight
        aggregate.count += 1
        if sample.is_forward_head_posture:
            aggregate.bad_seconds += sample.weight
        aggregate.last_local_update_at = self.clock()
        aggregate.revision += 1

        if aggregate.sync_state == SyncState.SYNCED:
            # New data for an already uploaded day: send it again
            aggregate.sync_state = SyncState.PENDING
            aggregate.attempts = 0
            aggregate.next_attempt_at = None
            logger.log_agg("Synced Day Reopened", {"date": date_iso, "count": aggregate.count})

        self._dirty[key] = aggregate.revision
        self._folds_since_checkpoint += 1
        return aggregate

    def tick(self, now: float = None):
        """Periodic rollover check, for when no frames are arriving"""
        if now is None:
            now = self.clock()
        self._observe_date(resolve_date_iso(now * 1000.0, self.tz_name))

    def _observe_date(self, date_iso: str):
        if self.live_date is None:
            self.live_date = date_iso
            return
        if date_iso > self.live_date:
            self._seal(self.live_date)
            self.live_date = date_iso
        elif date_iso < self.live_date:
            logger.log_warning("Backdated Sample", {"date": date_iso, "live_date": self.live_date})

    def _seal(self, date_iso: str):
        key = (self.user_id, date_iso)
        if key in self._aggregates:
            self._sealed_queue.append(key)
            aggregate = self._aggregates[key]
            logger.log_agg("Day Sealed", {
                "date": date_iso,
                "count": aggregate.count,
                "weight_s": f"{aggregate.weight_seconds:.1f}"
            })

    def take_sealed(self) -> List[AggregateKey]:
        """Keys sealed by rollover since the last call"""
        sealed, self._sealed_queue = self._sealed_queue, []
        return sealed

    # ------------------------------------------------------------------
    # Ownership / lookup
    # ------------------------------------------------------------------

    def get(self, date_iso: str) -> Optional[DailyAggregate]:
        return self._aggregates.get((self.user_id, date_iso))

    def get_key(self, key: AggregateKey) -> Optional[DailyAggregate]:
        return self._aggregates.get(key)

    def adopt(self, aggregate: DailyAggregate) -> DailyAggregate:
        """
        Register an aggregate loaded from the store

        Returns:
            The single in-memory owner for that key (an existing one wins)
        """
        existing = self._aggregates.get(aggregate.key)
        if existing is not None:
            return existing
        self._aggregates[aggregate.key] = aggregate
        return aggregate

    def aggregates(self) -> List[DailyAggregate]:
        return sorted(self._aggregates.values(), key=lambda a: a.date_iso)

    # ------------------------------------------------------------------
    # Checkpoint cadence
    # ------------------------------------------------------------------

    def checkpoint_due(self, now: float = None) -> bool:
        if not self._dirty:
            return False
        if self._folds_since_checkpoint >= self.checkpoint_every:
            return True
        if now is None:
            now = self.clock()
        return now - self._last_checkpoint_at >= self.checkpoint_interval

    def dirty(self) -> List[Tuple[DailyAggregate, int]]:
        """Snapshots of modified aggregates with the revision they were taken at"""
        out = []
        for key in list(self._dirty.keys()):
            aggregate = self._aggregates.get(key)
            if aggregate is None:
                self._dirty.pop(key, None)
                continue
            out.append((aggregate.snapshot(), aggregate.revision))
        return out

    def mark_dirty(self, key: AggregateKey):
        aggregate = self._aggregates.get(key)
        if aggregate is not None:
            self._dirty[key] = aggregate.revision

    def mark_clean(self, key: AggregateKey, revision: int):
        # Keep the key dirty if it was folded again after the snapshot
        aggregate = self._aggregates.get(key)
        if aggregate is not None and aggregate.revision == revision:
            self._dirty.pop(key, None)

    def note_checkpoint(self, now: float = None):
        self._folds_since_checkpoint = 0
        self._last_checkpoint_at = self.clock() if now is None else now

    @property
    def has_dirty(self) -> bool:
        return bool(self._dirty)
