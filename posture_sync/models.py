"""
Data models for the posture measurement and sync pipeline.

- Landmark / LandmarkFrame: one camera tick of body keypoints (never persisted)
- AngleSample: classified, time-weighted posture sample
- DailyAggregate: weighted running summary for one (user, local date)
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple


class SyncState(str, Enum):
    PENDING = "Pending"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    FAILED = "Failed"


@dataclass(frozen=True)
class Landmark:
    """A single body keypoint in image-normalised coordinates (y grows downward)."""
    name: str
    x: float
    y: float
    z: Optional[float] = None
    visibility: float = 1.0


@dataclass(frozen=True)
class LandmarkFrame:
    """Keypoints for one camera frame plus its capture time."""
    timestamp_ms: int
    landmarks: Dict[str, Landmark] = field(default_factory=dict)

    def get(self, name: str) -> Optional[Landmark]:
        return self.landmarks.get(name)


@dataclass(frozen=True)
class AngleSample:
    """One accepted frame reduced to a posture measurement."""
    timestamp_ms: int
    angle_degrees: float
    deviation_degrees: float
    is_forward_head_posture: bool
    weight: float  # seconds this sample represents


AggregateKey = Tuple[str, str]  # (user_id, date_iso)


@dataclass
class DailyAggregate:
    """Weighted posture summary for one user and one local calendar date."""
    user_id: str
    date_iso: str
    sum_weighted: float = 0.0
    weight_seconds: float = 0.0
    count: int = 0
    bad_seconds: float = 0.0
    sync_state: SyncState = SyncState.PENDING
    last_local_update_at: Optional[float] = None
    last_synced_at: Optional[float] = None
    attempts: int = 0
    next_attempt_at: Optional[float] = None
    last_error: Optional[str] = None
    last_error_retryable: bool = True
    revision: int = 0  # in-memory only, bumped on every mutation

    @property
    def key(self) -> AggregateKey:
        return (self.user_id, self.date_iso)

    @property
    def weighted_average(self) -> Optional[float]:
        if self.weight_seconds <= 0:
            return None
        return self.sum_weighted / self.weight_seconds

    @property
    def needs_attention(self) -> bool:
        return self.sync_state == SyncState.FAILED and not self.last_error_retryable

    def check_invariants(self) -> None:
        """Raise ValueError if the aggregate is in an impossible state."""
        if self.count < 0:
            raise ValueError("count must be non-negative")
        if not (math.isfinite(self.sum_weighted) and math.isfinite(self.weight_seconds)):
            raise ValueError("sum_weighted and weight_seconds must be finite")
        if self.count > 0 and self.weight_seconds <= 0:
            raise ValueError("weight_seconds must be > 0 once a sample is folded")
        if not 0.0 <= self.bad_seconds <= self.weight_seconds * (1 + 1e-9) + 1e-9:
            raise ValueError("bad_seconds out of range")

    def snapshot(self) -> "DailyAggregate":
        return replace(self)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity resolved outside the sync logic."""
    user_id: str
    token: str
