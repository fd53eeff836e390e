# Angle Computer - Landmark Frame to Weighted Posture Sample (Pure Computation)
import math
import statistics
from typing import Iterable, Optional, Tuple

from posture_sync import config
from posture_sync import logger
from posture_sync.errors import InputRejected
from posture_sync.models import AngleSample, Landmark, LandmarkFrame

SHOULDER_NAMES = ("left_shoulder", "right_shoulder")
EAR_NAMES = ("left_ear", "right_ear")


def _visible(landmark: Optional[Landmark], min_confidence: float) -> bool:
    if landmark is None:
        return False
    if not (math.isfinite(landmark.x) and math.isfinite(landmark.y)):
        return False
    return float(landmark.visibility) >= min_confidence


def _midpoint(a: Landmark, b: Landmark) -> Tuple[float, float]:
    return (a.x + b.x) / 2.0, (a.y + b.y) / 2.0


def compute_head_angle(frame: LandmarkFrame, min_confidence: float = None) -> Optional[float]:
    """
    Angle between the shoulder-midpoint → ear vector and the upward vertical

    Args:
        frame: Landmark frame with shoulder and ear keypoints
        min_confidence: Minimum visibility per landmark (default from config)

    Returns:
        Angle in degrees (0 = ear straight above shoulders), or None when the
        required landmarks are missing or not confident enough
    """
    if min_confidence is None:
        min_confidence = config.CONFIDENCE_THRESHOLD

    left_sh, right_sh = (frame.get(name) for name in SHOULDER_NAMES)
    if not (_visible(left_sh, min_confidence) and _visible(right_sh, min_confidence)):
        return None

    ears = [frame.get(name) for name in EAR_NAMES]
    ears = [ear for ear in ears if _visible(ear, min_confidence)]
    if not ears:
        return None

    shoulder_x, shoulder_y = _midpoint(left_sh, right_sh)
    if len(ears) == 2:
        ear_x, ear_y = _midpoint(ears[0], ears[1])
    else:
        ear_x, ear_y = ears[0].x, ears[0].y

    dx = ear_x - shoulder_x
    dy = ear_y - shoulder_y
    if math.hypot(dx, dy) < 1e-9:
        return None

    # Image y grows downward, so "up" is -dy. abs(dx) makes facing direction irrelevant.
    return math.degrees(math.atan2(abs(dx), -dy))


def calibrate_neutral_angle(frames: Iterable[LandmarkFrame], min_frames: int = None,
                            min_confidence: float = None) -> Optional[float]:
    """
    Derive the user's neutral head angle from frames captured while sitting upright

    Args:
        frames: Calibration frames
        min_frames: Minimum number of usable frames (default from config)
        min_confidence: Minimum landmark visibility (default from config)

    Returns:
        Median angle in degrees, or None if too few frames were usable
    """
    if min_frames is None:
        min_frames = config.CALIBRATION_MIN_FRAMES

    angles = []
    for frame in frames:
        angle = compute_head_angle(frame, min_confidence)
        if angle is not None:
            angles.append(angle)

    if len(angles) < max(1, min_frames):
        logger.log_warning("Calibration Incomplete", {
            "usable_frames": len(angles),
            "required": min_frames
        })
        return None

    neutral = statistics.median(angles)
    logger.log_angle("Neutral Angle Calibrated", {
        "neutral_deg": f"{neutral:.1f}",
        "frames": len(angles)
    })
    return neutral


class AngleComputer:
    """
    Converts landmark frames into AngleSamples for one measuring session.

    The only state is the timestamp of the previous accepted frame, used to
    weight each sample by the time it represents.
    """

    def __init__(self, neutral_angle: float = None, threshold_degrees: float = None,
                 max_gap_seconds: float = None, default_frame_seconds: float = None,
                 min_confidence: float = None):
        self.neutral_angle = config.NEUTRAL_ANGLE_DEGREES if neutral_angle is None else float(neutral_angle)
        self.threshold_degrees = config.THRESHOLD_DEGREES if threshold_degrees is None else float(threshold_degrees)
        self.max_gap_seconds = config.MAX_SAMPLE_GAP_SECONDS if max_gap_seconds is None else float(max_gap_seconds)
        self.default_frame_seconds = (
            config.DEFAULT_FRAME_SECONDS if default_frame_seconds is None else float(default_frame_seconds)
        )
        self.min_confidence = config.CONFIDENCE_THRESHOLD if min_confidence is None else float(min_confidence)

        self._last_accepted_ms: Optional[int] = None
        self.accepted = 0
        self.rejected = 0
        self.session_breaks = 0

    def reset(self):
        """Start a new session: the next frame gets the default weight"""
        self._last_accepted_ms = None

    def process(self, frame: LandmarkFrame) -> Optional[AngleSample]:
        """
        Convert one frame, absorbing rejections

        Returns:
            AngleSample, or None when the frame was rejected
        """
        try:
            sample = self.compute(frame)
        except InputRejected as e:
            self.rejected += 1
            logger.log_debug("ANGLE", "Frame Rejected", {
                "timestamp_ms": getattr(frame, "timestamp_ms", None),
                "reason": e.message
            })
            return None

        self.accepted += 1
        return sample

    def compute(self, frame: LandmarkFrame) -> AngleSample:
        """
        Convert one frame or raise InputRejected

        Args:
            frame: Landmark frame

        Returns:
            AngleSample weighted by seconds since the previous accepted frame
        """
        try:
            timestamp_ms = int(frame.timestamp_ms)
        except (TypeError, ValueError, AttributeError):
            raise InputRejected("frame has no usable timestamp")

        if self._last_accepted_ms is not None and timestamp_ms <= self._last_accepted_ms:
            raise InputRejected(
                f"out-of-order or duplicate frame ({timestamp_ms} <= {self._last_accepted_ms})"
            )

        angle = compute_head_angle(frame, self.min_confidence)
        if angle is None:
            raise InputRejected("shoulder/ear landmarks missing or below confidence threshold")

        weight = self._weight_for(timestamp_ms)
        self._last_accepted_ms = timestamp_ms

        deviation = max(0.0, angle - self.neutral_angle)
        sample = AngleSample(
            timestamp_ms=timestamp_ms,
            angle_degrees=angle,
            deviation_degrees=deviation,
            is_forward_head_posture=deviation > self.threshold_degrees,
            weight=weight
        )

        logger.log_angle("Sample Computed", {
            "angle": f"{angle:.1f}°",
            "deviation": f"{deviation:.1f}°",
            "forward_head": sample.is_forward_head_posture,
            "weight_s": f"{weight:.3f}"
        })
        return sample

    def _weight_for(self, timestamp_ms: int) -> float:
        if self._last_accepted_ms is None:
            return self.default_frame_seconds

        gap_seconds = (timestamp_ms - self._last_accepted_ms) / 1000.0
        if gap_seconds > self.max_gap_seconds:
            # Session break: restart the baseline instead of crediting the pause
            self.session_breaks += 1
            logger.log_debug("ANGLE", "Session Break", {
                "gap_s": f"{gap_seconds:.1f}",
                "max_gap_s": self.max_gap_seconds
            })
            return self.default_frame_seconds
        return gap_seconds
