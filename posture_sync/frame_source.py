"""
Landmark Frame Sources

The pose model lives outside this package; the pipeline only consumes
LandmarkFrames in timestamp order. Two sources ship with it:

- JsonlFrameSource replays a captured log where each frame line looks like
  `FRAME_JSON: {"timestamp_ms": ..., "landmarks": {...}}`
- SyntheticFrameSource simulates a sitting user at a target FPS using a
  bounded random walk of the head angle (demos and tests)
"""
import asyncio
import json
import math
import random
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from posture_sync import config
from posture_sync import logger
from posture_sync.models import Landmark, LandmarkFrame

PREFIX = "FRAME_JSON:"

# Random walk configuration
HEAD_ANGLE_RANGE = (0.0, 35.0)  # Degrees from vertical
ANGLE_CHANGE_MAX = 2.0  # Max degrees change per frame
VISIBLE_RATIO = 0.95  # Share of frames where the pose model sees the ears
NECK_LENGTH = 0.15  # Shoulder midpoint to ear, normalised image units


class LandmarkFrameSource(ABC):
    """Push-style producer of LandmarkFrames with non-decreasing timestamps."""

    @abstractmethod
    def frames(self) -> AsyncIterator[LandmarkFrame]: ...

    def close(self):
        pass


def parse_landmarks(raw) -> Dict[str, Landmark]:
    """
    Accept either {"name": {"x":..,"y":..}} or [{"name":..,"x":..,"y":..}]
    """
    if isinstance(raw, dict):
        items = [dict(value, name=name) for name, value in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValueError("landmarks must be an object or a list")

    landmarks = {}
    for item in items:
        landmark = Landmark(
            name=str(item["name"]),
            x=float(item["x"]),
            y=float(item["y"]),
            z=float(item["z"]) if item.get("z") is not None else None,
            visibility=float(item.get("visibility", 1.0))
        )
        landmarks[landmark.name] = landmark
    return landmarks


def parse_frame_line(line: str) -> Optional[LandmarkFrame]:
    """
    Parse one log line

    Returns:
        LandmarkFrame, or None when the line is not a frame line

    Raises:
        ValueError: if the line is a frame line but its payload is malformed
    """
    line = line.strip()
    if not line.startswith(PREFIX):
        return None

    payload = json.loads(line[len(PREFIX):].strip())
    return LandmarkFrame(
        timestamp_ms=int(payload["timestamp_ms"]),
        landmarks=parse_landmarks(payload.get("landmarks", {}))
    )


def format_frame_line(frame: LandmarkFrame) -> str:
    """Inverse of parse_frame_line, used to record sessions"""
    landmarks = {
        name: {"x": lm.x, "y": lm.y, "z": lm.z, "visibility": lm.visibility}
        for name, lm in frame.landmarks.items()
    }
    return f"{PREFIX} {json.dumps({'timestamp_ms': frame.timestamp_ms, 'landmarks': landmarks})}"


class JsonlFrameSource(LandmarkFrameSource):
    """Replays frames recorded in a text log"""

    def __init__(self, path: str):
        self.path = path
        self.loaded = 0
        self.skipped = 0

    def read(self) -> List[LandmarkFrame]:
        frames = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                try:
                    frame = parse_frame_line(line)
                except (ValueError, KeyError, TypeError) as e:
                    self.skipped += 1
                    logger.log_warning("Malformed Frame Line", {"line": line_no, "error": str(e)})
                    continue
                if frame is not None:
                    frames.append(frame)

        self.loaded = len(frames)
        logger.log_frame("Frame Log Loaded", {
            "path": self.path,
            "frames": self.loaded,
            "skipped": self.skipped
        })
        return frames

    async def frames(self) -> AsyncIterator[LandmarkFrame]:
        for frame in self.read():
            yield frame
            await asyncio.sleep(0)


def frame_for_angle(timestamp_ms: int, angle_degrees: float, visibility: float = 0.95) -> LandmarkFrame:
    """
    Build a side-view frame whose ear sits `angle_degrees` from vertical
    above the shoulder midpoint
    """
    shoulder_y = 0.6
    left_sh = Landmark("left_shoulder", 0.46, shoulder_y, visibility=visibility)
    right_sh = Landmark("right_shoulder", 0.54, shoulder_y, visibility=visibility)

    radians = math.radians(angle_degrees)
    ear_x = 0.5 + NECK_LENGTH * math.sin(radians)
    ear_y = shoulder_y - NECK_LENGTH * math.cos(radians)
    left_ear = Landmark("left_ear", ear_x - 0.01, ear_y, visibility=visibility)
    right_ear = Landmark("right_ear", ear_x + 0.01, ear_y, visibility=visibility)

    return LandmarkFrame(
        timestamp_ms=int(timestamp_ms),
        landmarks={lm.name: lm for lm in (left_sh, right_sh, left_ear, right_ear)}
    )


class SyntheticFrameSource(LandmarkFrameSource):
    """
    Generates plausible frames for a sitting user

    Args:
        duration_seconds: Simulated session length
        fps: Target frame rate
        start_ms: Timestamp of the first frame
        gaps: (offset_seconds, length_seconds) pauses with no frames
        realtime: Sleep between frames instead of replaying as fast as possible
        seed: Random seed for reproducible sessions
    """

    def __init__(self, duration_seconds: float, fps: float = None, start_ms: int = 0,
                 gaps: Iterable[Tuple[float, float]] = (), realtime: bool = False, seed: int = None):
        self.duration_seconds = float(duration_seconds)
        self.fps = config.DEFAULT_FPS if fps is None else float(fps)
        self.start_ms = int(start_ms)
        self.gaps = sorted(gaps)
        self.realtime = realtime
        self.rng = random.Random(seed)
        low, high = HEAD_ANGLE_RANGE
        self.current_angle = (low + high) / 2
        self._stopped = False

    def next_angle(self) -> float:
        """Random walk: current ± random delta, clamped to a realistic range"""
        low, high = HEAD_ANGLE_RANGE
        delta = self.rng.uniform(-ANGLE_CHANGE_MAX, ANGLE_CHANGE_MAX)
        self.current_angle = max(low, min(high, self.current_angle + delta))
        return self.current_angle

    def _in_gap(self, offset_seconds: float) -> bool:
        return any(start <= offset_seconds < start + length for start, length in self.gaps)

    async def frames(self) -> AsyncIterator[LandmarkFrame]:
        frame_interval = 1.0 / self.fps
        total = int(self.duration_seconds * self.fps)
        logger.log_frame("Synthetic Session Started", {
            "duration_s": self.duration_seconds,
            "fps": self.fps,
            "gaps": len(self.gaps)
        })

        emitted = 0
        for i in range(total):
            if self._stopped:
                break
            offset = i * frame_interval
            if self._in_gap(offset):
                continue

            angle = self.next_angle()
            visible = self.rng.random() < VISIBLE_RATIO
            visibility = self.rng.uniform(0.85, 0.98) if visible else self.rng.uniform(0.0, 0.3)
            yield frame_for_angle(self.start_ms + round(offset * 1000), angle, visibility)
            emitted += 1

            await asyncio.sleep(frame_interval if self.realtime else 0)

        logger.log_frame("Synthetic Session Finished", {"frames": emitted})

    def close(self):
        self._stopped = True
