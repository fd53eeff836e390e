"""
Tests for the angle computer: geometry, classification, weighting and
rejection of out-of-order frames
"""
import pytest

from posture_sync.angle_computer import AngleComputer, calibrate_neutral_angle, compute_head_angle
from posture_sync.errors import InputRejected
from posture_sync.frame_source import frame_for_angle
from posture_sync.models import Landmark, LandmarkFrame


def make_computer(**overrides):
    params = dict(neutral_angle=0.0, threshold_degrees=15.0, max_gap_seconds=5.0,
                  default_frame_seconds=1 / 15, min_confidence=0.5)
    params.update(overrides)
    return AngleComputer(**params)


def test_upright_head_is_zero_degrees():
    assert compute_head_angle(frame_for_angle(0, 0.0)) == pytest.approx(0.0, abs=1e-6)


def test_forward_head_angle_matches_geometry():
    assert compute_head_angle(frame_for_angle(0, 30.0)) == pytest.approx(30.0, abs=1e-6)


def test_facing_direction_does_not_change_angle():
    left = frame_for_angle(0, 20.0)
    # Mirror horizontally around x = 0.5
    mirrored = LandmarkFrame(0, {
        name: Landmark(name, 1.0 - lm.x, lm.y, visibility=lm.visibility)
        for name, lm in left.landmarks.items()
    })
    assert compute_head_angle(mirrored) == pytest.approx(compute_head_angle(left))


def test_single_visible_ear_is_enough():
    frame = frame_for_angle(0, 25.0)
    landmarks = dict(frame.landmarks)
    landmarks["right_ear"] = Landmark("right_ear", 0.0, 0.0, visibility=0.1)
    angle = compute_head_angle(LandmarkFrame(0, landmarks))
    assert angle is not None
    assert angle == pytest.approx(25.0, abs=5.0)


def test_missing_shoulder_returns_none():
    frame = frame_for_angle(0, 10.0)
    landmarks = {k: v for k, v in frame.landmarks.items() if k != "left_shoulder"}
    assert compute_head_angle(LandmarkFrame(0, landmarks)) is None


def test_low_confidence_frame_is_rejected_and_absorbed():
    computer = make_computer()
    assert computer.process(frame_for_angle(1000, 10.0, visibility=0.2)) is None
    assert computer.rejected == 1
    assert computer.accepted == 0


def test_classification_uses_deviation_from_neutral():
    computer = make_computer(neutral_angle=10.0, threshold_degrees=15.0)
    upright = computer.compute(frame_for_angle(1000, 20.0))
    slumped = computer.compute(frame_for_angle(1100, 30.0))

    assert upright.deviation_degrees == pytest.approx(10.0)
    assert not upright.is_forward_head_posture
    assert slumped.deviation_degrees == pytest.approx(20.0)
    assert slumped.is_forward_head_posture


def test_deviation_never_negative():
    computer = make_computer(neutral_angle=20.0)
    sample = computer.compute(frame_for_angle(1000, 5.0))
    assert sample.deviation_degrees == 0.0


def test_weight_is_elapsed_time_since_previous_frame():
    computer = make_computer()
    first = computer.compute(frame_for_angle(10_000, 5.0))
    second = computer.compute(frame_for_angle(10_100, 5.0))
    third = computer.compute(frame_for_angle(10_300, 5.0))

    assert first.weight == pytest.approx(1 / 15)
    assert second.weight == pytest.approx(0.1)
    assert third.weight == pytest.approx(0.2)


def test_gap_longer_than_max_starts_new_session():
    computer = make_computer(max_gap_seconds=5.0)
    computer.compute(frame_for_angle(0, 5.0))
    after_pause = computer.compute(frame_for_angle(60_000, 5.0))

    assert after_pause.weight == pytest.approx(1 / 15)
    assert computer.session_breaks == 1


def test_out_of_order_and_duplicate_frames_are_rejected():
    computer = make_computer()
    assert computer.process(frame_for_angle(2000, 5.0)) is not None

    with pytest.raises(InputRejected):
        computer.compute(frame_for_angle(2000, 5.0))
    assert computer.process(frame_for_angle(1500, 5.0)) is None
    assert computer.rejected == 1

    # Baseline unchanged by the rejected frames
    nxt = computer.compute(frame_for_angle(2500, 5.0))
    assert nxt.weight == pytest.approx(0.5)


def test_reset_gives_next_frame_default_weight():
    computer = make_computer()
    computer.compute(frame_for_angle(0, 5.0))
    computer.reset()
    sample = computer.compute(frame_for_angle(100, 5.0))
    assert sample.weight == pytest.approx(1 / 15)


def test_calibration_returns_median_angle():
    frames = [frame_for_angle(i * 100, angle) for i, angle in enumerate([4.0, 6.0, 5.0, 50.0, 5.5])]
    assert calibrate_neutral_angle(frames, min_frames=5) == pytest.approx(5.5)


def test_calibration_needs_enough_frames():
    frames = [frame_for_angle(0, 5.0), frame_for_angle(100, 5.0, visibility=0.1)]
    assert calibrate_neutral_angle(frames, min_frames=2) is None
