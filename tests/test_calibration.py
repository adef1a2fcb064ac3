from __future__ import annotations

import pytest

from headpose_tracker.models import CalibrationProfile, LandmarkSet
from headpose_tracker.storage import InMemoryProfileStore
from headpose_tracker.tracking.calibration import CalibrationService, CameraCalibrator


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _eye_landmarks(distance_px: float, *, size: int = 1000) -> LandmarkSet:
    """Eye corners placed so the eye centres are ``distance_px`` apart on a square image."""
    rows = [None] * 478
    centre = size / 2.0
    right_x = (centre - distance_px / 2.0) / size
    left_x = (centre + distance_px / 2.0) / size
    for index in (33, 133):
        rows[index] = [right_x, 0.5, 0.0, 1.0]
    for index in (263, 362):
        rows[index] = [left_x, 0.5, 0.0, 1.0]
    return LandmarkSet.from_rows(rows, confidence=0.9)


def test_estimate_rejects_implausible_eye_distances():
    calibrator = CameraCalibrator()
    assert calibrator.estimate_focal_length(_eye_landmarks(5), 1000, 1000) is None
    assert calibrator.estimate_focal_length(_eye_landmarks(5000), 1000, 1000) is None


def test_estimate_uses_similar_triangles():
    calibrator = CameraCalibrator()
    focal = calibrator.estimate_focal_length(_eye_landmarks(100), 1000, 1000)
    assert focal == pytest.approx(100 * 600 / 63)


def test_estimate_needs_eye_corners():
    calibrator = CameraCalibrator()
    assert calibrator.estimate_focal_length(LandmarkSet.empty(), 1000, 1000) is None
    assert calibrator.estimate_focal_length(LandmarkSet.from_rows([[0.5, 0.5]] * 100), 1000, 1000) is None


def test_calibration_needs_minimum_samples():
    clock = FakeClock()
    calibrator = CameraCalibrator(clock=clock)
    for _ in range(7):
        assert calibrator.add_sample(1000.0)
    assert calibrator.calibrated_focal_length() is None
    assert calibrator.add_sample(1000.0)
    assert calibrator.calibrated_focal_length() == pytest.approx(1000.0)
    assert calibrator.is_stable()


def test_calibration_rejects_high_variance():
    clock = FakeClock()
    calibrator = CameraCalibrator(clock=clock)
    for index in range(10):
        calibrator.add_sample(600.0 if index % 2 else 1400.0)
    assert calibrator.calibrated_focal_length() is None
    assert calibrator.focal_length is None
    assert not calibrator.is_stable()
    assert calibrator.status()["calibrated"] is False


def test_add_sample_rejects_out_of_range_values():
    calibrator = CameraCalibrator()
    assert not calibrator.add_sample(100.0)
    assert not calibrator.add_sample(float("nan"))
    assert calibrator.sample_count == 0


def test_sample_buffer_is_bounded():
    calibrator = CameraCalibrator(clock=FakeClock())
    for _ in range(40):
        calibrator.add_sample(1000.0)
    assert calibrator.sample_count == 15


def test_recent_samples_dominate_weighted_mean():
    clock = FakeClock()
    calibrator = CameraCalibrator(clock=clock)
    for _ in range(7):
        calibrator.add_sample(1000.0)
    clock.now = 35.0  # ten half-lives later
    calibrator.add_sample(1100.0)
    assert calibrator.calibrated_focal_length() == pytest.approx(1100.0, abs=2.0)


def test_stability_expires_after_window():
    clock = FakeClock()
    calibrator = CameraCalibrator(clock=clock)
    for _ in range(8):
        calibrator.add_sample(1200.0)
    assert calibrator.calibrated_focal_length() is not None
    assert calibrator.is_stable()
    clock.now = 11.0
    assert not calibrator.is_stable()
    calibrator.reset()
    assert calibrator.sample_count == 0
    assert calibrator.focal_length is None


def test_service_loads_stored_profile():
    store = InMemoryProfileStore(clock=lambda: 1_000.0)
    store.save(CalibrationProfile(device_key="cam_1000x1000", focal_length=1111.0, sample_count=12, timestamp=900.0))
    service = CalibrationService(1000, 1000, store=store, device_id="cam", clock=FakeClock())
    assert service.load_profile()
    assert service.intrinsics.focal_length == pytest.approx(1111.0)
    assert service.is_trusted
    assert service.confidence_factor == 1.0


def test_service_calibrates_and_persists_profile():
    store = InMemoryProfileStore(clock=lambda: 50.0)
    clock = FakeClock()
    service = CalibrationService(1000, 1000, store=store, device_id="cam", clock=clock, wall_clock=lambda: 42.0)
    assert not service.load_profile()
    assert service.confidence_factor == pytest.approx(0.8)

    landmarks = _eye_landmarks(100)
    for frame in range(8):
        clock.now = frame / 30.0
        intrinsics = service.observe(landmarks)

    assert intrinsics.focal_length == pytest.approx(100 * 600 / 63)
    saved = store.load("cam_1000x1000")
    assert saved is not None
    assert saved.focal_length == pytest.approx(100 * 600 / 63)
    assert saved.timestamp == 42.0
    assert service.is_trusted


def test_service_ignores_implausible_stored_profile():
    store = InMemoryProfileStore(clock=lambda: 0.0)
    store._write({"cam_1000x1000": {"device_key": "cam_1000x1000", "focal_length": 90000.0, "timestamp": 0.0}})
    service = CalibrationService(1000, 1000, store=store, device_id="cam")
    assert not service.load_profile()
    assert service.intrinsics.focal_length == 1000.0
    assert store.list_profiles() == []


def test_service_resize_restarts_calibration():
    clock = FakeClock()
    service = CalibrationService(1000, 1000, clock=clock)
    for frame in range(8):
        clock.now = frame / 30.0
        service.observe(_eye_landmarks(100))
    assert service.calibrator.focal_length is not None
    intrinsics = service.resize(1280, 720)
    assert intrinsics.focal_length == 1280.0
    assert intrinsics.principal_x == 640.0
    assert service.calibrator.sample_count == 0
    assert service.device_key == "default_1280x720"
