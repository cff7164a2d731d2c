from __future__ import annotations

import math

import pytest

from ble_fusion_locator.exceptions import SensorUnavailableError
from ble_fusion_locator.models import MotionEvent, MotionEventKind
from ble_fusion_locator.pdr import ReplayMotionSource, StepDetector, StepIntegrator


def test_no_displacement_without_new_steps() -> None:
    integrator = StepIntegrator()
    integrator.on_heading(90.0)
    integrator.on_steps(3)
    assert integrator.compute_step_delta(3) is None
    assert integrator.compute_step_delta(5) is None


def test_delta_follows_heading_and_stride() -> None:
    integrator = StepIntegrator(stride_length=0.7)
    integrator.on_heading(0.0)
    integrator.on_steps(5)
    delta = integrator.compute_step_delta(0)
    assert delta is not None
    assert delta.dx == pytest.approx(3.5)
    assert delta.dy == pytest.approx(0.0, abs=1e-12)


@pytest.mark.parametrize("heading", [0.0, 30.0, 90.0, 135.0, 270.0, 359.0])
def test_delta_direction_matches_calibrated_heading(heading: float) -> None:
    integrator = StepIntegrator(stride_length=1.0)
    integrator.on_heading(heading + 20.0)
    integrator.calibrate()
    integrator.on_heading(heading + 20.0 + heading)
    integrator.on_steps(2)
    delta = integrator.compute_step_delta(0)
    assert delta is not None
    theta = math.radians(heading)
    assert delta.dx == pytest.approx(2.0 * math.cos(theta))
    assert delta.dy == pytest.approx(2.0 * math.sin(theta))
    assert delta.length == pytest.approx(2.0)


def test_calibrate_zeroes_current_heading() -> None:
    integrator = StepIntegrator()
    integrator.on_heading(123.0)
    assert integrator.calibrate() == 123.0
    assert integrator.calibrated_heading == pytest.approx(0.0)


def test_missing_heading_raises_only_when_steps_pending() -> None:
    integrator = StepIntegrator()
    assert integrator.compute_step_delta(0) is None
    integrator.on_steps(1)
    with pytest.raises(SensorUnavailableError):
        integrator.compute_step_delta(0)


def test_step_count_is_monotonic() -> None:
    integrator = StepIntegrator()
    integrator.on_step_count(10)
    integrator.on_step_count(7)
    integrator.on_steps(-2)
    assert integrator.step_count == 10


def test_dynamic_stride_from_measured_distance() -> None:
    integrator = StepIntegrator(stride_length=0.7, dynamic_stride=True)
    integrator.on_heading(0.0)
    integrator.on_steps(4, distance=3.2)
    assert integrator.stride_length == pytest.approx(0.8)

    fixed = StepIntegrator(stride_length=0.7, dynamic_stride=False)
    fixed.on_steps(4, distance=3.2)
    assert fixed.stride_length == pytest.approx(0.7)


def test_until_snapshot_limits_delta() -> None:
    integrator = StepIntegrator(stride_length=1.0)
    integrator.on_heading(0.0)
    integrator.on_steps(5)
    delta = integrator.compute_step_delta(0, until_step_count=2)
    assert delta is not None
    assert delta.dx == pytest.approx(2.0)


def test_step_detector_threshold_and_debounce() -> None:
    detector = StepDetector(spike_threshold=0.4, min_step_interval=0.4)
    assert detector.feed(0.0, 0.0) is False
    assert detector.feed(0.5, 0.1) is True
    # 去抖窗口内的第二个尖峰不计
    assert detector.feed(0.0, 0.2) is False
    assert detector.feed(0.6, 0.3) is False
    # 变化不足阈值
    assert detector.feed(0.0, 1.0) is False
    assert detector.feed(0.3, 1.1) is False
    assert detector.feed(0.0, 1.2) is False
    assert detector.feed(0.5, 1.3) is True


def test_acceleration_samples_increment_step_count() -> None:
    integrator = StepIntegrator()
    samples = [0.0, 0.6, 0.0, 0.6, 0.0, 0.6]
    for i, z in enumerate(samples):
        integrator.on_acceleration(z, i * 0.25)
    # 尖峰出现在 0.25s、0.75s、1.25s，间隔均大于 0.4s
    assert integrator.step_count == 3


def test_replay_source_drives_integrator() -> None:
    events = [
        MotionEvent(MotionEventKind.HEADING, 50.0),
        MotionEvent(MotionEventKind.CALIBRATE),
        MotionEvent(MotionEventKind.HEADING, 140.0),
        MotionEvent(MotionEventKind.STEPS, 2.0, 1.4),
        MotionEvent(MotionEventKind.STEP_COUNT, 5.0),
    ]
    integrator = StepIntegrator(stride_length=1.0)
    source = ReplayMotionSource(events)
    source.start(integrator)

    assert integrator.calibration_offset == 50.0
    assert integrator.calibrated_heading == pytest.approx(90.0)
    assert integrator.step_count == 5
    delta = integrator.compute_step_delta(0)
    assert delta is not None
    assert delta.dx == pytest.approx(0.0, abs=1e-9)
    assert delta.dy == pytest.approx(5 * 0.7)
