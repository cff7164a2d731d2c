"""Pedestrian dead reckoning: step detection, heading calibration and step displacement."""

from __future__ import annotations

import logging
import math
import threading
from typing import Iterable, List, Optional, Protocol

from .exceptions import SensorUnavailableError
from .models import MotionEvent, MotionEventKind, PDRDelta


logger = logging.getLogger(__name__)


class StepDetector:
    """垂直加速度相邻采样差超过阈值即记一步，并以最小步间隔去抖"""

    def __init__(self, spike_threshold: float = 0.4, min_step_interval: float = 0.4):
        self.spike_threshold = spike_threshold
        self.min_step_interval = min_step_interval
        self._last_z: Optional[float] = None
        self._last_step_at = -math.inf

    def feed(self, z: float, timestamp: float) -> bool:
        last_z = self._last_z
        self._last_z = z
        if last_z is None:
            return False
        if z - last_z > self.spike_threshold and timestamp - self._last_step_at > self.min_step_interval:
            self._last_step_at = timestamp
            return True
        return False

    def reset(self) -> None:
        self._last_z = None
        self._last_step_at = -math.inf


class StepIntegrator:
    """
    步数 + 航向的最新值缓冲。生产者（传感器回调）随时写入，融合周期读取。
    只报告相对某个检查点的位移，不维护绝对位置。
    航向单位为度，0 为参考轴，顺时针为正。
    """

    def __init__(
        self,
        stride_length: float = 0.7,
        dynamic_stride: bool = True,
        detector: Optional[StepDetector] = None,
    ):
        self._lock = threading.Lock()
        self.default_stride = stride_length
        self.dynamic_stride = dynamic_stride
        self.detector = detector or StepDetector()

        self._step_count = 0
        self._stride_length = stride_length
        self._raw_heading: Optional[float] = None
        self._calibration_offset = 0.0

    # ---------- Producers ----------
    def on_heading(self, heading_deg: float) -> None:
        with self._lock:
            self._raw_heading = heading_deg

    def on_steps(self, increment: int, distance: Optional[float] = None) -> None:
        """外部计步（例如手表）上报的新增步数，可附带该段行走距离"""
        if increment <= 0:
            return
        with self._lock:
            self._step_count += increment
            if self.dynamic_stride and distance is not None and distance > 0:
                self._stride_length = distance / increment

    def on_step_count(self, total: int) -> None:
        """累计步数，小于当前值的读数忽略以保持单调"""
        with self._lock:
            if total > self._step_count:
                self._step_count = total

    def on_acceleration(self, z: float, timestamp: float) -> bool:
        with self._lock:
            stepped = self.detector.feed(z, timestamp)
            if stepped:
                self._step_count += 1
        return stepped

    def apply(self, event: MotionEvent, timestamp: float) -> None:
        match event.kind:
            case MotionEventKind.HEADING:
                self.on_heading(event.value)
            case MotionEventKind.STEPS:
                self.on_steps(int(event.value), event.extra)
            case MotionEventKind.STEP_COUNT:
                self.on_step_count(int(event.value))
            case MotionEventKind.ACCEL:
                self.on_acceleration(event.value, event.extra if event.extra is not None else timestamp)
            case MotionEventKind.CALIBRATE:
                self.calibrate()
            case _:
                logger.debug("忽略非运动事件: %s", event.kind.value)

    def calibrate(self) -> float:
        """把当前原始航向设为零点，使“前进”方向对齐地图参考轴"""
        with self._lock:
            self._calibration_offset = self._raw_heading if self._raw_heading is not None else 0.0
            offset = self._calibration_offset
        logger.info("航向校准完成，零点偏移 = %.2f°", offset)
        return offset

    # ---------- Readers ----------
    @property
    def step_count(self) -> int:
        return self._step_count

    @property
    def stride_length(self) -> float:
        return self._stride_length

    @property
    def calibration_offset(self) -> float:
        return self._calibration_offset

    @property
    def has_heading(self) -> bool:
        return self._raw_heading is not None

    @property
    def calibrated_heading(self) -> Optional[float]:
        if self._raw_heading is None:
            return None
        return self._raw_heading - self._calibration_offset

    def compute_step_delta(
        self, since_step_count: int, until_step_count: Optional[int] = None
    ) -> Optional[PDRDelta]:
        """
        计算自检查点 since_step_count 以来的位移 (米)。
        没有新步数返回 None，调用方不应推进检查点。
        until_step_count 用于按调用方读到的步数快照计算。
        """
        with self._lock:
            current = self._step_count if until_step_count is None else until_step_count
            new_steps = current - since_step_count
            if new_steps <= 0:
                return None
            if self._raw_heading is None:
                raise SensorUnavailableError(f"有 {new_steps} 步待积分，但尚未收到航向数据")
            theta = math.radians(self._raw_heading - self._calibration_offset)
            length = self._stride_length * new_steps
        return PDRDelta(dx=math.cos(theta) * length, dy=math.sin(theta) * length)

    def reconfigure(self, stride_length: float, dynamic_stride: bool,
                    spike_threshold: float, min_step_interval: float) -> None:
        with self._lock:
            if stride_length != self.default_stride:
                self._stride_length = stride_length
            self.default_stride = stride_length
            self.dynamic_stride = dynamic_stride
            self.detector.spike_threshold = spike_threshold
            self.detector.min_step_interval = min_step_interval


class MotionSource(Protocol):
    """航向/步数生产者的能力接口，平台相关的传感器回调实现它"""

    def start(self, integrator: StepIntegrator) -> None: ...

    def stop(self) -> None: ...


class ReplayMotionSource:
    """按顺序回放一组合成的运动事件，用于离线回放和测试"""

    def __init__(self, events: Iterable[MotionEvent], start_time: float = 0.0, interval: float = 0.1):
        self.events: List[MotionEvent] = list(events)
        self.start_time = start_time
        self.interval = interval
        self.started = False

    def start(self, integrator: StepIntegrator) -> None:
        self.started = True
        for i, event in enumerate(self.events):
            if not self.started:
                break
            integrator.apply(event, self.start_time + i * self.interval)

    def stop(self) -> None:
        self.started = False
