from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, Iterator, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Position:
    """平面坐标（地图单位；world_scale 为 1 时即为米）"""

    x: float
    y: float

    def distance_to(self, other: "Position") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def offset(self, dx: float, dy: float) -> "Position":
        return Position(x=self.x + dx, y=self.y + dy)

    def lerp(self, other: "Position", weight: float) -> "Position":
        """向 other 方向按 weight 插值，weight=0 返回自身，weight=1 返回 other"""
        return Position(
            x=self.x * (1.0 - weight) + other.x * weight,
            y=self.y * (1.0 - weight) + other.y * weight,
        )

    def in_bounds(self, width: float, height: float) -> bool:
        return 0.0 <= self.x <= width and 0.0 <= self.y <= height

    def clamped(self, width: float, height: float) -> "Position":
        return Position(x=min(max(0.0, self.x), width), y=min(max(0.0, self.y), height))


def centroid(positions: List[Position]) -> Position:
    """简单几何中心"""
    n = len(positions)
    return Position(x=sum(p.x for p in positions) / n, y=sum(p.y for p in positions) / n)


@dataclass(frozen=True)
class Beacon:
    beacon_id: str
    x: float
    y: float

    @property
    def position(self) -> Position:
        return Position(x=self.x, y=self.y)


@dataclass(frozen=True)
class BeaconObservation:
    """
    单个信标的最新观测，扫描周期内生成，超过 freshness_timeout 即视为过期
    """

    beacon_id: str
    position: Position
    rssi: int
    last_seen: float

    def age(self, now: float) -> float:
        return now - self.last_seen

    def is_fresh(self, now: float, timeout: float) -> bool:
        return self.age(now) <= timeout


@dataclass(frozen=True)
class RangedBeacon:
    observation: BeaconObservation
    distance: float

    @property
    def position(self) -> Position:
        return self.observation.position

    @property
    def rssi(self) -> int:
        return self.observation.rssi


class SolverMethod(Enum):
    SINGLE_BEACON = "single_beacon"
    TWO_BEACON = "two_beacon"
    MULTILATERATION = "multilateration"
    CENTROID = "centroid"


@dataclass(frozen=True)
class BLECandidate:
    """每个周期重新计算的 BLE 位置候选，confidence 为参与计算的信标数"""

    position: Position
    confidence: int
    method: SolverMethod = SolverMethod.MULTILATERATION
    residual: Optional[float] = None


@dataclass(frozen=True)
class PDRDelta:
    dx: float
    dy: float

    def scaled(self, factor: float) -> "PDRDelta":
        return PDRDelta(dx=self.dx * factor, dy=self.dy * factor)

    @property
    def length(self) -> float:
        return math.hypot(self.dx, self.dy)


# ---------- Tracking phase ----------
@dataclass(frozen=True)
class Uninitialized:
    """尚无任何可信定位"""


@dataclass(frozen=True)
class Tracking:
    position: Position


TrackingPhase = Union[Uninitialized, Tracking]


@dataclass
class FusionState:
    """融合状态，仅由 FusionEngine 在融合周期内修改"""

    history_capacity: int = 4
    phase: TrackingPhase = field(default_factory=Uninitialized)
    last_applied_step_count: int = 0
    last_accepted_fix_at: Optional[float] = None
    last_beacon_count: int = 0
    recent_fixes: Deque[Position] = field(init=False)

    def __post_init__(self) -> None:
        self.recent_fixes = deque(maxlen=self.history_capacity)

    @property
    def fused_position(self) -> Optional[Position]:
        if isinstance(self.phase, Tracking):
            return self.phase.position
        return None

    @property
    def is_tracking(self) -> bool:
        return isinstance(self.phase, Tracking)

    def resize_history(self, capacity: int) -> None:
        # 保留最新的记录
        self.history_capacity = capacity
        self.recent_fixes = deque(self.recent_fixes, maxlen=capacity)


# ---------- Diagnostics ----------
class SourceTag(Enum):
    BLE = "BLE"
    PDR = "PDR"
    FUSED = "Fused"


@dataclass(frozen=True)
class DiagnosticRecord:
    source: SourceTag
    timestamp: float
    position: Position
    beacon_count: int = 0
    distances: Dict[str, Tuple[int, float]] = field(default_factory=dict)

    def to_row(self) -> Dict[str, object]:
        row: Dict[str, object] = {
            "source": self.source.value,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "x": round(self.position.x, 4),
            "y": round(self.position.y, 4),
            "beacon_count": self.beacon_count,
        }
        # 每个信标一列，格式 rssi:distance
        row["beacons"] = ";".join(
            f"{beacon_id}:{rssi}:{distance:.2f}"
            for beacon_id, (rssi, distance) in self.distances.items()
        )
        return row


# ---------- Wire payloads ----------
@dataclass(frozen=True)
class BeaconReading:
    beacon_id: str
    rssi: int


@dataclass(frozen=True)
class ScanRecord:
    """
    蓝牙扫描记录
    格式：<beaconId>,<rssi>;<beaconId>,<rssi>;...;<deviceId>
    """

    device_id: str
    beacon_ids: List[str]
    rssis: List[int]

    def __len__(self) -> int:
        return len(self.beacon_ids)

    def __iter__(self) -> Iterator[BeaconReading]:
        for beacon_id, rssi in zip(self.beacon_ids, self.rssis):
            yield BeaconReading(beacon_id=beacon_id, rssi=rssi)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @classmethod
    def parse(cls, data_str: str) -> Optional["ScanRecord"]:
        parts = data_str.strip().split(";")
        if len(parts) < 2:
            return None
        device_id = parts[-1]
        beacon_ids: List[str] = []
        rssis: List[int] = []
        for item in parts[:-1]:
            fields = item.split(",")
            if len(fields) != 2:
                continue
            beacon_id, rssi_str = fields
            try:
                rssi = int(rssi_str)
            except ValueError:
                continue
            # RSSI 为 0 表示本轮未测到
            if rssi == 0:
                continue
            beacon_ids.append(beacon_id.strip())
            rssis.append(rssi)
        return cls(device_id=device_id, beacon_ids=beacon_ids, rssis=rssis)


class MotionEventKind(Enum):
    HEADING = "heading"
    STEPS = "steps"
    STEP_COUNT = "step_count"
    ACCEL = "accel"
    CALIBRATE = "calibrate"
    SEED = "seed"


@dataclass(frozen=True)
class MotionEvent:
    """
    运动传感器事件
    格式：heading,<deg> | steps,<n>[,<distance_m>] | step_count,<total> | accel,<z>[,<ts>] | calibrate
    | seed,<x>,<y>（宿主指定起点，地图单位）
    """

    kind: MotionEventKind
    value: float = 0.0
    extra: Optional[float] = None

    @classmethod
    def parse(cls, data_str: str) -> Optional["MotionEvent"]:
        fields = [f.strip() for f in data_str.strip().split(",")]
        try:
            kind = MotionEventKind(fields[0].lower())
        except ValueError:
            return None
        if kind is MotionEventKind.CALIBRATE:
            return cls(kind=kind)
        if len(fields) < 2:
            return None
        try:
            value = float(fields[1])
            extra = float(fields[2]) if len(fields) > 2 and fields[2] else None
        except ValueError:
            return None
        if kind is MotionEventKind.SEED and extra is None:
            return None
        return cls(kind=kind, value=value, extra=extra)
