from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import SolverSingularityError
from .models import (
    BeaconObservation,
    BLECandidate,
    Position,
    RangedBeacon,
    SolverMethod,
    centroid,
)


logger = logging.getLogger(__name__)

# 行列式相对阈值，低于此值视为奇异
_SINGULAR_RTOL = 1e-12


def rssi_to_distance(rssi: float, tx_power: float = -59, path_loss_exponent: float = 2.0) -> float:
    """
    对数距离路径损耗模型 (单位: 米)
    d = 10 ^ ((txPower - RSSI) / (10 * n))
    弱信号对应的超大距离不在此处截断，由下游策略处理
    """
    exponent = (tx_power - rssi) / (10.0 * path_loss_exponent)
    return math.pow(10, exponent)


def rssi_weight(rssi: float) -> float:
    """RSSI 由 [-100, -30] 归一化到 [0.1, 1.0]，信号越强权重越大"""
    norm = (rssi + 100.0) / 70.0
    return max(0.1, min(1.0, norm))


def solve_normal_equations(
    a: np.ndarray, b: np.ndarray, weights: Optional[np.ndarray] = None
) -> Tuple[float, float]:
    """
    求解 (Aᵀ W A) x = Aᵀ W b，2x2 闭式逆
    a: (m, 2), b: (m,), weights: (m,)
    """
    w = np.ones(len(b)) if weights is None else weights
    s00 = float(np.sum(w * a[:, 0] * a[:, 0]))
    s01 = float(np.sum(w * a[:, 0] * a[:, 1]))
    s11 = float(np.sum(w * a[:, 1] * a[:, 1]))
    t0 = float(np.sum(w * a[:, 0] * b))
    t1 = float(np.sum(w * a[:, 1] * b))

    det = s00 * s11 - s01 * s01
    if det == 0.0 or abs(det) <= _SINGULAR_RTOL * max(s00 * s11, 1.0):
        raise SolverSingularityError("法方程奇异，信标几何退化", determinant=det)

    inv00 = s11 / det
    inv01 = -s01 / det
    inv11 = s00 / det
    return inv00 * t0 + inv01 * t1, inv01 * t0 + inv11 * t1


class MultilaterationSolver:
    """基于RSSI距离的多边定位：1 个信标直接返回，2 个信标反距离插值，3 个及以上线性最小二乘"""

    def __init__(
        self,
        max_beacons: int = 6,
        rssi_weighting: bool = False,
        bounds: Optional[Tuple[float, float]] = None,
        sanity_margin: float = 2.0,
    ):
        self.max_beacons = max_beacons
        self.rssi_weighting = rssi_weighting
        # (width, height)，None 表示不做合理性过滤；sanity_margin 为地图单位，负数关闭过滤
        self.bounds = bounds
        self.sanity_margin = sanity_margin

    def range_observations(
        self,
        observations: Sequence[BeaconObservation],
        tx_power: float,
        path_loss_exponent: float,
        distance_scale: float = 1.0,
    ) -> List[RangedBeacon]:
        """把观测转换为带距离的信标；distance_scale 把米换算为地图单位"""
        return [
            RangedBeacon(
                observation=obs,
                distance=rssi_to_distance(obs.rssi, tx_power, path_loss_exponent) * distance_scale,
            )
            for obs in observations
        ]

    def solve(self, beacons: Sequence[RangedBeacon]) -> Optional[BLECandidate]:
        """根据信标数量选择计算路径；空输入返回 None，几何退化回退到质心"""
        if len(beacons) == 0:
            return None

        if len(beacons) == 1:
            return BLECandidate(
                position=beacons[0].position,
                confidence=1,
                method=SolverMethod.SINGLE_BEACON,
            )

        if len(beacons) == 2:
            return BLECandidate(
                position=self.interpolate_pair(beacons[0], beacons[1]),
                confidence=2,
                method=SolverMethod.TWO_BEACON,
            )

        # 按信号强度降序，只取最强的 max_beacons 个
        ordered = sorted(beacons, key=lambda rb: rb.rssi, reverse=True)[: self.max_beacons]
        try:
            position = self.multilaterate(ordered)
            method = SolverMethod.MULTILATERATION
        except SolverSingularityError as e:
            logger.info("信标几何退化 (det=%.3g)，回退到质心", e.determinant)
            position = None
        if position is not None and not self._plausible(position):
            logger.info("多边定位结果超出地图范围 (%.2f, %.2f)，回退到质心", position.x, position.y)
            position = None
        if position is None:
            position = centroid([rb.position for rb in ordered])
            method = SolverMethod.CENTROID

        return BLECandidate(
            position=position,
            confidence=len(ordered),
            method=method,
            residual=mean_residual(position, ordered),
        )

    @staticmethod
    def interpolate_pair(first: RangedBeacon, second: RangedBeacon) -> Position:
        """
        两个信标沿连线反距离插值：p = (d2·p1 + d1·p2) / (d1 + d2)
        结果偏向距离更近（信号更强）的信标
        """
        d1, d2 = first.distance, second.distance
        total = d1 + d2
        if total <= 0:
            return first.position.lerp(second.position, 0.5)
        return first.position.lerp(second.position, d1 / total)

    def multilaterate(self, beacons: Sequence[RangedBeacon]) -> Position:
        """
        线性化多边定位，以第一个信标为参考：
        A_i = 2 (p_i - p_0)
        b_i = d0² - di² + |p_i|² - |p_0|²
        """
        pts = np.array([[rb.position.x, rb.position.y] for rb in beacons], dtype=np.float64)
        ds = np.array([rb.distance for rb in beacons], dtype=np.float64)

        ref = pts[0]
        a = 2.0 * (pts[1:] - ref)
        b = ds[0] ** 2 - ds[1:] ** 2 + np.sum(pts[1:] ** 2, axis=1) - np.sum(ref**2)

        weights = None
        if self.rssi_weighting:
            weights = np.array([rssi_weight(rb.rssi) for rb in beacons[1:]], dtype=np.float64)

        x, y = solve_normal_equations(a, b, weights)
        return Position(x=x, y=y)

    def _plausible(self, position: Position) -> bool:
        if self.bounds is None or self.sanity_margin < 0:
            return True
        width, height = self.bounds
        m = self.sanity_margin
        return -m <= position.x <= width + m and -m <= position.y <= height + m


def mean_residual(position: Position, beacons: Sequence[RangedBeacon]) -> float:
    """估算距离与几何距离之差的平均绝对值"""
    return sum(abs(rb.distance - position.distance_to(rb.position)) for rb in beacons) / len(beacons)


def quality_score(candidate: BLECandidate, error_threshold: float = 5.0, full_count: int = 5) -> float:
    """
    综合残差精度与信标数量的 0~1 质量分，仅用于诊断输出
    """
    count_score = min(1.0, candidate.confidence / full_count)
    if candidate.residual is None:
        return count_score
    error_score = max(0.0, 1.0 - candidate.residual / error_threshold)
    return (error_score + count_score) / 2.0
