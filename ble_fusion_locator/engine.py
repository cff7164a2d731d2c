"""Fusion engine: periodic BLE + PDR position fusion.

Each tick predicts with dead reckoning, corrects with a multilateration fix
that has passed the jump gate, and commits a single fused position that
always lies inside the map bounds.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .calculator import MultilaterationSolver, quality_score
from .config_manager import FusionConfig
from .diagnostics import DiagnosticsSink, NullDiagnostics
from .exceptions import ImplausibleFixError, InsufficientDataError, SensorUnavailableError
from .models import (
    BeaconObservation,
    BLECandidate,
    DiagnosticRecord,
    FusionState,
    Position,
    RangedBeacon,
    ScanRecord,
    SourceTag,
    Tracking,
    centroid,
)
from .pdr import StepIntegrator
from .scheduler import PeriodicScheduler


logger = logging.getLogger(__name__)

PositionObserver = Callable[[Position, int], None]


class BeaconRegistry(Protocol):
    def resolve(self, beacon_id: str) -> Optional[Position]: ...


def confidence_weight(beacon_count: int, table: Mapping[int, float]) -> float:
    """信标数 -> BLE 权重的单调阶梯函数，取不超过 beacon_count 的最大断点"""
    weight = 0.0
    for count in sorted(table):
        if beacon_count >= count:
            weight = table[count]
    return weight


def stable_cluster(fixes: Iterable[Position], capacity: int, tolerance: float) -> Optional[Position]:
    """历史已满且全部落在质心 tolerance 半径内时返回质心"""
    points = list(fixes)
    if len(points) < capacity:
        return None
    center = centroid(points)
    if all(p.distance_to(center) <= tolerance for p in points):
        return center
    return None


class JumpGate:
    """判断 BLE 候选位置在物理上是否可信"""

    def __init__(self, config: FusionConfig):
        self.config = config

    def check(self, candidate: Position, fused: Position, elapsed: float) -> float:
        """通过时返回跳变距离，否则抛出 ImplausibleFixError"""
        cfg = self.config
        distance = candidate.distance_to(fused)
        if not candidate.in_bounds(cfg.map_width, cfg.map_height):
            raise ImplausibleFixError(
                f"BLE 位置超出地图: ({candidate.x:.2f}, {candidate.y:.2f})",
                reason="out_of_map",
                distance=distance,
            )
        # 长时间没有接受过定位，允许任意跳变
        if elapsed > cfg.long_idle_after:
            return distance
        # 中度过期，放宽到两倍
        if elapsed > cfg.moderate_stale_after and distance <= 2 * cfg.max_jump_distance:
            return distance
        if distance > cfg.max_jump_distance:
            raise ImplausibleFixError(
                f"BLE 跳变不合理: {distance / cfg.world_scale:.2f}m "
                f"(上限 {cfg.max_jump_meters:.2f}m)",
                reason="jump",
                distance=distance,
            )
        return distance


def blend_positions(
    predicted: Position,
    fused: Position,
    candidate: Optional[BLECandidate],
    stable: Optional[Position],
    *,
    pdr_active: bool,
    config: FusionConfig,
) -> Position:
    """
    按策略顺序合成位置：
    - 本周期无 BLE：沿用 PDR 预测（无步数时即保持不动）
    - BLE + PDR + 置信度加权：稳定簇且偏离过远时直接吸附；稳定簇时小权重靠拢；
      否则按信标数权重 × 接近程度混合，远距离用保守默认权重
    - BLE + PDR 不加权：简单平均
    - 仅 BLE：直接使用 BLE
    """
    if candidate is None:
        return predicted
    if not pdr_active:
        return candidate.position
    if not config.confidence_weighting:
        return predicted.lerp(candidate.position, 0.5)

    snap = config.snap_distance
    if stable is not None:
        drift = fused.distance_to(stable)
        if drift > snap:
            logger.debug("融合位置偏离稳定 BLE 簇 %.2f，直接吸附", drift)
            return stable
        return predicted.lerp(stable, config.stable_blend_weight)

    gap = predicted.distance_to(candidate.position)
    weight = config.far_blend_weight
    if gap < snap:
        proximity = 1.0 - gap / snap
        weight = confidence_weight(candidate.confidence, config.confidence_weights) * proximity
    return predicted.lerp(candidate.position, weight)


class FusionEngine:
    """
    融合状态的唯一写入者。信标观测与步数/航向由生产者异步写入缓冲区，
    tick 在开始时读取最新值，完成一次有界的闭式计算后提交并通知观察者。
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        integrator: Optional[StepIntegrator] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = (config or FusionConfig()).validate()
        self.integrator = integrator or StepIntegrator()
        self.integrator.reconfigure(
            stride_length=self.config.stride_length,
            dynamic_stride=self.config.dynamic_stride,
            spike_threshold=self.config.spike_threshold,
            min_step_interval=self.config.min_step_interval,
        )
        self.diagnostics: DiagnosticsSink = diagnostics or NullDiagnostics()
        self.clock = clock

        self.solver = MultilaterationSolver(max_beacons=self.config.max_beacons)
        self.gate = JumpGate(self.config)
        self._configure_solver()
        self.state = FusionState(history_capacity=self.config.history_capacity)

        self._observations: Dict[str, BeaconObservation] = {}
        self._observations_lock = threading.Lock()
        self._consumed_until = -math.inf
        self._tick_lock = threading.Lock()
        self._observers: List[PositionObserver] = []
        self.scheduler = PeriodicScheduler(self.tick)

    # ---------- Outputs ----------
    @property
    def fused_position(self) -> Optional[Position]:
        return self.state.fused_position

    @property
    def last_beacon_count(self) -> int:
        return self.state.last_beacon_count

    def require_position(self) -> Position:
        position = self.state.fused_position
        if position is None:
            raise InsufficientDataError("尚未获得任何有效定位")
        return position

    def subscribe(self, observer: PositionObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # ---------- Inputs ----------
    def update_observations(self, observations: Iterable[BeaconObservation]) -> None:
        with self._observations_lock:
            for obs in observations:
                if obs.rssi == 0:
                    continue
                self._observations[obs.beacon_id] = obs

    def ingest_scan(
        self, record: ScanRecord, registry: BeaconRegistry, timestamp: Optional[float] = None
    ) -> int:
        """把一次扫描结果解析为观测写入缓冲，返回登记在册的信标数"""
        seen_at = self.clock() if timestamp is None else timestamp
        observations: List[BeaconObservation] = []
        for reading in record:
            position = registry.resolve(reading.beacon_id)
            if position is None:
                logger.debug("未登记的信标: %s", reading.beacon_id)
                continue
            observations.append(
                BeaconObservation(
                    beacon_id=reading.beacon_id,
                    position=position,
                    rssi=reading.rssi,
                    last_seen=seen_at,
                )
            )
        self.update_observations(observations)
        return len(observations)

    def fresh_observations(self, now: float) -> List[BeaconObservation]:
        with self._observations_lock:
            snapshot = list(self._observations.values())
        return [obs for obs in snapshot if obs.is_fresh(now, self.config.freshness_timeout)]

    def seed(self, position: Position) -> Position:
        """由宿主直接指定起点，进入 Tracking 状态"""
        with self._tick_lock:
            cfg = self.config
            start = position.clamped(cfg.map_width, cfg.map_height)
            self.state.phase = Tracking(start)
            self.state.last_applied_step_count = self.integrator.step_count
        self._publish(start)
        return start

    # ---------- Configuration / scheduling ----------
    def apply_configuration(self, config: FusionConfig) -> None:
        config.validate()
        with self._tick_lock:
            previous = self.config
            self.config = config
            self.gate = JumpGate(config)
            self._configure_solver()
            self.integrator.reconfigure(
                stride_length=config.stride_length,
                dynamic_stride=config.dynamic_stride,
                spike_threshold=config.spike_threshold,
                min_step_interval=config.min_step_interval,
            )
            if config.history_capacity != self.state.history_capacity:
                self.state.resize_history(config.history_capacity)
            # 地图缩小时立即把当前位置限制到新边界内
            fused = self.state.fused_position
            if fused is not None:
                self.state.phase = Tracking(fused.clamped(config.map_width, config.map_height))
        logger.info("融合参数已更新")
        if self.scheduler.running and config.tick_period != previous.tick_period:
            self.scheduler.restart(config.tick_period)

    def _configure_solver(self) -> None:
        cfg = self.config
        self.solver.max_beacons = cfg.max_beacons
        self.solver.rssi_weighting = cfg.rssi_weighting
        self.solver.bounds = (cfg.map_width, cfg.map_height)
        self.solver.sanity_margin = cfg.sanity_margin_distance

    def start(self) -> None:
        self.scheduler.start(self.config.tick_period)

    def stop(self) -> None:
        self.scheduler.stop()

    # ---------- Core processing ----------
    def tick(self, now: Optional[float] = None) -> Optional[Position]:
        """执行一次融合周期，返回提交后的位置（未初始化时为 None）"""
        now = self.clock() if now is None else now
        with self._tick_lock:
            committed = self._tick_locked(now)
        if committed is not None:
            self._publish(committed)
        return committed

    def _tick_locked(self, now: float) -> Optional[Position]:
        cfg = self.config
        state = self.state
        fused = state.fused_position

        # 1. PDR 预测
        predicted = fused
        pdr_active = cfg.pdr_enabled
        if pdr_active and fused is not None:
            current_steps = self.integrator.step_count
            try:
                delta = self.integrator.compute_step_delta(
                    state.last_applied_step_count, until_step_count=current_steps
                )
            except SensorUnavailableError as e:
                logger.warning("PDR 不可用，本周期仅使用 BLE: %s", e)
                delta = None
                pdr_active = False
            if delta is not None:
                scaled = delta.scaled(cfg.world_scale)
                predicted = fused.offset(scaled.dx, scaled.dy)
                state.last_applied_step_count = current_steps
                self.diagnostics.record(
                    DiagnosticRecord(source=SourceTag.PDR, timestamp=now, position=predicted)
                )

        # 2. BLE 观测
        candidate = self._observe(now) if cfg.ble_enabled else None

        if fused is None:
            return self._try_seed(candidate, now)

        # 3. 跳变检测
        accepted: Optional[BLECandidate] = None
        if candidate is not None:
            elapsed = (
                math.inf if state.last_accepted_fix_at is None else now - state.last_accepted_fix_at
            )
            try:
                self.gate.check(candidate.position, fused, elapsed)
                accepted = candidate
            except ImplausibleFixError as e:
                logger.warning("忽略 BLE 定位: %s", e)

        # 4. 历史与稳定簇
        stable = None
        if accepted is not None:
            state.recent_fixes.append(accepted.position)
            stable = stable_cluster(state.recent_fixes, state.history_capacity, cfg.stability_tolerance)

        # 5. 合成
        new_position = blend_positions(
            predicted, fused, accepted, stable, pdr_active=pdr_active, config=cfg
        )

        # 6./7. 限幅并提交
        return self._commit(new_position, accepted, now)

    def _observe(self, now: float) -> Optional[BLECandidate]:
        fresh = self.fresh_observations(now)
        if not fresh:
            return None
        newest = max(obs.last_seen for obs in fresh)
        # 没有比上次更新的观测则本周期不重复计算
        if newest <= self._consumed_until:
            return None
        self._consumed_until = newest

        cfg = self.config
        ranged = self.solver.range_observations(
            fresh, cfg.tx_power, cfg.path_loss_exponent, distance_scale=cfg.world_scale
        )
        candidate = self.solver.solve(ranged)
        if candidate is not None:
            logger.debug(
                "BLE 候选 (%.2f, %.2f)，方法: %s，信标数: %s，质量: %.2f",
                candidate.position.x,
                candidate.position.y,
                candidate.method.value,
                candidate.confidence,
                quality_score(candidate),
            )
            self.diagnostics.record(self._ble_record(candidate, ranged, now))
        return candidate

    def _try_seed(self, candidate: Optional[BLECandidate], now: float) -> Optional[Position]:
        """首个有效 BLE 定位直接作为初始位置，不做混合"""
        cfg = self.config
        if candidate is None:
            return None
        if not candidate.position.in_bounds(cfg.map_width, cfg.map_height):
            logger.warning(
                "首个 BLE 定位超出地图 (%.2f, %.2f)，继续等待",
                candidate.position.x,
                candidate.position.y,
            )
            return None
        self.state.recent_fixes.append(candidate.position)
        self.state.last_applied_step_count = self.integrator.step_count
        logger.info(
            "初始定位完成: (%.2f, %.2f)，信标数: %s",
            candidate.position.x,
            candidate.position.y,
            candidate.confidence,
        )
        return self._commit(candidate.position, candidate, now)

    def _commit(self, position: Position, accepted: Optional[BLECandidate], now: float) -> Position:
        cfg = self.config
        final = position.clamped(cfg.map_width, cfg.map_height)
        self.state.phase = Tracking(final)
        if accepted is not None:
            self.state.last_accepted_fix_at = now
            self.state.last_beacon_count = accepted.confidence
        self.diagnostics.record(
            DiagnosticRecord(
                source=SourceTag.FUSED,
                timestamp=now,
                position=final,
                beacon_count=self.state.last_beacon_count,
            )
        )
        return final

    def _publish(self, position: Position) -> None:
        for observer in list(self._observers):
            try:
                observer(position, self.state.last_beacon_count)
            except Exception:
                logger.exception("位置观察者回调出错")

    @staticmethod
    def _ble_record(candidate: BLECandidate, ranged: List[RangedBeacon], now: float) -> DiagnosticRecord:
        return DiagnosticRecord(
            source=SourceTag.BLE,
            timestamp=now,
            position=candidate.position,
            beacon_count=candidate.confidence,
            distances={rb.observation.beacon_id: (rb.rssi, rb.distance) for rb in ranged},
        )
