from __future__ import annotations

import math

import numpy as np
import pytest

from ble_fusion_locator.calculator import (
    MultilaterationSolver,
    mean_residual,
    quality_score,
    rssi_to_distance,
    solve_normal_equations,
)
from ble_fusion_locator.exceptions import SolverSingularityError
from ble_fusion_locator.models import (
    BeaconObservation,
    BLECandidate,
    Position,
    RangedBeacon,
    SolverMethod,
)


def _ranged(beacon_id: str, x: float, y: float, distance: float, rssi: float = -60) -> RangedBeacon:
    obs = BeaconObservation(beacon_id=beacon_id, position=Position(x, y), rssi=rssi, last_seen=0.0)
    return RangedBeacon(observation=obs, distance=distance)


def _exact(beacon_id: str, x: float, y: float, true: Position, rssi: float = -60) -> RangedBeacon:
    return _ranged(beacon_id, x, y, Position(x, y).distance_to(true), rssi)


# ---------- Distance model ----------
def test_distance_at_reference_power_is_one_metre() -> None:
    assert rssi_to_distance(-59, tx_power=-59, path_loss_exponent=2.0) == pytest.approx(1.0)


def test_distance_follows_log_distance_model() -> None:
    # 20 dB 衰减，n=2 -> 10 米
    assert rssi_to_distance(-79, tx_power=-59, path_loss_exponent=2.0) == pytest.approx(10.0)


@pytest.mark.parametrize("n", [1.0, 1.35, 2.0, 3.3, 4.0])
def test_distance_positive_and_strictly_decreasing_in_rssi(n: float) -> None:
    distances = [rssi_to_distance(rssi, -70, n) for rssi in range(-110, -20)]
    assert all(d > 0 for d in distances)
    assert all(a > b for a, b in zip(distances, distances[1:]))


def test_very_weak_signal_is_not_clamped() -> None:
    assert rssi_to_distance(-140, tx_power=-59, path_loss_exponent=1.0) > 1e7


# ---------- Solver ----------
def test_empty_input_returns_none() -> None:
    assert MultilaterationSolver().solve([]) is None


def test_single_beacon_returns_registered_position() -> None:
    candidate = MultilaterationSolver().solve([_ranged("a", 3.25, 7.5, 12.0)])
    assert candidate is not None
    assert candidate.position == Position(3.25, 7.5)
    assert candidate.confidence == 1
    assert candidate.method is SolverMethod.SINGLE_BEACON


def test_two_beacons_equal_distance_gives_midpoint() -> None:
    candidate = MultilaterationSolver().solve(
        [_ranged("a", 0.0, 0.0, 2.0), _ranged("b", 10.0, 0.0, 2.0)]
    )
    assert candidate is not None
    assert candidate.position.x == pytest.approx(5.0)
    assert candidate.position.y == pytest.approx(0.0)
    assert candidate.confidence == 2


def test_two_beacons_bias_toward_closer_beacon_on_segment() -> None:
    p1, p2 = Position(1.0, 2.0), Position(9.0, 6.0)
    candidate = MultilaterationSolver().solve(
        [_ranged("a", p1.x, p1.y, 1.0), _ranged("b", p2.x, p2.y, 3.0)]
    )
    assert candidate is not None
    p = candidate.position
    # (d2*p1 + d1*p2) / (d1+d2)
    assert p.x == pytest.approx((3.0 * 1.0 + 1.0 * 9.0) / 4.0)
    assert p.y == pytest.approx((3.0 * 2.0 + 1.0 * 6.0) / 4.0)
    # 在线段上：到两端距离之和等于线段长度
    assert p.distance_to(p1) + p.distance_to(p2) == pytest.approx(p1.distance_to(p2))
    assert p.distance_to(p1) < p.distance_to(p2)


def test_multilateration_recovers_true_position_without_noise() -> None:
    true = Position(3.0, 4.0)
    beacons = [
        _exact("a", 0.0, 0.0, true, rssi=-55),
        _exact("b", 10.0, 0.0, true, rssi=-60),
        _exact("c", 0.0, 10.0, true, rssi=-65),
        _exact("d", 10.0, 10.0, true, rssi=-70),
    ]
    candidate = MultilaterationSolver().solve(beacons)
    assert candidate is not None
    assert candidate.method is SolverMethod.MULTILATERATION
    assert candidate.confidence == 4
    assert candidate.position.x == pytest.approx(true.x, abs=1e-6)
    assert candidate.position.y == pytest.approx(true.y, abs=1e-6)
    assert candidate.residual == pytest.approx(0.0, abs=1e-6)


def test_multilateration_from_rssi_derived_distances() -> None:
    true = Position(6.0, 2.5)
    tx, n = -59, 2.0
    observations = []
    for i, (x, y) in enumerate([(0.0, 0.0), (12.0, 0.0), (0.0, 8.0), (12.0, 8.0)]):
        d = Position(x, y).distance_to(true)
        rssi = tx - 10 * n * math.log10(d)
        observations.append(
            BeaconObservation(beacon_id=str(i), position=Position(x, y), rssi=rssi, last_seen=0.0)
        )
    solver = MultilaterationSolver()
    candidate = solver.solve(solver.range_observations(observations, tx, n))
    assert candidate is not None
    assert candidate.position.x == pytest.approx(true.x, abs=1e-6)
    assert candidate.position.y == pytest.approx(true.y, abs=1e-6)


def test_rssi_weighting_still_recovers_exact_position() -> None:
    true = Position(2.0, 7.0)
    beacons = [
        _exact("a", 0.0, 0.0, true, rssi=-50),
        _exact("b", 10.0, 0.0, true, rssi=-80),
        _exact("c", 0.0, 10.0, true, rssi=-65),
    ]
    candidate = MultilaterationSolver(rssi_weighting=True).solve(beacons)
    assert candidate is not None
    assert candidate.position.x == pytest.approx(true.x, abs=1e-6)
    assert candidate.position.y == pytest.approx(true.y, abs=1e-6)


def test_collinear_beacons_fall_back_to_centroid() -> None:
    beacons = [
        _ranged("a", 0.0, 0.0, 3.0, rssi=-50),
        _ranged("b", 5.0, 0.0, 2.0, rssi=-55),
        _ranged("c", 10.0, 0.0, 7.0, rssi=-60),
    ]
    candidate = MultilaterationSolver().solve(beacons)
    assert candidate is not None
    assert candidate.method is SolverMethod.CENTROID
    assert candidate.position == Position(5.0, 0.0)
    assert candidate.confidence == 3


def test_diagonal_collinear_beacons_fall_back_to_centroid() -> None:
    beacons = [
        _ranged("a", 1.0, 1.0, 1.0),
        _ranged("b", 2.0, 2.0, 1.0),
        _ranged("c", 3.0, 3.0, 1.0),
    ]
    candidate = MultilaterationSolver().solve(beacons)
    assert candidate is not None
    assert candidate.method is SolverMethod.CENTROID
    assert candidate.position.x == pytest.approx(2.0)
    assert candidate.position.y == pytest.approx(2.0)


def test_normal_equations_raise_on_singular_system() -> None:
    a = np.array([[10.0, 0.0], [20.0, 0.0]])
    b = np.array([1.0, 2.0])
    with pytest.raises(SolverSingularityError) as excinfo:
        solve_normal_equations(a, b)
    assert excinfo.value.determinant == 0.0


def test_caps_to_strongest_beacons() -> None:
    true = Position(4.0, 4.0)
    beacons = [
        _exact("a", 0.0, 0.0, true, rssi=-50),
        _exact("b", 10.0, 0.0, true, rssi=-52),
        _exact("c", 0.0, 10.0, true, rssi=-54),
        # 最弱的信标距离严重失真，应被截掉
        _ranged("d", 10.0, 10.0, 100.0, rssi=-95),
    ]
    candidate = MultilaterationSolver(max_beacons=3).solve(beacons)
    assert candidate is not None
    assert candidate.confidence == 3
    assert candidate.position.x == pytest.approx(true.x, abs=1e-6)
    assert candidate.position.y == pytest.approx(true.y, abs=1e-6)


def test_sanity_filter_rejects_far_solution() -> None:
    # 距离严重不一致，线性解落在地图外
    beacons = [
        _ranged("a", 0.0, 0.0, 1.0, rssi=-50),
        _ranged("b", 10.0, 0.0, 40.0, rssi=-55),
        _ranged("c", 0.0, 10.0, 1.0, rssi=-60),
    ]
    unfiltered = MultilaterationSolver().solve(beacons)
    assert unfiltered is not None
    assert unfiltered.method is SolverMethod.MULTILATERATION
    assert unfiltered.position.x < -10.0

    filtered = MultilaterationSolver(bounds=(20.0, 20.0), sanity_margin=2.0).solve(beacons)
    assert filtered is not None
    assert filtered.method is SolverMethod.CENTROID
    assert filtered.position.x == pytest.approx(10.0 / 3.0)
    assert filtered.position.y == pytest.approx(10.0 / 3.0)


def test_solution_just_outside_wall_is_kept() -> None:
    # 真实位置贴墙略出地图 5 cm，默认余量内不应回退到质心
    true = Position(-0.05, 5.0)
    beacons = [
        _exact("a", 0.0, 0.0, true, rssi=-55),
        _exact("b", 10.0, 0.0, true, rssi=-65),
        _exact("c", 0.0, 10.0, true, rssi=-60),
        _exact("d", 10.0, 10.0, true, rssi=-70),
    ]
    candidate = MultilaterationSolver(bounds=(10.0, 10.0)).solve(beacons)
    assert candidate is not None
    assert candidate.method is SolverMethod.MULTILATERATION
    assert candidate.position.distance_to(true) < 0.5


def test_range_observations_applies_world_scale() -> None:
    obs = BeaconObservation(beacon_id="a", position=Position(0, 0), rssi=-59, last_seen=0.0)
    (ranged,) = MultilaterationSolver().range_observations([obs], -59, 2.0, distance_scale=30.0)
    assert ranged.distance == pytest.approx(30.0)


def test_quality_score_combines_residual_and_count() -> None:
    perfect = BLECandidate(position=Position(0, 0), confidence=5, residual=0.0)
    assert quality_score(perfect) == pytest.approx(1.0)
    sloppy = BLECandidate(position=Position(0, 0), confidence=1, residual=10.0)
    assert quality_score(sloppy) == pytest.approx(0.1)


def test_mean_residual() -> None:
    beacons = [_ranged("a", 0.0, 0.0, 5.0), _ranged("b", 6.0, 0.0, 2.0)]
    assert mean_residual(Position(3.0, 4.0), beacons) == pytest.approx((0.0 + 3.0) / 2)
