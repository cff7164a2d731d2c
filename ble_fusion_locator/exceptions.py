"""定位融合异常层级（全部可恢复，不会中断融合周期）。"""

from __future__ import annotations


class LocatorError(Exception):
    """Base exception for all ble_fusion_locator errors."""


class ConfigError(LocatorError):
    """配置值非法。"""


class InsufficientDataError(LocatorError):
    """信标或步数不足，无法给出位置。"""


class SolverSingularityError(LocatorError):
    """信标几何退化（共线等）导致法方程奇异。"""

    def __init__(self, message: str, *, determinant: float = 0.0) -> None:
        self.determinant = determinant
        super().__init__(message)


class ImplausibleFixError(LocatorError):
    """BLE 候选位置超出地图或跳变过大。"""

    def __init__(self, message: str, *, reason: str = "", distance: float | None = None) -> None:
        self.reason = reason
        self.distance = distance
        super().__init__(message)


class SensorUnavailableError(LocatorError):
    """航向/步数传感器不可用。"""
