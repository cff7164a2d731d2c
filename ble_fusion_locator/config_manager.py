from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from .exceptions import ConfigError


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes")


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_FUSION_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)

DEFAULT_CONFIDENCE_WEIGHTS = {5: 0.9, 4: 0.75, 3: 0.6, 2: 0.4, 1: 0.2, 0: 0.0}


@dataclass(frozen=True)
class FusionConfig:
    """融合引擎运行参数快照（不可变，通过 apply_configuration 整体替换）"""

    # RSSI 模型
    tx_power: int = -59
    path_loss_exponent: float = 2.0
    # 多边定位
    max_beacons: int = 6
    rssi_weighting: bool = False
    sanity_margin: float = 2.0
    # PDR
    stride_length: float = 0.7
    spike_threshold: float = 0.4
    min_step_interval: float = 0.4
    dynamic_stride: bool = True
    # 融合
    tick_period: float = 0.5
    ble_enabled: bool = True
    pdr_enabled: bool = True
    confidence_weighting: bool = True
    world_scale: float = 1.0
    map_width: float = 100.0
    map_height: float = 100.0
    freshness_timeout: float = 2.0
    max_jump_meters: float = 4.0
    moderate_stale_ticks: float = 2.0
    long_idle_ticks: float = 5.0
    history_capacity: int = 4
    stability_tolerance_meters: float = 0.8
    snap_distance_meters: float = 2.0
    stable_blend_weight: float = 0.2
    far_blend_weight: float = 0.25
    start_position: Optional[Tuple[float, float]] = None
    confidence_weights: Dict[int, float] = field(
        default_factory=lambda: dict(DEFAULT_CONFIDENCE_WEIGHTS)
    )

    # ---------- Derived (map units / seconds) ----------
    @property
    def sanity_margin_distance(self) -> float:
        return self.sanity_margin * self.world_scale

    @property
    def max_jump_distance(self) -> float:
        return self.max_jump_meters * self.world_scale

    @property
    def snap_distance(self) -> float:
        return self.snap_distance_meters * self.world_scale

    @property
    def stability_tolerance(self) -> float:
        return self.stability_tolerance_meters * self.world_scale

    @property
    def moderate_stale_after(self) -> float:
        return self.moderate_stale_ticks * self.tick_period

    @property
    def long_idle_after(self) -> float:
        return self.long_idle_ticks * self.tick_period

    def with_changes(self, **changes: Any) -> "FusionConfig":
        return replace(self, **changes)

    def validate(self) -> "FusionConfig":
        positive = {
            "tick_period": self.tick_period,
            "world_scale": self.world_scale,
            "map_width": self.map_width,
            "map_height": self.map_height,
            "stride_length": self.stride_length,
            "path_loss_exponent": self.path_loss_exponent,
            "freshness_timeout": self.freshness_timeout,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} 必须为正数: {value}")
        for name in ("max_jump_meters", "snap_distance_meters", "stability_tolerance_meters"):
            value = getattr(self, name)
            if value < 0:
                raise ConfigError(f"{name} 不能为负数: {value}")
        if self.start_position is not None and len(self.start_position) != 2:
            raise ConfigError(f"start_position 应为 [x, y]: {self.start_position}")
        if self.history_capacity < 1:
            raise ConfigError(f"history_capacity 至少为 1: {self.history_capacity}")
        if self.max_beacons < 3:
            raise ConfigError(f"max_beacons 至少为 3: {self.max_beacons}")
        for name in ("stable_blend_weight", "far_blend_weight"):
            w = getattr(self, name)
            if not 0.0 <= w <= 1.0:
                raise ConfigError(f"{name} 必须在 [0, 1] 区间: {w}")
        # 权重表必须随信标数单调不减
        last = -1.0
        for count in sorted(self.confidence_weights):
            w = self.confidence_weights[count]
            if not 0.0 <= w <= 1.0 or w < last:
                raise ConfigError(f"confidence_weights 非单调或越界: {self.confidence_weights}")
            last = w
        return self

    @classmethod
    def from_sections(cls, sections: Dict[str, Dict[str, Any]]) -> "FusionConfig":
        """由 rssi_model/solver/pdr/fusion 各节合成，未知键忽略"""
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for section in ("rssi_model", "solver", "pdr", "fusion"):
            for key, value in (sections.get(section) or {}).items():
                if key in known:
                    values[key] = value
        if "confidence_weights" in values:
            values["confidence_weights"] = {
                int(k): float(v) for k, v in values["confidence_weights"].items()
            }
        if values.get("start_position") is not None:
            try:
                values["start_position"] = tuple(float(v) for v in values["start_position"])
            except (TypeError, ValueError):
                raise ConfigError(f"start_position 应为 [x, y]: {values['start_position']}") from None
        if "tx_power" in values:
            values["tx_power"] = int(values["tx_power"])
        return cls(**values)


_SECTION_KEYS = {
    "rssi_model": ("tx_power", "path_loss_exponent"),
    "solver": ("max_beacons", "rssi_weighting", "sanity_margin"),
    "pdr": ("stride_length", "spike_threshold", "min_step_interval", "dynamic_stride"),
}


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "device_id": _env_or_default("BLE_DEVICE_ID", "phone-1"),
                "scan_topic": _env_or_default("BLE_MQTT_SCAN_TOPIC", "/device/blueTooth/scan/+"),
                "motion_topic": _env_or_default("BLE_MQTT_MOTION_TOPIC", "/device/motion/+"),
                "position_topic": _env_or_default(
                    "BLE_MQTT_POSITION_TOPIC", "/device/location/{deviceId}"
                ),
            },
            "rssi_model": {
                "tx_power": _env_or_default("BLE_RSSI_TX_POWER", -59, int),
                "path_loss_exponent": _env_or_default("BLE_RSSI_PATH_LOSS", 2.0, float),
            },
            "solver": {
                "max_beacons": _env_or_default("BLE_SOLVER_MAX_BEACONS", 6, int),
                "rssi_weighting": _env_or_default("BLE_SOLVER_RSSI_WEIGHTING", False, _as_bool),
                "sanity_margin": _env_or_default("BLE_SOLVER_SANITY_MARGIN", 2.0, float),
            },
            "pdr": {
                "stride_length": _env_or_default("BLE_PDR_STRIDE", 0.7, float),
                "spike_threshold": _env_or_default("BLE_PDR_SPIKE_THRESHOLD", 0.4, float),
                "min_step_interval": _env_or_default("BLE_PDR_MIN_STEP_INTERVAL", 0.4, float),
                "dynamic_stride": _env_or_default("BLE_PDR_DYNAMIC_STRIDE", True, _as_bool),
            },
            "fusion": {
                "tick_period": _env_or_default("BLE_FUSION_TICK", 0.5, float),
                "ble_enabled": _env_or_default("BLE_FUSION_BLE", True, _as_bool),
                "pdr_enabled": _env_or_default("BLE_FUSION_PDR", True, _as_bool),
                "confidence_weighting": _env_or_default("BLE_FUSION_CONFIDENCE", True, _as_bool),
                "world_scale": _env_or_default("BLE_FUSION_WORLD_SCALE", 1.0, float),
                "map_width": _env_or_default("BLE_FUSION_MAP_WIDTH", 100.0, float),
                "map_height": _env_or_default("BLE_FUSION_MAP_HEIGHT", 100.0, float),
                "freshness_timeout": _env_or_default("BLE_FUSION_FRESHNESS", 2.0, float),
                "max_jump_meters": _env_or_default("BLE_FUSION_MAX_JUMP", 4.0, float),
                "moderate_stale_ticks": 2.0,
                "long_idle_ticks": 5.0,
                "history_capacity": _env_or_default("BLE_FUSION_HISTORY", 4, int),
                "stability_tolerance_meters": 0.8,
                "snap_distance_meters": 2.0,
                "stable_blend_weight": 0.2,
                "far_blend_weight": 0.25,
                # 无 BLE 部署时的起点 [x, y]（地图单位），null 表示等待首个 BLE 定位
                "start_position": None,
                "confidence_weights": dict(DEFAULT_CONFIDENCE_WEIGHTS),
            },
            "diagnostics": {
                "enabled": _env_or_default("BLE_DIAGNOSTICS", False, _as_bool),
                "csv_path": _env_or_default(
                    "BLE_DIAGNOSTICS_CSV", os.path.join(".", "logs", "fusion_log.csv")
                ),
            },
            "paths": {
                "beacon_db": _env_or_default(
                    "BLE_PATH_BEACON_DB", os.path.join(".", "beacon", "beacons.csv")
                ),
            },
            "logging": {
                "level": _env_or_default("BLE_LOG_LEVEL", "INFO"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except yaml.YAMLError as e:
            # 配置文件损坏时回退到默认配置
            logger.error("配置文件解析失败，使用默认配置: %s", e)
            self.config = copy.deepcopy(self.default_config)

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置文件失败: %s", e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_diagnostics_config(self):
        return self.config.get("diagnostics", {})

    def get_log_level(self) -> str:
        return str(self.config.get("logging", {}).get("level", "INFO"))

    def get_paths(self):
        return self.config.get("paths", {})

    def get_beacon_db_path(self):
        return self.get_paths()["beacon_db"]

    def get_fusion_config(self) -> FusionConfig:
        return FusionConfig.from_sections(self.config).validate()

    def set_rssi_model_config(self, tx_power: int, path_loss_exponent: float):
        self.config["rssi_model"]["tx_power"] = tx_power
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        self.save_config()

    def set_fusion_config(self, **changes: Any) -> FusionConfig:
        """校验后写回对应配置节，返回新的快照"""
        new_config = self.get_fusion_config().with_changes(**changes).validate()
        for key, value in changes.items():
            section = next(
                (name for name, keys in _SECTION_KEYS.items() if key in keys), "fusion"
            )
            self.config.setdefault(section, {})[key] = list(value) if isinstance(value, tuple) else value
        self.save_config()
        return new_config
