"""BLE + PDR Fusion Locator package.

This package provides:
- ConfigManager / FusionConfig: YAML-based configuration management
- MultilaterationSolver: RSSI distance model and 1/2/N-beacon position solving
- StepIntegrator: pedestrian dead reckoning from steps and calibrated heading
- FusionEngine: periodic fusion tick with jump gate and confidence blending
- MQTTFusionProcessor: MQTT ingestion of scans/motion and fused position publishing
"""

from .config_manager import ConfigManager, FusionConfig
from .calculator import MultilaterationSolver, rssi_to_distance
from .pdr import StepIntegrator
from .engine import FusionEngine
from .mqtt_processor import MQTTFusionProcessor

__all__ = [
    "ConfigManager",
    "FusionConfig",
    "MultilaterationSolver",
    "rssi_to_distance",
    "StepIntegrator",
    "FusionEngine",
    "MQTTFusionProcessor",
]
