from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from .beacon_store import BeaconStore
from .calculator import MultilaterationSolver
from .config_manager import ConfigManager
from .diagnostics import CsvDiagnostics, DiagnosticsSink, LoggingDiagnostics
from .engine import FusionEngine
from .models import BeaconObservation, Position
from .mqtt_processor import MQTTFusionProcessor


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str | int = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def build_engine(config: ConfigManager) -> FusionEngine:
    diag_config = config.get_diagnostics_config()
    diagnostics: DiagnosticsSink
    if diag_config.get("enabled"):
        diagnostics = CsvDiagnostics(diag_config["csv_path"])
    else:
        diagnostics = LoggingDiagnostics()
    fusion = config.get_fusion_config()
    engine = FusionEngine(fusion, diagnostics=diagnostics)
    if fusion.start_position is not None:
        # 无 BLE 时只有给定起点才能开始航位推算
        engine.seed(Position(*fusion.start_position))
    elif not fusion.ble_enabled:
        logger.warning("BLE 已关闭且未配置 fusion.start_position，需通过 seed 消息指定起点")
    return engine


def run_mqtt(args):
    config = ConfigManager(args.config)
    if not getattr(args, "log_level", None):
        setup_logging(config.get_log_level())
    store = BeaconStore(config)
    store.load()
    engine = build_engine(config)
    processor = MQTTFusionProcessor(config, engine, store)

    engine.start()
    t = threading.Thread(target=processor.start_mqtt_client, daemon=True)
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        engine.stop()
        processor.stop_mqtt_client()
        if isinstance(engine.diagnostics, CsvDiagnostics):
            engine.diagnostics.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()


def parse_reading(text: str) -> tuple[str, int]:
    beacon_id, _, rssi = text.rpartition(":")
    if not beacon_id:
        raise argparse.ArgumentTypeError(f"格式应为 ID:RSSI，收到 {text!r}")
    try:
        return beacon_id, int(rssi)
    except ValueError:
        raise argparse.ArgumentTypeError(f"RSSI 不是整数: {text!r}") from None


def solve_once(args):
    """使用登记表对一组读数做一次多边定位"""
    config = ConfigManager(args.config)
    fusion = config.get_fusion_config()
    store = BeaconStore(config)
    store.load()

    now = time.time()
    observations: List[BeaconObservation] = []
    for beacon_id, rssi in args.readings:
        position = store.resolve(beacon_id)
        if position is None:
            logger.warning("未登记的信标: %s", beacon_id)
            continue
        observations.append(
            BeaconObservation(beacon_id=beacon_id, position=position, rssi=rssi, last_seen=now)
        )

    solver = MultilaterationSolver(
        max_beacons=fusion.max_beacons,
        rssi_weighting=fusion.rssi_weighting,
        bounds=(fusion.map_width, fusion.map_height),
        sanity_margin=fusion.sanity_margin_distance,
    )
    ranged = solver.range_observations(
        observations, fusion.tx_power, fusion.path_loss_exponent, distance_scale=fusion.world_scale
    )
    candidate = solver.solve(ranged)
    if candidate is None:
        print("无有效信标")
        return 1
    print(
        f"x={candidate.position.x:.3f} y={candidate.position.y:.3f} "
        f"confidence={candidate.confidence} method={candidate.method.value}"
    )
    return 0


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="ble-fusion-locator", description="BLE + PDR Fusion Locator CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_FUSION_CONFIG")
    parser.add_argument("--log-level", default=None, help="日志级别，默认取配置文件 logging.level")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行融合引擎与 MQTT 桥接")
    p_run.set_defaults(func=run_mqtt)

    p_solve = sub.add_parser("solve", help="对一组 ID:RSSI 读数做一次多边定位")
    p_solve.add_argument("readings", nargs="+", type=parse_reading, help="信标读数，例如 0001:-62")
    p_solve.set_defaults(func=solve_once)

    args = parser.parse_args(argv)
    if args.log_level:
        setup_logging(args.log_level)
    # 无子命令/无参数时默认启动服务器
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
