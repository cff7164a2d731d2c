from __future__ import annotations

import logging
import time
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .beacon_store import BeaconStore
from .config_manager import ConfigManager
from .engine import FusionEngine
from .models import MotionEvent, MotionEventKind, Position, ScanRecord


logger = logging.getLogger(__name__)


def format_position(device_id: str, position: Position, beacon_count: int) -> str:
    """上行位置报文：设备ID,x,y,信标数"""
    return f"{device_id},{position.x:.3f},{position.y:.3f},{beacon_count}"


class MQTTFusionProcessor:
    """
    MQTT 桥接：扫描与运动消息写入引擎缓冲区（不等待融合周期），
    融合周期提交的新位置发布到上行主题。
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        engine: FusionEngine,
        beacon_store: Optional[BeaconStore] = None,
    ):
        self.config_manager = config_manager
        self.engine = engine
        self.beacon_store = beacon_store or BeaconStore(config_manager)
        self.client: Optional[mqtt.Client] = None

        mqtt_config = self.config_manager.get_mqtt_config()
        self.device_id = str(mqtt_config.get("device_id", "phone-1"))
        self._unsubscribe = self.engine.subscribe(self.publish_position)

    # ---------- Message handling ----------
    def handle_message(self, topic: str, payload: str, timestamp: Optional[float] = None) -> bool:
        """按主题分发消息，返回是否被识别并处理"""
        mqtt_config = self.config_manager.get_mqtt_config()
        now = time.time() if timestamp is None else timestamp
        if mqtt.topic_matches_sub(mqtt_config["scan_topic"], topic):
            record = ScanRecord.parse(payload)
            if record is None or record.is_empty:
                logger.warning("消息解析无有效信标数据: %s", payload)
                return False
            count = self.engine.ingest_scan(record, self.beacon_store, now)
            logger.debug("收到扫描 %s 个信标，登记在册 %s 个", len(record), count)
            return True
        if mqtt.topic_matches_sub(mqtt_config["motion_topic"], topic):
            event = MotionEvent.parse(payload)
            if event is None:
                logger.warning("无法解析运动数据: %s", payload)
                return False
            if event.kind is MotionEventKind.SEED:
                self.engine.seed(Position(event.value, event.extra))
            else:
                self.engine.integrator.apply(event, now)
            return True
        logger.debug("忽略未知主题: %s", topic)
        return False

    def publish_position(self, position: Position, beacon_count: int) -> None:
        if self.client is None:
            return
        topic = self.config_manager.get_mqtt_config().get(
            "position_topic", "/device/location/{deviceId}"
        )
        message = format_position(self.device_id, position, beacon_count)
        self.client.publish(topic.format(deviceId=self.device_id), message)

    # ---------- MQTT ----------
    def start_mqtt_client(self):
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        try:
            mqtt_config = self.config_manager.get_mqtt_config()
            self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever()
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)

    def stop_mqtt_client(self):
        self._unsubscribe()
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
                logger.info("MQTT连接已断开")
            except Exception as e:
                logger.error("断开MQTT连接时出错: %s", e)

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info("成功连接到MQTT服务器")
            mqtt_config = self.config_manager.get_mqtt_config()
            for key in ("scan_topic", "motion_topic"):
                client.subscribe(mqtt_config[key])
                logger.info("已订阅主题: %s", mqtt_config[key])
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
            self.handle_message(msg.topic, payload)
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
