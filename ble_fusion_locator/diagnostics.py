from __future__ import annotations

import logging
import os
import threading
from typing import Dict, List, Protocol

import pandas as pd

from .models import DiagnosticRecord


logger = logging.getLogger(__name__)

CSV_COLUMNS = ["source", "timestamp", "x", "y", "beacon_count", "beacons"]


class DiagnosticsSink(Protocol):
    def record(self, record: DiagnosticRecord) -> None: ...


class NullDiagnostics:
    def record(self, record: DiagnosticRecord) -> None:
        return None


class LoggingDiagnostics:
    """把每帧诊断写入 DEBUG 日志"""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def record(self, record: DiagnosticRecord) -> None:
        self.log.debug(
            "%s (%.3f, %.3f) 信标数: %s",
            record.source.value,
            record.position.x,
            record.position.y,
            record.beacon_count,
        )


class CsvDiagnostics:
    """缓冲诊断帧，按批追加写入 CSV（pandas）"""

    def __init__(self, csv_path: str, flush_every: int = 50, truncate: bool = True):
        self.csv_path = csv_path
        self.flush_every = flush_every
        self._rows: List[Dict[str, object]] = []
        self._lock = threading.Lock()
        # 每次启动重新开始记录
        if truncate and os.path.exists(csv_path):
            os.remove(csv_path)

    def record(self, record: DiagnosticRecord) -> None:
        with self._lock:
            self._rows.append(record.to_row())
            pending = len(self._rows)
        if pending >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            rows, self._rows = self._rows, []
        if not rows:
            return
        os.makedirs(os.path.dirname(self.csv_path) or ".", exist_ok=True)
        df = pd.DataFrame(rows, columns=CSV_COLUMNS)
        write_header = not os.path.exists(self.csv_path)
        df.to_csv(self.csv_path, mode="a", header=write_header, index=False, encoding="utf-8")

    def close(self) -> None:
        try:
            self.flush()
        except OSError as e:
            logger.error("写入诊断日志失败: %s", e)
