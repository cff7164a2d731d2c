from __future__ import annotations

import logging
import os
from typing import Dict, Optional, cast

import pandas as pd

from .models import Beacon, Position
from .config_manager import ConfigManager


logger = logging.getLogger(__name__)

COORD_COLUMNS = ["x", "y"]


class BeaconStore:
    """信标 ID -> 地图坐标登记表（pandas + CSV）"""

    def __init__(self, config_manager: Optional[ConfigManager] = None, csv_path: Optional[str] = None):
        # 使用 DataFrame 管理，索引为 beacon_id
        self._df = pd.DataFrame(columns=COORD_COLUMNS)
        self._df.index.name = "beacon_id"
        self._config = config_manager
        self._csv_path = csv_path

    @property
    def csv_path(self) -> str:
        if self._csv_path:
            return self._csv_path
        config = self._config or ConfigManager()
        return config.get_beacon_db_path()

    def __len__(self) -> int:
        return len(self._df)

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        if "beacon_id" not in df.columns:
            raise KeyError("CSV 文件缺少 'beacon_id' 列")
        for col in COORD_COLUMNS:
            if col not in df.columns:
                df[col] = 0.0
            # 转为数值，非法为 NaN 的填 0.0
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)
        df = df[["beacon_id", *COORD_COLUMNS]]
        df = df.drop_duplicates(subset=["beacon_id"], keep="last").set_index("beacon_id")
        df = df.astype({"x": "float64", "y": "float64"})
        df.index = df.index.astype(str)
        df.index.name = "beacon_id"
        return df.sort_index()

    # ---- Load/Save ----
    def load(self, csv_path: Optional[str] = None) -> None:
        path = csv_path or self.csv_path
        if not os.path.exists(path):
            logger.warning("信标登记表不存在，生成示例文件: %s", path)
            self._create_sample(path)
            return
        df = pd.read_csv(path, dtype={"beacon_id": str})
        self._df = self._normalize_df(df)
        logger.info("已加载 %d 个信标坐标: %s", len(self._df), path)

    def _create_sample(self, csv_path: str) -> None:
        df = pd.DataFrame([
            {"beacon_id": "0001", "x": 0.0, "y": 0.0},
            {"beacon_id": "0002", "x": 10.0, "y": 0.0},
            {"beacon_id": "0003", "x": 0.0, "y": 10.0},
        ])
        self._df = self._normalize_df(df)
        self.save(csv_path)

    def save(self, csv_path: Optional[str] = None) -> None:
        path = csv_path or self.csv_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        # 将索引写为列 beacon_id
        self._df.to_csv(path, index=True, index_label="beacon_id", encoding="utf-8")

    # ---- CRUD ----
    def add(self, beacon: Beacon) -> None:
        # 新增或覆盖
        self._df.loc[beacon.beacon_id, COORD_COLUMNS] = [float(beacon.x), float(beacon.y)]
        self.save()

    def update(self, beacon: Beacon) -> bool:
        if beacon.beacon_id in self._df.index:
            self._df.loc[beacon.beacon_id, COORD_COLUMNS] = [float(beacon.x), float(beacon.y)]
            self.save()
            return True
        return False

    def delete(self, beacon_id: str) -> bool:
        if beacon_id in self._df.index:
            self._df = self._df.drop(index=beacon_id)
            self.save()
            return True
        return False

    # ---- Accessors ----
    def has(self, beacon_id: str) -> bool:
        return beacon_id in self._df.index

    def get(self, beacon_id: str) -> Optional[Beacon]:
        if beacon_id not in self._df.index:
            return None
        row = cast(pd.Series, self._df.loc[beacon_id])
        return Beacon(beacon_id=str(beacon_id), x=float(row.at["x"]), y=float(row.at["y"]))

    def resolve(self, beacon_id: str) -> Optional[Position]:
        beacon = self.get(beacon_id)
        return beacon.position if beacon else None

    def all(self) -> Dict[str, Beacon]:
        result: Dict[str, Beacon] = {}
        for beacon_id, row in self._df.iterrows():
            row_s = cast(pd.Series, row)
            key = str(beacon_id)
            result[key] = Beacon(beacon_id=key, x=float(row_s.at["x"]), y=float(row_s.at["y"]))
        return result
