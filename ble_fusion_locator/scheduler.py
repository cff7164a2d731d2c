from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicScheduler:
    """
    周期定时器：任何时刻最多只有一个待触发的 tick。
    restart 在锁内取消旧计划并以新周期重启；世代号保证已取消的计划不会再触发。
    """

    def __init__(self, callback: Callable[[], None], name: str = "fusion-tick"):
        self.callback = callback
        self.name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._period: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._period is not None

    @property
    def period(self) -> Optional[float]:
        return self._period

    def start(self, period: float) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive: {period}")
        with self._lock:
            self._cancel_locked()
            self._period = period
            self._arm_locked(self._generation)
        logger.info("融合定时器启动，周期 %.3fs", period)

    def restart(self, period: float) -> None:
        self.start(period)

    def stop(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._period = None

    def _cancel_locked(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_locked(self, generation: int) -> None:
        timer = threading.Timer(self._period, self._fire, args=(generation,))
        timer.daemon = True
        timer.name = self.name
        self._timer = timer
        timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._period is None:
                return
        try:
            self.callback()
        except Exception:
            logger.exception("融合周期执行出错")
        with self._lock:
            # 回调期间可能已被 restart/stop
            if generation == self._generation and self._period is not None:
                self._arm_locked(generation)
