"""
熔断标记 (每站点一个 "autosnatch 已禁用")

所有站点共用一把锁；标记只由监控循环的拒绝分支设置，
只有重新加载配置才会清除，没有自动恢复。
"""

import logging
import threading
from typing import Dict, Optional

from .config import Config

logger = logging.getLogger("ptguard")


class CircuitBreaker:
    def __init__(self, cfg: Optional[Config] = None):
        self.lock = threading.Lock()
        self._disabled: Dict[str, bool] = {}
        self._reasons: Dict[str, str] = {}
        self._cfg = cfg

    def trip(self, tracker: str, reason: str = "") -> bool:
        """设置熔断，返回是否是新触发的"""
        with self.lock:
            was_disabled = self._disabled.get(tracker, False)
            self._disabled[tracker] = True
            self._reasons[tracker] = reason
            if self._cfg is not None:
                for t in self._cfg.trackers:
                    if t.name == tracker:
                        t.autosnatch = False
        if not was_disabled:
            logger.warning(f"⛔ [{tracker}] 已熔断，停止自动抓取: {reason}")
        return not was_disabled

    def is_disabled(self, tracker: str) -> bool:
        with self.lock:
            return self._disabled.get(tracker, False)

    def autosnatch_enabled(self, tracker: str) -> bool:
        with self.lock:
            if self._disabled.get(tracker, False):
                return False
            if self._cfg is not None:
                for t in self._cfg.trackers:
                    if t.name == tracker:
                        return t.autosnatch
            return True

    def states(self) -> Dict[str, dict]:
        with self.lock:
            names = list(self._cfg.tracker_labels()) if self._cfg is not None else []
            for name in self._disabled:
                if name not in names:
                    names.append(name)
            return {
                name: {
                    'disabled': self._disabled.get(name, False),
                    'reason': self._reasons.get(name, ""),
                }
                for name in names
            }

    def reset_all(self, cfg: Optional[Config] = None) -> int:
        with self.lock:
            if cfg is not None:
                self._cfg = cfg
            cleared = sum(1 for v in self._disabled.values() if v)
            self._disabled.clear()
            self._reasons.clear()
        if cleared:
            logger.info(f"🔄 已清除 {cleared} 个站点的熔断标记")
        return cleared
