"""
统计面板

rebuild() 生成每个站点的面板内容，deploy() 写出 stats.json 和 CSV 历史。
"""

import os
import json
import logging
import threading
from typing import Dict, List, Optional

from .breaker import CircuitBreaker
from .config import Config, StatsConst
from .delta import calculate_deltas, describe, to_row
from .errors import ConfigurationMissing, NonMonotonicDelta, PTGuardError
from .snapshot import Snapshot
from .store import HistoryStore
from .utils import fmt_signed_size, fmt_time, wall_time

logger = logging.getLogger("ptguard")

ROW_HEADER = ["", "Date", "Up", "Down", "Buffer", "Warning Buffer", "Ratio"]
DELTA_HEADER = ["Date", "Up", "Down", "Buffer", "Warning Buffer", "Ratio"]


def _delta_table(entries: List[Snapshot], target_ratio: float) -> List[List[str]]:
    """每日/每周/每月统计表，新的在前；第一条没有对比对象，不显示"""
    rows = []
    for d in calculate_deltas(entries, target_ratio)[1:]:
        rows.append([
            fmt_time(d.timestamp)[:10],
            fmt_signed_size(d.up),
            fmt_signed_size(d.down),
            fmt_signed_size(d.buffer),
            fmt_signed_size(d.warning_buffer),
            f"{d.ratio:+.3f}",
        ])
    rows.reverse()
    return rows


class DashboardBuilder:
    def __init__(self, store: HistoryStore, cfg: Config, breaker: CircuitBreaker, stats_dir: str):
        self.store = store
        self.cfg = cfg
        self.breaker = breaker
        self.stats_dir = stats_dir
        self.content: Dict[str, dict] = {}
        self.updated_at: float = 0
        self.lock = threading.Lock()

    def _tracker_content(self, tracker: str, recent: List[Snapshot]) -> dict:
        target = self.cfg.stats_config(tracker).target_ratio
        rows = []
        for i, s in enumerate(recent):
            previous = recent[i + 1] if i + 1 < len(recent) else None
            rows.append(to_row(s, previous, target))
        rows = rows[:self.cfg.dashboard_entries]

        latest = recent[0] if recent else None
        progress = ""
        buffer = warning_buffer = 0
        if latest is not None:
            try:
                progress = describe(latest, recent[1] if len(recent) > 1 else None, target)
            except NonMonotonicDelta:
                progress = latest.describe(target)
            buffer, warning_buffer = latest.buffers(target)

        return {
            'tracker': tracker,
            'target_ratio': target,
            'progress': progress,
            'latest': {
                'up': latest.up, 'down': latest.down, 'ratio': latest.ratio,
                'timestamp': latest.timestamp, 'buffer': buffer, 'warning_buffer': warning_buffer,
            } if latest else None,
            'header': ROW_HEADER,
            'rows': rows,
            'delta_header': DELTA_HEADER,
            'daily': _delta_table(self.store.filter_by_tracker(tracker, 'start_of_day'), target),
            'weekly': _delta_table(self.store.filter_by_tracker(tracker, 'start_of_week'), target),
            'monthly': _delta_table(self.store.filter_by_tracker(tracker, 'start_of_month'), target),
            'breaker': self.breaker.is_disabled(tracker),
            'autosnatch': self.breaker.autosnatch_enabled(tracker),
        }

    def rebuild(self, recent: Dict[str, List[Snapshot]]):
        content = {}
        for tracker, entries in recent.items():
            try:
                content[tracker] = self._tracker_content(tracker, entries)
            except ConfigurationMissing:
                continue
            except PTGuardError as e:
                logger.error(f"[{tracker}] 生成面板失败: {e}")
        with self.lock:
            self.content = content
            self.updated_at = wall_time()
        logger.debug(f"📊 面板已更新 ({len(content)} 个站点)")

    def snapshot(self) -> dict:
        with self.lock:
            return {
                'updated_at': self.updated_at,
                'version': StatsConst.SCHEMA_VERSION,
                'trackers': dict(self.content),
            }

    def tracker(self, name: str) -> Optional[dict]:
        with self.lock:
            return self.content.get(name)

    def deploy(self) -> bool:
        try:
            os.makedirs(self.stats_dir, exist_ok=True)
            path = os.path.join(self.stats_dir, "stats.json")
            tmp = path + ".tmp"
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(self.snapshot(), f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)

            for tracker in list(self.content):
                self.store.export_csv(tracker, os.path.join(self.stats_dir, f"{tracker}.csv"))
        except (OSError, PTGuardError) as e:
            logger.error(f"❌ 面板部署失败: {e}")
            return False
        return True
