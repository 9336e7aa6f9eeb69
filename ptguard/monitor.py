"""
统计监控与熔断循环

每个不同的统计周期一个定时线程，定时线程只往同一个事件队列里放入周期值；
唯一的监控线程按顺序处理该周期下的所有站点，处理完后重建并部署一次面板。
"""

import os
import queue
import logging
import threading
from typing import Dict, List, Optional, Tuple

from .breaker import CircuitBreaker
from .config import Config, group_by_period
from .dashboard import DashboardBuilder
from .delta import describe
from .errors import (ConfigError, ConfigurationMissing, NonMonotonicDelta, PersistenceFailure,
                     SnapshotNotFound, TrackerUnreachable)
from .notify import ERROR, INFO, Notifier, build_notifier
from .policy import RejectReason, Verdict, evaluate_with_config
from .snapshot import Snapshot
from .store import HistoryStore
from .trackers import TrackerClient, build_tracker_clients
from .utils import LogBuffer, attach_log_buffer, log_buffer, setup_logging

logger = logging.getLogger("ptguard")

LEGACY_CSV_SUFFIX = "_stats.csv"

ALERTS = {
    RejectReason.RATIO_BELOW_MINIMUM: "⛔ 分享率过低，已停止自动抓取",
    RejectReason.BUFFER_DROP_EXCEEDED: "⛔ 缓冲下降过快，已停止自动抓取",
}


# ════════════════════════════════════════════════════════════════════════════════
# 运行环境
# ════════════════════════════════════════════════════════════════════════════════

class Environment:
    """启动时构建一次，传给监控循环和 API 的共享上下文"""

    def __init__(self, cfg: Config, store: HistoryStore, trackers: TrackerClient,
                 notifier: Notifier, breaker: Optional[CircuitBreaker] = None,
                 dashboard: Optional[DashboardBuilder] = None, config_path: str = "",
                 logs: LogBuffer = log_buffer):
        self.cfg = cfg
        self.config_path = config_path
        self.store = store
        self.trackers = trackers
        self.notifier = notifier
        self.breaker = breaker or CircuitBreaker(cfg)
        self.dashboard = dashboard or DashboardBuilder(store, cfg, self.breaker, cfg.stats_dir)
        self.log_buffer = logs

    @classmethod
    def setup(cls, config_path: str) -> 'Environment':
        cfg, err = Config.load(config_path)
        if err:
            raise ConfigError(f"配置文件加载失败 {config_path}: {err}")
        attach_log_buffer(setup_logging(cfg.log_level, cfg.log_file))

        # 数据库打不开时直接失败，监控不启动
        store = HistoryStore(cfg.db_path)
        env = cls(cfg, store, build_tracker_clients(cfg),
                  build_notifier(cfg.telegram_bot_token, cfg.telegram_chat_id),
                  config_path=config_path)
        env.import_legacy_history()
        logger.info(f"✅ 已加载配置 {config_path}: {len(cfg.stats_trackers())} 个站点启用统计")
        return env

    def import_legacy_history(self) -> int:
        imported = 0
        for t in self.cfg.stats_trackers():
            path = os.path.join(self.cfg.stats_dir, f"{t.name}{LEGACY_CSV_SUFFIX}")
            try:
                imported += self.store.import_csv(t.name, path)
            except (OSError, PersistenceFailure) as e:
                logger.error(f"[{t.name}] 导入历史统计失败: {e}")
        return imported

    def reload(self) -> Tuple[bool, str]:
        """重新读取配置并清除所有熔断标记；统计周期分组不变"""
        if not self.config_path:
            return False, "没有配置文件路径"
        cfg, err = Config.load(self.config_path)
        if err:
            logger.error(f"❌ 重新加载配置失败: {err}")
            return False, err
        self.cfg = cfg
        self.dashboard.cfg = cfg
        cleared = self.breaker.reset_all(cfg)
        logger.info(f"🔄 配置已重新加载，清除 {cleared} 个熔断标记")
        return True, f"已清除 {cleared} 个熔断标记"

    def close(self):
        self.notifier.close()


# ════════════════════════════════════════════════════════════════════════════════
# 定时器
# ════════════════════════════════════════════════════════════════════════════════

class PeriodTimer:
    """每 interval 秒往事件队列放入一次周期值"""

    def __init__(self, period: int, events: queue.Queue, interval: float):
        self.period = period
        self.events = events
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"StatsTimer-{self.period}h")
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def _run(self):
        while not self._stop_event.wait(self.interval):
            self.events.put(self.period)


# ════════════════════════════════════════════════════════════════════════════════
# 监控循环
# ════════════════════════════════════════════════════════════════════════════════

class StatsMonitor:
    """统计监控引擎"""

    def __init__(self, env: Environment, hour: float = 3600.0):
        self.env = env
        self.hour = hour
        # 只在启动时分组，重新加载配置不会重建
        self.groups: Dict[int, List[str]] = group_by_period(env.cfg)
        self.events: queue.Queue = queue.Queue()
        self.timers: Dict[int, PeriodTimer] = {}
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self):
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="StatsMonitor")
        self._thread.start()
        logger.info(f"🚀 统计监控已启动 (周期: {', '.join(f'{p}h' for p in sorted(self.groups))})")

    def stop(self):
        self.running = False
        self._stop_event.set()
        for timer in self.timers.values():
            timer.stop()
        # 唤醒阻塞在队列上的监控线程
        self.events.put(None)
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("🛑 统计监控已停止")

    def stop_timer(self, period: int):
        timer = self.timers.get(period)
        if timer:
            timer.stop()
            logger.warning(f"⚠️ {period}h 定时器已停止，其他周期继续运行")

    def _run_loop(self):
        try:
            self.initial_pass()
        except Exception as e:
            logger.error(f"首次统计异常: {e}")
        if self._stop_event.is_set():
            return

        for period in sorted(self.groups):
            timer = PeriodTimer(period, self.events, period * self.hour)
            self.timers[period] = timer
            timer.start()

        while not self._stop_event.is_set():
            period = self.events.get()
            if period is None or self._stop_event.is_set():
                break
            try:
                self.run_tick(period)
            except Exception as e:
                logger.error(f"统计监控异常: {e}")

    def initial_pass(self):
        """启动时立即采集所有站点一次，不等定时器"""
        trackers = [t for group in self.groups.values() for t in group]
        for tracker in trackers:
            self.process_tracker(tracker)
        self.update_aggregates(trackers)
        self.refresh_dashboard()

    def run_tick(self, period: int) -> Dict[str, Optional[Verdict]]:
        trackers = self.groups.get(period, [])
        logger.debug(f"⏰ {period}h 周期触发: {', '.join(trackers)}")
        verdicts = {t: self.process_tracker(t) for t in trackers}
        self.update_aggregates(trackers)
        # 无论是否熔断，每次触发都重建一次面板
        self.refresh_dashboard()
        return verdicts

    def previous_sample(self, current: Snapshot) -> Optional[Snapshot]:
        """current 之前最后写入的采样；没有历史记录时为 None"""
        return self.env.store.previous_collected(current.tracker, current.id)

    def process_tracker(self, tracker: str) -> Optional[Verdict]:
        """单个站点的失败只记录，不影响同一周期的其他站点"""
        try:
            return self._process_tracker(tracker)
        except Exception as e:
            logger.error(f"❌ [{tracker}] 处理统计数据异常: {e}")
            self._notify(f"处理统计数据异常: {e}", tracker, INFO)
            return None

    def _process_tracker(self, tracker: str) -> Optional[Verdict]:
        try:
            stats = self.env.cfg.stats_config(tracker)
        except ConfigurationMissing:
            logger.debug(f"[{tracker}] 没有统计配置，跳过")
            return None
        except ConfigError as e:
            logger.warning(f"[{tracker}] {e}")
            return None

        try:
            counters = self.env.trackers.fetch_counters(tracker)
        except TrackerUnreachable as e:
            logger.error(f"❌ {e}")
            self._notify(f"获取统计数据失败: {e.reason}", tracker, INFO)
            return None

        try:
            current = self.env.store.save(Snapshot.collect(tracker, counters.up, counters.down, counters.ratio))
            previous = self.previous_sample(current)
        except PersistenceFailure as e:
            logger.error(f"❌ [{tracker}] {e}")
            return None

        try:
            progress = describe(current, previous, stats.target_ratio)
            verdict = evaluate_with_config(current, previous, stats)
        except NonMonotonicDelta as e:
            # 上一条记录的时间晚于本次采样，无法判断，不放行也不熔断
            logger.error(f"❌ {e}")
            self._notify(f"⚠️ 采样时间早于上一条记录，本次未做判断\n{e}", tracker, ERROR)
            return None

        logger.info(f"📈 [{tracker}] {progress}")
        self._notify(progress, tracker, INFO)

        if not verdict:
            self.env.breaker.trip(tracker, verdict.detail)
            self._notify(f"{ALERTS[verdict.reason]}\n{verdict.detail}", tracker, ERROR)
        return verdict

    def update_aggregates(self, trackers: List[str]):
        try:
            self.env.store.update_aggregates(trackers)
        except PersistenceFailure as e:
            logger.error(f"❌ 每日统计更新失败: {e}")

    def refresh_dashboard(self):
        recent: Dict[str, List[Snapshot]] = {}
        for t in self.env.cfg.stats_trackers():
            try:
                # 多取一条，最后一行也能显示差值
                recent[t.name] = self.env.store.most_recent(t.name, self.env.cfg.dashboard_entries + 1)
            except SnapshotNotFound:
                recent[t.name] = []
            except PersistenceFailure as e:
                logger.error(f"❌ [{t.name}] {e}")
        self.env.dashboard.rebuild(recent)
        self.env.dashboard.deploy()

    def _notify(self, message: str, tracker: str, severity: str):
        try:
            self.env.notifier.notify(message, tracker, severity)
        except Exception as e:
            logger.warning(f"⚠️ [{tracker}] 通知发送失败: {e}")
