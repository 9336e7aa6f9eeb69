"""
统计历史数据库 (sqlite)

每个站点一条有序的快照记录；采样快照 collected=1，
每日/每周/每月的插值快照 collected=0 并带对应的 start_of_* 标记。
"""

import os
import csv
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import date, datetime, time as dtime, timedelta
from typing import Callable, Dict, List, Optional

from .config import StatsConst
from .errors import InterpolationOutOfRange, PersistenceFailure, SnapshotNotFound
from .interpolate import interpolate
from .snapshot import Snapshot
from .utils import wall_time

logger = logging.getLogger("ptguard")

COLUMNS = ('id, tracker, up, down, ratio, timestamp, collected, start_of_day, '
           'start_of_week, start_of_month, schema_version')

STATS_KINDS = ('collected', 'start_of_day', 'start_of_week', 'start_of_month')


def _migrate_v0(c: sqlite3.Cursor):
    # v0 旧记录没有采集标记，全部是真实采样
    c.execute('UPDATE stats_entries SET collected = 1 WHERE schema_version = 0')


# 版本 -> 升级到下一版本的步骤
MIGRATIONS: Dict[int, Callable[[sqlite3.Cursor], None]] = {
    0: _migrate_v0,
}


def _row_to_snapshot(row) -> Snapshot:
    return Snapshot(
        id=row[0], tracker=row[1], up=int(row[2]), down=int(row[3]), ratio=float(row[4]),
        timestamp=float(row[5]), collected=bool(row[6]), start_of_day=bool(row[7]),
        start_of_week=bool(row[8]), start_of_month=bool(row[9]), schema_version=int(row[10]),
    )


def _day_start(d: date) -> float:
    return datetime.combine(d, dtime()).timestamp()


class HistoryStore:
    def __init__(self, path: str = "ptguard.db"):
        self.path = path
        self._lock = threading.Lock()
        try:
            self._init_db()
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"无法打开统计数据库 {path}: {e}") from e

    def _init_db(self):
        with self._lock:
            conn = sqlite3.connect(self.path)
            try:
                c = conn.cursor()
                c.execute('''CREATE TABLE IF NOT EXISTS stats_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tracker TEXT NOT NULL,
                    up INTEGER NOT NULL DEFAULT 0,
                    down INTEGER NOT NULL DEFAULT 0,
                    ratio REAL NOT NULL DEFAULT 0,
                    timestamp REAL NOT NULL,
                    collected INTEGER DEFAULT 1,
                    start_of_day INTEGER DEFAULT 0,
                    start_of_week INTEGER DEFAULT 0,
                    start_of_month INTEGER DEFAULT 0,
                    schema_version INTEGER DEFAULT 0
                )''')
                c.execute('CREATE INDEX IF NOT EXISTS idx_stats_tracker_ts ON stats_entries(tracker, timestamp)')
                c.execute('CREATE INDEX IF NOT EXISTS idx_stats_collected ON stats_entries(tracker, collected)')
                conn.commit()
            finally:
                conn.close()

    def _migrate(self):
        with self._lock:
            conn = sqlite3.connect(self.path)
            try:
                c = conn.cursor()
                for version in sorted(MIGRATIONS):
                    if version >= StatsConst.SCHEMA_VERSION:
                        break
                    c.execute('SELECT COUNT(*) FROM stats_entries WHERE schema_version = ?', (version,))
                    count = c.fetchone()[0]
                    if not count:
                        continue
                    MIGRATIONS[version](c)
                    c.execute('UPDATE stats_entries SET schema_version = ? WHERE schema_version = ?',
                              (version + 1, version))
                    logger.info(f"📦 已升级 {count} 条统计记录: v{version} -> v{version + 1}")
                conn.commit()
            finally:
                conn.close()

    def _query(self, sql: str, params: tuple = ()) -> List[Snapshot]:
        with self._lock:
            try:
                conn = sqlite3.connect(self.path)
                try:
                    c = conn.cursor()
                    c.execute(sql, params)
                    rows = c.fetchall()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"读取统计数据失败: {e}") from e
        return [_row_to_snapshot(r) for r in rows]

    # ═══════════════════════════════════════════
    # 写入
    # ═══════════════════════════════════════════
    def save(self, snapshot: Snapshot) -> Snapshot:
        return self.save_many([snapshot])[0]

    def save_many(self, snapshots: List[Snapshot]) -> List[Snapshot]:
        """单个事务内写入，全部成功或全部失败"""
        saved = []
        with self._lock:
            try:
                conn = sqlite3.connect(self.path)
                try:
                    c = conn.cursor()
                    for s in snapshots:
                        c.execute(f'''INSERT INTO stats_entries ({COLUMNS})
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                            (s.id, s.tracker, s.up, s.down, s.ratio, s.timestamp,
                             int(s.collected), int(s.start_of_day), int(s.start_of_week),
                             int(s.start_of_month), s.schema_version))
                        saved.append(s.with_id(c.lastrowid))
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"保存统计数据失败: {e}") from e
        return saved

    # ═══════════════════════════════════════════
    # 查询
    # ═══════════════════════════════════════════
    def most_recent(self, tracker: str, count: int = 1) -> List[Snapshot]:
        """最近 count 条采样记录，新的在前"""
        entries = self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND collected = 1
                ORDER BY timestamp DESC, id DESC LIMIT ?''', (tracker, count))
        if not entries:
            raise SnapshotNotFound(tracker)
        return entries

    def previous_collected(self, tracker: str, entry_id: int) -> Optional[Snapshot]:
        """entry_id 之前最后写入的一条采样记录"""
        entries = self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND collected = 1
                AND id < ? ORDER BY id DESC LIMIT 1''', (tracker, entry_id))
        return entries[0] if entries else None

    def first_collected(self, tracker: str) -> Snapshot:
        entries = self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND collected = 1
                ORDER BY timestamp ASC, id ASC LIMIT 1''', (tracker,))
        if not entries:
            raise SnapshotNotFound(tracker)
        return entries[0]

    def filter_by_tracker(self, tracker: str, kind: str = 'collected') -> List[Snapshot]:
        if kind not in STATS_KINDS:
            raise ValueError(f"未知统计类型: {kind}")
        return self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND {kind} = 1
                ORDER BY timestamp ASC, id ASC''', (tracker,))

    def count(self, tracker: str, kind: str = 'collected') -> int:
        return len(self.filter_by_tracker(tracker, kind))

    def _collected_before(self, tracker: str, ts: float) -> Optional[Snapshot]:
        entries = self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND collected = 1
                AND timestamp <= ? ORDER BY timestamp DESC LIMIT 1''', (tracker, ts))
        return entries[0] if entries else None

    def _collected_after(self, tracker: str, ts: float) -> Optional[Snapshot]:
        entries = self._query(
            f'''SELECT {COLUMNS} FROM stats_entries WHERE tracker = ? AND collected = 1
                AND timestamp >= ? ORDER BY timestamp ASC LIMIT 1''', (tracker, ts))
        return entries[0] if entries else None

    def _daily_timestamps(self, tracker: str) -> set:
        return {s.timestamp for s in self.filter_by_tracker(tracker, 'start_of_day')}

    # ═══════════════════════════════════════════
    # 每日/每周/每月统计
    # ═══════════════════════════════════════════
    def update_aggregates(self, trackers: List[str], now: Optional[float] = None) -> int:
        """
        从第一次采样到今天，为每一天补齐零点的插值快照。
        周一零点同时标记 start_of_week，每月 1 日标记 start_of_month。
        返回新增的记录数。
        """
        today = datetime.fromtimestamp(wall_time() if now is None else now).date()
        added = 0
        for tracker in trackers:
            try:
                first = self.first_collected(tracker)
            except SnapshotNotFound:
                logger.debug(f"[{tracker}] 没有统计数据，跳过每日汇总")
                continue
            first_day = datetime.fromtimestamp(first.timestamp).date()
            if first_day > today:
                logger.warning(f"[{tracker}] 统计数据时间在未来，跳过每日汇总")
                continue

            existing = self._daily_timestamps(tracker)
            new_entries = []
            day = first_day
            while day < today:
                ts = _day_start(day)
                if ts not in existing:
                    entry = self._daily_entry(tracker, first, ts)
                    if entry is not None:
                        new_entries.append(replace(
                            entry,
                            start_of_day=True,
                            start_of_week=day.weekday() == 0,
                            start_of_month=day.day == 1,
                        ))
                day += timedelta(days=1)

            if new_entries:
                self.save_many(new_entries)
                added += len(new_entries)
                logger.info(f"[{tracker}] 新增 {len(new_entries)} 条每日统计")
        return added

    def _daily_entry(self, tracker: str, first: Snapshot, ts: float) -> Optional[Snapshot]:
        previous = self._collected_before(tracker, ts) or first
        following = self._collected_after(tracker, ts)
        if following is None:
            # 最后一天，缺少零点之后的数据
            return None
        if previous.timestamp == following.timestamp:
            # 第一天，直接使用第一条采样
            return Snapshot(tracker=tracker, up=previous.up, down=previous.down, ratio=previous.ratio,
                            timestamp=ts, collected=False)
        try:
            return interpolate(previous, following, ts)
        except InterpolationOutOfRange as e:
            logger.error(str(e))
            return None

    # ═══════════════════════════════════════════
    # CSV 导入/导出
    # ═══════════════════════════════════════════
    def export_csv(self, tracker: str, path: str) -> int:
        entries = self.filter_by_tracker(tracker, 'collected')
        tmp = path + ".tmp"
        with open(tmp, 'w', newline='', encoding='utf-8') as f:
            w = csv.writer(f)
            for e in entries:
                w.writerow(e.to_slice())
        os.replace(tmp, path)
        return len(entries)

    def import_csv(self, tracker: str, path: str) -> int:
        """导入旧版 CSV 历史 (timestamp;up;down;ratio[;...])，成功后重命名为 .imported"""
        if not os.path.exists(path):
            return 0
        logger.info(f"[{tracker}] 正在导入历史统计 {path}")
        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()
        lines = content.splitlines()
        delimiter = ';' if lines and ';' in lines[0] else ','

        entries = []
        for i, record in enumerate(csv.reader(lines, delimiter=delimiter)):
            if not record:
                continue
            try:
                entries.append(Snapshot(
                    tracker=tracker,
                    timestamp=float(record[0]),
                    up=int(record[1]),
                    down=int(record[2]),
                    ratio=float(record[3]),
                ))
            except (IndexError, ValueError) as e:
                logger.error(f"[{tracker}] 第 {i + 1} 行无法解析: {e}")

        before = self.count(tracker)
        self.save_many(entries)
        after = self.count(tracker)
        if after - before != len(entries):
            raise PersistenceFailure(
                f"[{tracker}] 导入校验失败: 写入 {len(entries)} 条，读回 {after - before} 条")
        os.replace(path, path + ".imported")
        logger.info(f"[{tracker}] 已导入 {len(entries)} 条历史统计")
        return len(entries)
