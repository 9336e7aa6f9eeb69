import os
import json
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ConfigError, ConfigurationMissing


# ════════════════════════════════════════════════════════════════════════════════
# 常量配置
# ════════════════════════════════════════════════════════════════════════════════

class StatsConst:
    WARNING_RATIO = 0.6
    DEFAULT_TARGET_RATIO = 1.0
    SCHEMA_VERSION = 1

    DASHBOARD_ENTRIES = 25
    MB = 1024 * 1024

    SOURCE_GAZELLE = "gazelle"
    SOURCE_QBITTORRENT = "qbittorrent"


# 未配置 jwt_secret 时整个进程共用同一个
JWT_SECRET = os.getenv("JWT_SECRET", secrets.token_hex(32))

CONFIG_PATHS = [
    "config.json",
    "/etc/ptguard/config.json",
    os.path.expanduser("~/.config/ptguard/config.json"),
]


@dataclass
class TrackerStatsConfig:
    """单个站点的统计/熔断阈值"""
    update_period_hour: int = 0
    max_buffer_decrease_mb: int = 0
    min_ratio: float = 0.0
    target_ratio: float = 0.0

    def check(self, tracker: str):
        if self.update_period_hour <= 0:
            raise ConfigError(f"[{tracker}] 缺少统计更新周期 (小时)")
        if self.max_buffer_decrease_mb < 0:
            raise ConfigError(f"[{tracker}] 最大缓冲下降值不能为负")
        if self.min_ratio == 0:
            self.min_ratio = StatsConst.WARNING_RATIO
        if self.min_ratio < StatsConst.WARNING_RATIO:
            raise ConfigError(f"[{tracker}] 最低分享率不能低于 {StatsConst.WARNING_RATIO:.2f}")
        if self.target_ratio == 0:
            self.target_ratio = StatsConst.DEFAULT_TARGET_RATIO
        if self.target_ratio <= StatsConst.WARNING_RATIO:
            raise ConfigError(f"[{tracker}] 目标分享率必须高于 {StatsConst.WARNING_RATIO:.2f}")
        if self.target_ratio < self.min_ratio:
            raise ConfigError(f"[{tracker}] 目标分享率必须不低于最低分享率 ({self.min_ratio:.2f})")

    @classmethod
    def from_dict(cls, d: dict) -> 'TrackerStatsConfig':
        return cls(
            update_period_hour=int(d.get('update_period_hour', 0) or 0),
            max_buffer_decrease_mb=int(d.get('max_buffer_decrease_by_period_mb', 0) or 0),
            min_ratio=float(d.get('min_ratio', 0) or 0),
            target_ratio=float(d.get('target_ratio', 0) or 0),
        )


@dataclass
class TrackerConfig:
    name: str
    source: str = StatsConst.SOURCE_GAZELLE
    url: str = ""
    username: str = ""
    password: str = ""
    api_key: str = ""
    tracker_keyword: str = ""
    autosnatch: bool = True
    stats: Optional[TrackerStatsConfig] = None

    def check(self):
        if not self.name:
            raise ConfigError("缺少站点名称")
        if self.source not in (StatsConst.SOURCE_GAZELLE, StatsConst.SOURCE_QBITTORRENT):
            raise ConfigError(f"[{self.name}] 未知数据来源: {self.source}")
        if self.source == StatsConst.SOURCE_GAZELLE and not self.url:
            raise ConfigError(f"[{self.name}] 缺少站点地址")
        if self.source == StatsConst.SOURCE_QBITTORRENT and not self.tracker_keyword:
            raise ConfigError(f"[{self.name}] 缺少 tracker 关键字")
        if self.stats is not None:
            self.stats.check(self.name)

    @classmethod
    def from_dict(cls, d: dict) -> 'TrackerConfig':
        stats = d.get('stats')
        return cls(
            name=str(d.get('name', '')).strip(),
            source=str(d.get('source', StatsConst.SOURCE_GAZELLE)).strip(),
            url=str(d.get('url', '')).strip().rstrip('/'),
            username=str(d.get('username', '')).strip(),
            password=str(d.get('password', '')).strip(),
            api_key=str(d.get('api_key', '')).strip(),
            tracker_keyword=str(d.get('tracker_keyword', '')).strip(),
            autosnatch=bool(d.get('autosnatch', True)),
            stats=TrackerStatsConfig.from_dict(stats) if stats else None,
        )


# ════════════════════════════════════════════════════════════════════════════════
# 配置类
# ════════════════════════════════════════════════════════════════════════════════

@dataclass
class Config:
    db_path: str = "ptguard.db"
    stats_dir: str = "stats"
    log_level: str = "INFO"
    log_file: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    web_host: str = "0.0.0.0"
    web_port: int = 8000
    web_username: str = "admin"
    web_password: str = "admin"
    jwt_secret: str = JWT_SECRET
    dashboard_entries: int = StatsConst.DASHBOARD_ENTRIES
    qb_host: str = ""
    qb_username: str = ""
    qb_password: str = ""
    trackers: List[TrackerConfig] = field(default_factory=list)

    def tracker(self, name: str) -> TrackerConfig:
        for t in self.trackers:
            if t.name == name:
                return t
        raise ConfigError(f"未知站点: {name}")

    def stats_config(self, name: str) -> TrackerStatsConfig:
        t = self.tracker(name)
        if t.stats is None:
            raise ConfigurationMissing(name)
        return t.stats

    def tracker_labels(self) -> List[str]:
        return [t.name for t in self.trackers]

    def stats_trackers(self) -> List[TrackerConfig]:
        return [t for t in self.trackers if t.stats is not None]

    def check(self):
        names = set()
        for t in self.trackers:
            t.check()
            if t.name in names:
                raise ConfigError(f"站点重复: {t.name}")
            names.add(t.name)
        if any(t.source == StatsConst.SOURCE_QBITTORRENT for t in self.trackers) and not self.qb_host:
            raise ConfigError("使用 qbittorrent 数据来源时需要配置 qbittorrent.host")

    @classmethod
    def from_dict(cls, d: dict) -> 'Config':
        qb = d.get('qbittorrent') or {}
        cfg = cls(
            db_path=str(d.get('db_path', 'ptguard.db')).strip(),
            stats_dir=str(d.get('stats_dir', 'stats')).strip(),
            log_level=str(d.get('log_level', 'INFO')),
            log_file=str(d.get('log_file', '')).strip(),
            telegram_bot_token=str(d.get('telegram_bot_token', '')).strip(),
            telegram_chat_id=str(d.get('telegram_chat_id', '')).strip(),
            web_host=str(d.get('web_host', '0.0.0.0')).strip(),
            web_port=int(d.get('web_port', 8000) or 8000),
            web_username=str(d.get('web_username', 'admin')).strip(),
            web_password=str(d.get('web_password', 'admin')),
            dashboard_entries=int(d.get('dashboard_entries', StatsConst.DASHBOARD_ENTRIES) or StatsConst.DASHBOARD_ENTRIES),
            qb_host=str(qb.get('host', '')).strip(),
            qb_username=str(qb.get('username', '')).strip(),
            qb_password=str(qb.get('password', '')).strip(),
            trackers=[TrackerConfig.from_dict(t) for t in d.get('trackers', [])],
        )
        if d.get('jwt_secret'):
            cfg.jwt_secret = str(d['jwt_secret'])
        cfg.check()
        return cfg

    @classmethod
    def load(cls, path: str) -> Tuple[Optional['Config'], Optional[str]]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                d = json.load(f)
            cfg = cls.from_dict(d)
            return cfg, None
        except (OSError, ValueError, TypeError, ConfigError) as e:
            return None, str(e)


def find_config_path(argv: List[str]) -> Optional[str]:
    if len(argv) > 1:
        return argv[1]
    for p in CONFIG_PATHS:
        if os.path.exists(p):
            return p
    return None


def group_by_period(cfg: Config) -> Dict[int, List[str]]:
    """按统计周期 (小时) 分组站点"""
    groups: Dict[int, List[str]] = {}
    for t in cfg.stats_trackers():
        groups.setdefault(t.stats.update_period_hour, []).append(t.name)
    return groups
