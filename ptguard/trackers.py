"""
站点统计数据来源

- GazelleClient: 通过站点 JSON API 读取账号上传/下载/分享率
- QBittorrentCounters: 汇总 qBittorrent 中该站点种子的上传/下载量
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import qbittorrentapi
import requests
from qbittorrentapi.exceptions import APIConnectionError, APIError, LoginFailed

from .config import Config, StatsConst, TrackerConfig
from .errors import TrackerUnreachable
from .utils import safe_div

logger = logging.getLogger("ptguard")


@dataclass(frozen=True)
class Counters:
    up: int
    down: int
    ratio: float


class TrackerClient:
    def fetch_counters(self, tracker: str) -> Counters:
        raise NotImplementedError


# ════════════════════════════════════════════════════════════════════════════════
# Gazelle JSON API
# ════════════════════════════════════════════════════════════════════════════════

class GazelleClient(TrackerClient):
    def __init__(self, tracker: TrackerConfig, timeout: int = 20):
        self.tracker = tracker
        self.root_url = tracker.url
        self.timeout = timeout
        self.user_id = 0
        self._logged_in = False
        self._lock = threading.Lock()
        self.session = requests.Session()
        self.session.headers['User-Agent'] = 'PTGuard'
        if tracker.api_key:
            self.session.headers['Authorization'] = tracker.api_key

    def login(self):
        if self.tracker.api_key:
            self._logged_in = True
            return
        resp = self.session.post(
            f"{self.root_url}/login.php",
            data={'username': self.tracker.username, 'password': self.tracker.password},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise TrackerUnreachable(self.tracker.name, f"登录失败 HTTP {resp.status_code}")
        if resp.url.rstrip('/') == f"{self.root_url}/login.php":
            # 登录后仍停留在登录页
            raise TrackerUnreachable(self.tracker.name, "登录失败，请检查用户名密码")
        self._logged_in = True
        logger.info(f"✅ 已登录 {self.tracker.name}")

    def _get_json(self, params: dict) -> dict:
        resp = self.session.get(f"{self.root_url}/ajax.php", params=params, timeout=self.timeout)
        if resp.status_code != 200:
            raise TrackerUnreachable(self.tracker.name, f"HTTP {resp.status_code}")
        data = resp.json()
        if data.get('status') != 'success':
            raise TrackerUnreachable(self.tracker.name, f"API 状态: {data.get('status')}")
        return data.get('response') or {}

    def fetch_counters(self, tracker: str) -> Counters:
        with self._lock:
            try:
                if not self._logged_in:
                    self.login()
                if self.user_id == 0:
                    self.user_id = int(self._get_json({'action': 'index'}).get('id', 0))
                # user 接口比 index 更新更及时
                stats = self._get_json({'action': 'user', 'id': self.user_id}).get('stats') or {}
                up = int(stats.get('uploaded', 0) or 0)
                down = int(stats.get('downloaded', 0) or 0)
            except requests.RequestException as e:
                self._logged_in = False
                raise TrackerUnreachable(tracker, str(e)) from e
            except (TypeError, ValueError, AttributeError) as e:
                raise TrackerUnreachable(tracker, f"无法解析统计数据: {e}") from e

        try:
            ratio = float(stats.get('ratio', 0))
        except (TypeError, ValueError):
            logger.warning(f"[{tracker}] 分享率格式错误: {stats.get('ratio')}")
            ratio = 0.0
        return Counters(up=up, down=down, ratio=ratio)


# ════════════════════════════════════════════════════════════════════════════════
# qBittorrent 汇总
# ════════════════════════════════════════════════════════════════════════════════

class QBittorrentCounters(TrackerClient):
    """按 tracker 关键字汇总 qBittorrent 中种子的上传/下载量"""

    def __init__(self, host: str, username: str, password: str):
        self.host = host
        self.username = username
        self.password = password
        self.keywords: Dict[str, str] = {}
        self.client: Optional[qbittorrentapi.Client] = None
        self.lock = threading.Lock()

    def add_tracker(self, tracker: TrackerConfig):
        self.keywords[tracker.name] = tracker.tracker_keyword

    def connect(self) -> qbittorrentapi.Client:
        client = qbittorrentapi.Client(
            host=self.host,
            username=self.username,
            password=self.password,
            VERIFY_WEBUI_CERTIFICATE=False,
            REQUESTS_ARGS={'timeout': (5, 15)}
        )
        client.auth_log_in()
        logger.info(f"✅ 已连接 qBittorrent: {client.app.version}")
        return client

    def fetch_counters(self, tracker: str) -> Counters:
        keyword = self.keywords.get(tracker)
        if not keyword:
            raise TrackerUnreachable(tracker, "未配置 tracker 关键字")
        with self.lock:
            try:
                if self.client is None:
                    self.client = self.connect()
                torrents = self.client.torrents_info()
            except LoginFailed as e:
                raise TrackerUnreachable(tracker, "qBittorrent 登录失败，请检查用户名密码") from e
            except (APIConnectionError, APIError) as e:
                self.client = None
                raise TrackerUnreachable(tracker, str(e)) from e

        up = down = 0
        for t in torrents:
            if keyword in (getattr(t, 'tracker', '') or ''):
                up += getattr(t, 'uploaded', 0) or 0
                down += getattr(t, 'downloaded', 0) or 0
        # 下载量为 0 时按 up/1 计算
        ratio = safe_div(up, down, float(up))
        return Counters(up=up, down=down, ratio=ratio)


class TrackerRegistry(TrackerClient):
    """按站点名分派到对应的数据来源"""

    def __init__(self, clients: Optional[Dict[str, TrackerClient]] = None):
        self.clients: Dict[str, TrackerClient] = clients or {}

    def fetch_counters(self, tracker: str) -> Counters:
        client = self.clients.get(tracker)
        if client is None:
            raise TrackerUnreachable(tracker, "没有可用的数据来源")
        return client.fetch_counters(tracker)


def build_tracker_clients(cfg: Config) -> TrackerRegistry:
    registry = TrackerRegistry()
    qb: Optional[QBittorrentCounters] = None
    for t in cfg.stats_trackers():
        if t.source == StatsConst.SOURCE_QBITTORRENT:
            if qb is None:
                qb = QBittorrentCounters(cfg.qb_host, cfg.qb_username, cfg.qb_password)
            qb.add_tracker(t)
            registry.clients[t.name] = qb
        else:
            registry.clients[t.name] = GazelleClient(t)
    return registry
