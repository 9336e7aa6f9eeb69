"""
Shared fixtures: a config file on disk, a sqlite store in tmp_path,
and in-memory fakes for the tracker client and notifier.
"""

import json
import sys
from pathlib import Path
from typing import Dict, List

import pytest

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ptguard.config import Config, StatsConst  # noqa: E402
from ptguard.errors import TrackerUnreachable  # noqa: E402
from ptguard.monitor import Environment  # noqa: E402
from ptguard.notify import Notifier  # noqa: E402
from ptguard.snapshot import Snapshot  # noqa: E402
from ptguard.store import HistoryStore  # noqa: E402
from ptguard.trackers import Counters, TrackerClient  # noqa: E402
from ptguard.utils import LogBuffer  # noqa: E402

MB = StatsConst.MB
T0 = 1_700_000_000.0


def snap(up_mb: float, down_mb: float, ratio: float, ts: float = T0, tracker: str = "alpha") -> Snapshot:
    return Snapshot(tracker=tracker, up=int(up_mb * MB), down=int(down_mb * MB), ratio=ratio, timestamp=ts)


class FakeTrackers(TrackerClient):
    """Returns queued counters per tracker; queued exceptions are raised."""

    def __init__(self):
        self.queued: Dict[str, list] = {}
        self.calls: List[str] = []

    def push(self, tracker: str, *values):
        self.queued.setdefault(tracker, []).extend(values)

    def fetch_counters(self, tracker: str) -> Counters:
        self.calls.append(tracker)
        values = self.queued.get(tracker)
        if not values:
            raise TrackerUnreachable(tracker, "no data queued")
        value = values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.closed = False

    def notify(self, message: str, tracker: str, severity: str = "info") -> bool:
        self.sent.append((message, tracker, severity))
        return True

    def close(self):
        self.closed = True

    def by_severity(self, severity: str):
        return [s for s in self.sent if s[2] == severity]


@pytest.fixture
def config_dict(tmp_path) -> dict:
    return {
        "db_path": str(tmp_path / "ptguard.db"),
        "stats_dir": str(tmp_path / "stats"),
        "web_username": "admin",
        "web_password": "secret",
        "jwt_secret": "test-secret-0123456789abcdef0123456789abcdef",
        "dashboard_entries": 5,
        "trackers": [
            {"name": "alpha", "url": "https://alpha.example", "api_key": "k",
             "stats": {"update_period_hour": 1, "max_buffer_decrease_by_period_mb": 100,
                       "min_ratio": 0.6, "target_ratio": 1.0}},
            {"name": "beta", "url": "https://beta.example", "api_key": "k",
             "stats": {"update_period_hour": 1, "max_buffer_decrease_by_period_mb": 0}},
            {"name": "gamma", "url": "https://gamma.example", "api_key": "k",
             "stats": {"update_period_hour": 6, "max_buffer_decrease_by_period_mb": 10}},
            {"name": "nostats", "url": "https://nostats.example", "api_key": "k"},
        ],
    }


@pytest.fixture
def config_path(tmp_path, config_dict) -> str:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config_dict), encoding="utf-8")
    return str(path)


@pytest.fixture
def cfg(config_path) -> Config:
    loaded, err = Config.load(config_path)
    assert err is None
    return loaded


@pytest.fixture
def store(tmp_path) -> HistoryStore:
    return HistoryStore(str(tmp_path / "history.db"))


@pytest.fixture
def trackers() -> FakeTrackers:
    return FakeTrackers()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def env(cfg, config_path, trackers, notifier) -> Environment:
    return Environment(cfg, HistoryStore(cfg.db_path), trackers, notifier,
                       config_path=config_path, logs=LogBuffer())
