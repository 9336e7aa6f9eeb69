"""
站点统计快照

每次采样生成一个 Snapshot，保存后不再修改。
缓冲值 (buffer) 不落库，按站点的目标分享率实时计算:

    buffer         = floor(up / target_ratio)  - down
    warning_buffer = floor(up / WARNING_RATIO) - down
"""

import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .config import StatsConst
from .utils import fmt_size, fmt_signed_size, wall_time


@dataclass(frozen=True)
class Snapshot:
    tracker: str
    up: int
    down: int
    ratio: float
    timestamp: float
    id: Optional[int] = None
    collected: bool = True
    start_of_day: bool = False
    start_of_week: bool = False
    start_of_month: bool = False
    schema_version: int = StatsConst.SCHEMA_VERSION

    @classmethod
    def collect(cls, tracker: str, up: int, down: int, ratio: float,
                timestamp: Optional[float] = None) -> 'Snapshot':
        return cls(tracker=tracker, up=int(up), down=int(down), ratio=float(ratio),
                   timestamp=wall_time() if timestamp is None else timestamp)

    def buffers(self, target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> Tuple[int, int]:
        return derive_buffers(self, target_ratio)

    def with_id(self, entry_id: int) -> 'Snapshot':
        return replace(self, id=entry_id)

    def describe(self, target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> str:
        buffer, warning_buffer = self.buffers(target_ratio)
        return (f"Buffer: {fmt_signed_size(buffer)} | Ratio: {self.ratio:.3f} | "
                f"Up: {fmt_size(self.up)} | Down: {fmt_size(self.down)} | "
                f"Warning Buffer: {fmt_signed_size(warning_buffer)}")

    def to_slice(self) -> list:
        # timestamp;up;down;ratio
        return [str(int(self.timestamp)), str(self.up), str(self.down), repr(self.ratio)]


def derive_buffers(snapshot: Snapshot, target_ratio: float,
                   warning_ratio: float = StatsConst.WARNING_RATIO) -> Tuple[int, int]:
    buffer = math.floor(snapshot.up / target_ratio) - snapshot.down
    warning_buffer = math.floor(snapshot.up / warning_ratio) - snapshot.down
    return buffer, warning_buffer


def is_first_sample(previous: Optional[Snapshot]) -> bool:
    """
    判断 previous 是否表示"没有历史记录"。

    None 是标准写法；全零的快照 (up/down/ratio 都为 0) 也按首次采样处理，
    兼容旧数据中的占位记录。真实采样得到的 0 分享率 (有下载量) 不算首次采样。
    """
    if previous is None:
        return True
    return previous.ratio == 0 and previous.up == 0 and previous.down == 0
