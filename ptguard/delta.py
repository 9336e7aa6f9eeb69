"""
快照差值计算与进度描述
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .config import StatsConst
from .errors import NonMonotonicDelta
from .snapshot import Snapshot, is_first_sample
from .utils import fmt_size, fmt_signed_size, fmt_sign, fmt_time

logger = logging.getLogger("ptguard")

FIRST_ROW_MARKER = "*"


@dataclass(frozen=True)
class Delta:
    tracker: str
    timestamp: float
    up: int = 0
    down: int = 0
    ratio: float = 0.0
    buffer: int = 0
    warning_buffer: int = 0

    def __neg__(self) -> 'Delta':
        return Delta(self.tracker, self.timestamp, -self.up, -self.down, -self.ratio,
                     -self.buffer, -self.warning_buffer)


def diff(current: Snapshot, previous: Snapshot,
         target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> Delta:
    """逐项相减 (current - previous)，不检查先后顺序"""
    buffer, warning_buffer = current.buffers(target_ratio)
    prev_buffer, prev_warning_buffer = previous.buffers(target_ratio)
    return Delta(
        tracker=current.tracker,
        timestamp=current.timestamp,
        up=current.up - previous.up,
        down=current.down - previous.down,
        ratio=current.ratio - previous.ratio,
        buffer=buffer - prev_buffer,
        warning_buffer=warning_buffer - prev_warning_buffer,
    )


def calculate_delta(earlier: Snapshot, later: Snapshot,
                    target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> Delta:
    if not later.timestamp > earlier.timestamp:
        raise NonMonotonicDelta(
            f"[{later.tracker}] 时间戳乱序: {fmt_time(later.timestamp)} 不晚于 {fmt_time(earlier.timestamp)}")
    return diff(later, earlier, target_ratio)


def calculate_deltas(entries: List[Snapshot],
                     target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> List[Delta]:
    """相邻快照差值序列，第一个为空差值"""
    deltas: List[Delta] = []
    for i, e in enumerate(entries):
        if i == 0:
            deltas.append(Delta(tracker=e.tracker, timestamp=e.timestamp))
            continue
        try:
            deltas.append(calculate_delta(entries[i - 1], e, target_ratio))
        except NonMonotonicDelta as err:
            logger.debug(str(err))
            deltas.append(Delta(tracker=e.tracker, timestamp=e.timestamp))
    return deltas


def describe(current: Snapshot, previous: Optional[Snapshot],
             target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> str:
    if is_first_sample(previous):
        return current.describe(target_ratio)
    buffer, warning_buffer = current.buffers(target_ratio)
    d = calculate_delta(previous, current, target_ratio)
    return (f"Buffer: {fmt_signed_size(buffer)} ({fmt_signed_size(d.buffer)}) | "
            f"Ratio: {current.ratio:.3f} ({d.ratio:+.3f}) | "
            f"Up: {fmt_size(current.up)} ({fmt_signed_size(d.up)}) | "
            f"Down: {fmt_size(current.down)} ({fmt_signed_size(d.down)}) | "
            f"Warning Buffer: {fmt_signed_size(warning_buffer)} ({fmt_signed_size(d.warning_buffer)})")


def to_row(current: Snapshot, previous: Optional[Snapshot],
           target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> List[str]:
    """
    面板表格行: [标记, 时间, 上传, 下载, 缓冲, 警戒缓冲, 分享率]

    首次采样的标记列为 "*"，其余为缓冲变化的符号 ("+" 或 "-")。
    """
    buffer, warning_buffer = current.buffers(target_ratio)
    if is_first_sample(previous):
        return [FIRST_ROW_MARKER, fmt_time(current.timestamp), fmt_size(current.up), fmt_size(current.down),
                fmt_signed_size(buffer), fmt_signed_size(warning_buffer), f"{current.ratio:.3f}"]
    d = diff(current, previous, target_ratio)
    return [
        fmt_sign(d.buffer),
        fmt_time(current.timestamp),
        f"{fmt_size(current.up)} ({fmt_signed_size(d.up)})",
        f"{fmt_size(current.down)} ({fmt_signed_size(d.down)})",
        f"{fmt_signed_size(buffer)} ({fmt_signed_size(d.buffer)})",
        f"{fmt_signed_size(warning_buffer)} ({fmt_signed_size(d.warning_buffer)})",
        f"{current.ratio:.3f} ({d.ratio:+.3f})",
    ]
