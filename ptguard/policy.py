"""
熔断判定

纯函数，无副作用：由调用方根据结果设置熔断标记、发送告警。
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import StatsConst, TrackerStatsConfig
from .delta import calculate_delta
from .snapshot import Snapshot, is_first_sample
from .utils import fmt_size

logger = logging.getLogger("ptguard")


class RejectReason(str, Enum):
    RATIO_BELOW_MINIMUM = "ratio_below_minimum"
    BUFFER_DROP_EXCEEDED = "buffer_drop_exceeded"


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    reason: Optional[RejectReason] = None
    detail: str = ""

    @classmethod
    def accept(cls) -> 'Verdict':
        return cls(True)

    @classmethod
    def reject(cls, reason: RejectReason, detail: str = "") -> 'Verdict':
        return cls(False, reason, detail)

    def __bool__(self) -> bool:
        return self.accepted


def evaluate(current: Snapshot, previous: Optional[Snapshot], max_decrease_mb: int,
             minimum_ratio: float, target_ratio: float = StatsConst.DEFAULT_TARGET_RATIO) -> Verdict:
    # 分享率低于下限，不看历史直接熔断
    if current.ratio <= minimum_ratio:
        logger.info(f"[{current.tracker}] 分享率 {current.ratio:.3f} 低于下限 {minimum_ratio:.3f}")
        return Verdict.reject(
            RejectReason.RATIO_BELOW_MINIMUM,
            f"分享率 {current.ratio:.3f} ≤ {minimum_ratio:.3f}")

    if is_first_sample(previous):
        return Verdict.accept()

    # previous 晚于 current 时抛出 NonMonotonicDelta
    buffer_change = calculate_delta(previous, current, target_ratio).buffer
    allowed = max_decrease_mb * StatsConst.MB
    # max_decrease_mb 为 0 表示不限制
    if max_decrease_mb == 0 or buffer_change >= 0 or -buffer_change <= allowed:
        return Verdict.accept()

    logger.info(f"[{current.tracker}] 缓冲下降 {fmt_size(-buffer_change)}，仅允许 {fmt_size(allowed)}")
    return Verdict.reject(
        RejectReason.BUFFER_DROP_EXCEEDED,
        f"缓冲下降 {fmt_size(-buffer_change)} > {fmt_size(allowed)}")


def evaluate_with_config(current: Snapshot, previous: Optional[Snapshot],
                         stats: TrackerStatsConfig) -> Verdict:
    return evaluate(current, previous, stats.max_buffer_decrease_mb, stats.min_ratio, stats.target_ratio)
