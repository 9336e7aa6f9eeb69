"""
快照插值

在两个真实采样之间按时间线性插值，得到任意时间点的虚拟快照。
"""

from .errors import InterpolationOutOfRange
from .snapshot import Snapshot
from .utils import fmt_time


def _linear(prev_value: float, next_value: float, elapsed: float, span: float) -> float:
    slope = (next_value - prev_value) / span
    return prev_value + slope * elapsed


def interpolate(previous: Snapshot, next_: Snapshot, target_time: float) -> Snapshot:
    """
    在两个真实采样之间线性插值出一个虚拟快照 (collected=False)，
    用于把不同站点对齐到同一时间点，例如每日零点的统计。
    """
    if target_time < previous.timestamp or target_time > next_.timestamp:
        raise InterpolationOutOfRange(
            f"[{previous.tracker}] {fmt_time(target_time)} 不在 "
            f"{fmt_time(previous.timestamp)} ~ {fmt_time(next_.timestamp)} 之间")

    span = next_.timestamp - previous.timestamp
    if span == 0:
        up, down, ratio = previous.up, previous.down, previous.ratio
    else:
        elapsed = target_time - previous.timestamp
        up = round(_linear(previous.up, next_.up, elapsed, span))
        down = round(_linear(previous.down, next_.down, elapsed, span))
        ratio = _linear(previous.ratio, next_.ratio, elapsed, span)

    return Snapshot(
        tracker=previous.tracker,
        up=int(up),
        down=int(down),
        ratio=ratio,
        timestamp=target_time,
        collected=False,
        schema_version=previous.schema_version,
    )
