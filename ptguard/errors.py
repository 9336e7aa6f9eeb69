"""
异常定义

单个站点的失败（拉取/存储）只影响该站点，由监控循环捕获并记录；
插值越界、时间戳乱序属于调用方错误。
"""


class PTGuardError(Exception):
    pass


class ConfigError(PTGuardError):
    """配置文件无效"""


class ConfigurationMissing(PTGuardError):
    """站点没有 stats 配置，监控直接跳过"""

    def __init__(self, tracker: str):
        super().__init__(f"站点 {tracker} 没有统计配置")
        self.tracker = tracker


class TrackerUnreachable(PTGuardError):
    def __init__(self, tracker: str, reason: str):
        super().__init__(f"无法获取 {tracker} 的统计数据: {reason}")
        self.tracker = tracker
        self.reason = reason


class PersistenceFailure(PTGuardError):
    pass


class SnapshotNotFound(PTGuardError):
    def __init__(self, tracker: str):
        super().__init__(f"站点 {tracker} 没有历史记录")
        self.tracker = tracker


class InterpolationOutOfRange(PTGuardError):
    pass


class NonMonotonicDelta(PTGuardError):
    pass
