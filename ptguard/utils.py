import os
import time
import logging
import threading
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Deque, List


LOGGER_NAME = "ptguard"
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


# ════════════════════════════════════════════════════════════════════════════════
# 工具函数
# ════════════════════════════════════════════════════════════════════════════════

def fmt_size(b: float, precision: int = 2) -> str:
    if b == 0: return "0 B"
    for u in ['B', 'KiB', 'MiB', 'GiB', 'TiB']:
        if abs(b) < 1024: return f"{b:.{precision}f} {u}"
        b /= 1024
    return f"{b:.{precision}f} PiB"

def fmt_signed_size(b: float, precision: int = 2) -> str:
    """带符号的大小，0 视为正数"""
    sign = "-" if b < 0 else "+"
    return sign + fmt_size(abs(b), precision)

def fmt_sign(b: float) -> str:
    return "-" if b < 0 else "+"

def fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")

def safe_div(a: float, b: float, default: float = 0) -> float:
    if b == 0 or abs(b) < 1e-10: return default
    return a / b

def wall_time() -> float:
    return time.time()


# ════════════════════════════════════════════════════════════════════════════════
# 日志
# ════════════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO", log_file: str = "") -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(logging.DEBUG)
    for h in list(log.handlers):
        h.close()
    log.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S'))
    log.addHandler(console)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=10*1024*1024, backupCount=3)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            log.addHandler(fh)
        except OSError as e:
            log.warning(f"⚠️ 无法写入日志文件 {log_file}: {e}")
    return log


# 日志环形缓冲区（用于 /api/logs）
class LogBuffer:
    def __init__(self, maxlen: int = 200):
        self._buffer: Deque[str] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(self, msg: str):
        with self._lock:
            self._buffer.append(f"{datetime.now().strftime('%H:%M:%S')} {msg}")

    def get_recent(self, n: int = 50) -> List[str]:
        with self._lock:
            return list(self._buffer)[-n:]


class BufferHandler(logging.Handler):
    """把 INFO 以上的日志同步写入 LogBuffer"""

    def __init__(self, buffer: LogBuffer):
        super().__init__(level=logging.INFO)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord):
        try:
            self.buffer.add(f"[{record.levelname[0]}] {record.getMessage()}")
        except Exception:
            self.handleError(record)


log_buffer = LogBuffer()


def attach_log_buffer(log: logging.Logger, buffer: LogBuffer = log_buffer):
    if not any(isinstance(h, BufferHandler) for h in log.handlers):
        log.addHandler(BufferHandler(buffer))
