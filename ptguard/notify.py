"""
通知发送

notify() 只负责入队/记录，发送失败只写日志，不向调用方抛出异常。
"""

import html
import time
import queue
import logging
import threading
from typing import Optional

import requests

logger = logging.getLogger("ptguard")

INFO = "info"
ERROR = "error"


class Notifier:
    def notify(self, message: str, tracker: str, severity: str = INFO) -> bool:
        raise NotImplementedError

    def close(self):
        pass


class LogNotifier(Notifier):
    """未配置 Telegram 时只写日志"""

    def notify(self, message: str, tracker: str, severity: str = INFO) -> bool:
        if severity == ERROR:
            logger.warning(f"🔔 [{tracker}] {message}")
        else:
            logger.info(f"🔔 [{tracker}] {message}")
        return True


# ════════════════════════════════════════════════════════════════════════════════
# Telegram
# ════════════════════════════════════════════════════════════════════════════════

class TelegramNotifier(Notifier):
    def __init__(self, token: str, chat_id: str, session: Optional[requests.Session] = None):
        self.enabled = bool(token and chat_id)
        self.chat_id = str(chat_id).strip()
        self.base_url = f"https://api.telegram.org/bot{token}" if token else ""

        self._queue: queue.Queue = queue.Queue(maxsize=100)
        self._stop = threading.Event()
        self._session = session or requests.Session()

        if self.enabled:
            threading.Thread(target=self._send_worker, daemon=True, name="TG-Sender").start()

    def close(self):
        self._stop.set()

    @staticmethod
    def format(message: str, tracker: str, severity: str) -> str:
        icon = "🚨" if severity == ERROR else "📊"
        return f"{icon} <b>{html.escape(tracker)}</b>\n{html.escape(message)}"

    def _post(self, text: str, timeout: int = 20) -> requests.Response:
        return self._session.post(
            f"{self.base_url}/sendMessage",
            json={
                "chat_id": self.chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True
            },
            timeout=timeout
        )

    def _send_worker(self):
        while not self._stop.is_set():
            try:
                msg = self._queue.get(timeout=5)
            except queue.Empty:
                continue
            try:
                resp = self._post(msg)
                if resp.status_code == 429:
                    retry = resp.json().get('parameters', {}).get('retry_after', 30)
                    logger.warning(f"⚠️ TG 限流! 暂停 {retry}s")
                    time.sleep(retry + 1)
                elif resp.status_code != 200:
                    logger.warning(f"⚠️ TG发送失败 HTTP {resp.status_code}: {resp.text[:200]}")
                time.sleep(3)
            except (requests.RequestException, ValueError) as e:
                logger.debug(f"TG发送失败: {e}")
                time.sleep(5)

    def notify(self, message: str, tracker: str, severity: str = INFO) -> bool:
        if not self.enabled:
            return False
        try:
            self._queue.put_nowait(self.format(message, tracker, severity))
        except queue.Full:
            logger.warning(f"⚠️ TG 发送队列已满，丢弃通知: {message[:50]}")
            return False
        return True


def build_notifier(token: str, chat_id: str) -> Notifier:
    if token and chat_id:
        return TelegramNotifier(token, chat_id)
    return LogNotifier()
