"""
Tests for circuit-breaker flags and notification sinks.
"""

import threading
import time
from unittest.mock import MagicMock

from ptguard.breaker import CircuitBreaker
from ptguard.notify import ERROR, INFO, LogNotifier, TelegramNotifier, build_notifier


class TestCircuitBreaker:
    def test_trip_disables_autosnatch(self, cfg):
        breaker = CircuitBreaker(cfg)
        assert breaker.autosnatch_enabled("alpha")
        assert breaker.trip("alpha", "ratio")
        assert breaker.is_disabled("alpha")
        assert not breaker.autosnatch_enabled("alpha")
        assert cfg.tracker("alpha").autosnatch is False
        assert breaker.autosnatch_enabled("beta")

    def test_second_trip_is_not_new(self, cfg):
        breaker = CircuitBreaker(cfg)
        assert breaker.trip("alpha")
        assert not breaker.trip("alpha")

    def test_no_automatic_recovery(self, cfg):
        breaker = CircuitBreaker(cfg)
        breaker.trip("alpha", "buffer")
        cfg.tracker("alpha").autosnatch = True
        assert breaker.is_disabled("alpha")
        assert not breaker.autosnatch_enabled("alpha")

    def test_reset_all(self, cfg):
        breaker = CircuitBreaker(cfg)
        breaker.trip("alpha")
        breaker.trip("beta")
        assert breaker.reset_all() == 2
        assert not breaker.is_disabled("alpha")
        assert breaker.reset_all() == 0

    def test_states(self, cfg):
        breaker = CircuitBreaker(cfg)
        breaker.trip("gamma", "buffer drop")
        states = breaker.states()
        assert set(states) == {"alpha", "beta", "gamma", "nostats"}
        assert states["gamma"] == {"disabled": True, "reason": "buffer drop"}
        assert states["alpha"]["disabled"] is False

    def test_concurrent_trips(self, cfg):
        breaker = CircuitBreaker(cfg)
        new = []
        threads = [threading.Thread(target=lambda: new.append(breaker.trip("alpha"))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert new.count(True) == 1


class TestNotifiers:
    def test_build_without_telegram(self):
        assert isinstance(build_notifier("", ""), LogNotifier)

    def test_log_notifier(self):
        assert LogNotifier().notify("hello", "alpha", ERROR)

    def test_disabled_telegram_drops(self):
        bot = TelegramNotifier("", "")
        assert not bot.enabled
        assert not bot.notify("hello", "alpha")

    def test_format_escapes_html(self):
        text = TelegramNotifier.format("<b>", "a&b", ERROR)
        assert text.startswith("🚨")
        assert "&lt;b&gt;" in text
        assert "a&amp;b" in text
        assert TelegramNotifier.format("x", "alpha", INFO).startswith("📊")

    def test_worker_posts_queued_message(self):
        session = MagicMock()
        session.post.return_value.status_code = 200
        bot = TelegramNotifier("token", "42", session=session)
        try:
            assert bot.notify("ratio <b>low</b>", "alpha", ERROR)
            deadline = time.monotonic() + 2
            while not session.post.called and time.monotonic() < deadline:
                time.sleep(0.01)
            assert session.post.called
            payload = session.post.call_args.kwargs["json"]
            assert payload["chat_id"] == "42"
            assert "&lt;b&gt;low&lt;/b&gt;" in payload["text"]
        finally:
            bot.close()
