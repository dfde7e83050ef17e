"""Tests for the fire-and-forget dispatchers."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

from replyrouter.services.background import BackgroundDispatcher, SyncDispatcher


class TestSyncDispatcher:
    def test_runs_inline_with_arguments(self):
        fn = MagicMock()
        SyncDispatcher().submit("task", fn, 1, key="v")
        fn.assert_called_once_with(1, key="v")

    def test_failure_is_logged_not_raised(self, caplog):
        with caplog.at_level(logging.ERROR):
            SyncDispatcher().submit("funnel", MagicMock(side_effect=RuntimeError("boom")))
        assert "Background task funnel failed" in caplog.text


class TestBackgroundDispatcher:
    def test_task_runs_on_pool(self):
        dispatcher = BackgroundDispatcher(max_workers=1)
        fn = MagicMock(return_value="ignored")
        future = dispatcher.submit("task", fn, "a")
        future.result(timeout=5)
        dispatcher.shutdown()
        fn.assert_called_once_with("a")

    def test_failing_task_does_not_surface(self):
        dispatcher = BackgroundDispatcher(max_workers=1)
        future = dispatcher.submit("task", MagicMock(side_effect=ValueError("bad")))
        assert future.result(timeout=5) is None
        dispatcher.shutdown()

    def test_submit_after_shutdown_is_dropped(self):
        dispatcher = BackgroundDispatcher(max_workers=1)
        dispatcher.shutdown()
        fn = MagicMock()
        assert dispatcher.submit("late", fn) is None
        fn.assert_not_called()
