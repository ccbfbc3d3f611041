"""
Unit tests for progress tracking and duration formatting.
"""

import logging
import time

from syncer.progress import ChannelProgress, CycleProgress, _format_duration


class TestFormatDuration:
    def test_milliseconds(self):
        assert _format_duration(0.5) == "500ms"

    def test_seconds_only(self):
        assert _format_duration(45) == "45s"

    def test_zero(self):
        assert _format_duration(0) == "0s"

    def test_negative(self):
        assert _format_duration(-5) == "0s"

    def test_minutes_and_seconds(self):
        assert _format_duration(150) == "2m 30s"

    def test_exact_minutes(self):
        assert _format_duration(120) == "2m"

    def test_hours_and_minutes(self):
        assert _format_duration(4500) == "1h 15m"

    def test_exact_hours(self):
        assert _format_duration(3600) == "1h"


class TestChannelProgress:
    def test_initial_state(self):
        cp = ChannelProgress(1, 10, "C1", total_items=120)
        assert cp.processed == 0
        assert cp.delivered == 0
        assert cp.channel_index == 1
        assert cp.total_channels == 10

    def test_update(self):
        cp = ChannelProgress(1, 10, "C1", total_items=120)
        cp.update(48, 2)
        cp.update(50, 0)
        assert cp.delivered == 98
        assert cp.failed == 2
        assert cp.processed == 100

    def test_rate(self):
        cp = ChannelProgress(1, 10, "C1", total_items=1000)
        cp._start = time.monotonic() - 10.0
        cp.update(500, 0)
        assert 40.0 < cp.rate < 60.0

    def test_rate_zero_items(self):
        assert ChannelProgress(1, 1, "C1").rate == 0.0

    def test_log_complete(self, caplog):
        cp = ChannelProgress(2, 3, "C1", total_items=5)
        cp.update(4, 1)
        with caplog.at_level(logging.INFO, logger="syncer.progress"):
            cp.log_complete()
        assert "Completed 2/3: C1 | 4 delivered, 1 failed" in caplog.text

    def test_log_batch(self, caplog):
        cp = ChannelProgress(1, 1, "C1", total_items=100)
        cp.update(50, 0)
        with caplog.at_level(logging.DEBUG, logger="syncer.progress"):
            cp.log_batch(1, 2)
        assert "batch 1/2" in caplog.text


class TestCycleProgress:
    def test_accumulates_channels(self):
        cycle = CycleProgress(total_channels=3)
        first = ChannelProgress(1, 3, "C1")
        first.update(10, 1)
        second = ChannelProgress(2, 3, "C2")
        second.update(5, 0)

        cycle.update_from_channel(first)
        cycle.update_from_channel(second)
        cycle.mark_errored()

        assert cycle.channels_completed == 3
        assert cycle.channels_errored == 1
        assert cycle.delivered == 15
        assert cycle.failed == 1

    def test_log_cycle_progress(self, caplog):
        cycle = CycleProgress(total_channels=5)
        cycle.mark_errored()
        with caplog.at_level(logging.INFO, logger="syncer.progress"):
            cycle.log_cycle_progress()
        assert "1/5 channels (1 errored)" in caplog.text
