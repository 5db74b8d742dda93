# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

from kosbot.core.monitor import TerminalMonitor, normalize_error


def test_tracks_recent_lines_with_limit() -> None:
    monitor = TerminalMonitor(max_lines=3)
    monitor.track_output("a\nb\n\nc\nd")

    assert monitor.recent_lines() == ["b", "c", "d"]
    assert monitor.recent_lines(2) == ["c", "d"]
    assert monitor.recent_lines(0) == []


def test_normalize_error_collapses_values() -> None:
    assert normalize_error("Error: value 12 for 'x'") == "Error: value N for 'X'"


def test_detects_error_loop() -> None:
    monitor = TerminalMonitor()
    for i in range(5):
        monitor.track_line(f"Error: Tried to push Infinity onto the stack at {i}")

    status = monitor.status()
    assert status.is_looping
    assert status.has_errors
    assert status.error_count == 5
    assert monitor.summary().startswith("ERROR LOOP DETECTED")


def test_few_errors_are_not_a_loop() -> None:
    monitor = TerminalMonitor()
    monitor.track_output("ok\nError: one\nok")

    assert monitor.detect_loop() is None
    assert monitor.summary() == '1 errors detected, last: "Error: one"'


def test_clean_summary_and_clear() -> None:
    monitor = TerminalMonitor()
    monitor.track_output("1\n2")
    assert monitor.summary() == "No errors (2 lines tracked)"

    monitor.track_line("Error: x")
    monitor.clear()
    status = monitor.status()
    assert status.recent_lines == []
    assert status.last_error is None
    assert status.error_count == 0
