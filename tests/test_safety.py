"""Tests for tool loop detection."""

from __future__ import annotations

from agentorg.safety import LoopSeverity, ToolLoopDetector


class TestGenericRepeat:
    def test_distinct_calls_are_fine(self) -> None:
        detector = ToolLoopDetector()
        for i in range(10):
            result = detector.record_and_check("search", {"q": i}, f"r{i}")
            assert not result.detected

    def test_thresholds(self) -> None:
        detector = ToolLoopDetector()
        severities = [
            detector.record_and_check("search", {"q": "x"}, f"r{i}").severity
            for i in range(7)
        ]
        assert severities == [
            None,
            None,
            LoopSeverity.WARNING,
            LoopSeverity.WARNING,
            LoopSeverity.CRITICAL,
            LoopSeverity.CRITICAL,
            LoopSeverity.CIRCUIT_BREAKER,
        ]

    def test_circuit_breaker_stops(self) -> None:
        detector = ToolLoopDetector()
        for _ in range(6):
            assert not detector.record_and_check("search", {"q": "x"}, "same").should_stop
        result = detector.record_and_check("search", {"q": "x"}, "same")
        assert result.should_stop
        assert result.detector == "generic_repeat"
        assert result.count == 7

    def test_argument_order_does_not_matter(self) -> None:
        detector = ToolLoopDetector()
        detector.record_and_check("search", {"a": 1, "b": 2}, "r1")
        detector.record_and_check("search", {"b": 2, "a": 1}, "r2")
        result = detector.record_and_check("search", {"a": 1, "b": 2}, "r3")
        assert result.detected
        assert result.count == 3


class TestPollNoProgress:
    def test_identical_results_are_flagged(self) -> None:
        detector = ToolLoopDetector()
        detector.record_and_check("status", {}, "pending")
        detector.record_and_check("status", {}, "pending")
        result = detector.record_and_check("status", {}, "pending")
        assert result.severity == LoopSeverity.WARNING
        assert result.detector == "poll_no_progress"

    def test_changing_results_only_count_as_repeats(self) -> None:
        detector = ToolLoopDetector()
        results = [detector.record_and_check("status", {}, f"{i}%") for i in range(5)]
        assert results[-1].detector == "generic_repeat"


class TestPingPong:
    def test_alternation(self) -> None:
        detector = ToolLoopDetector()
        results = []
        for i in range(6):
            tool = "read" if i % 2 == 0 else "write"
            results.append(detector.record_and_check(tool, {"i": i % 2}, f"r{i}"))

        assert results[-1].detector == "ping_pong"
        assert results[-1].severity == LoopSeverity.WARNING
        assert results[-1].count == 3
        assert "Ping-pong" in results[-1].message

    def test_single_tool_is_not_ping_pong(self) -> None:
        detector = ToolLoopDetector()
        for i in range(4):
            result = detector.record_and_check("read", {"i": i}, f"r{i}")
        assert result.detector != "ping_pong"


class TestWindow:
    def test_window_is_bounded(self) -> None:
        detector = ToolLoopDetector(window_size=5)
        for i in range(12):
            detector.record_and_check("search", {"q": i}, "r")
        assert len(detector) == 5

    def test_old_calls_fall_out(self) -> None:
        detector = ToolLoopDetector(window_size=4)
        detector.record_and_check("search", {"q": "x"}, "r")
        detector.record_and_check("search", {"q": "x"}, "r")
        for i in range(4):
            detector.record_and_check("other", {"i": i}, f"o{i}")
        assert not detector.record_and_check("search", {"q": "x"}, "r").detected

    def test_reset(self) -> None:
        detector = ToolLoopDetector()
        detector.record_and_check("search", {}, "r")
        detector.reset()
        assert len(detector) == 0
