"""Tool loop detection for the agent runtime.

Stops agents from burning model calls on the same tool calls over and over.

Three detectors over a sliding window:
- generic_repeat: same tool + arguments called N times
- poll_no_progress: same tool + arguments returning the same result
- ping_pong: alternating A -> B -> A -> B calls
"""

from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class LoopSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"
    CIRCUIT_BREAKER = "circuit_breaker"


SEVERITY_RANK = {
    LoopSeverity.WARNING: 1,
    LoopSeverity.CRITICAL: 2,
    LoopSeverity.CIRCUIT_BREAKER: 3,
}

REPEAT_WARNING = 3
REPEAT_CRITICAL = 5
REPEAT_CIRCUIT_BREAKER = 7
POLL_WARNING = 3
POLL_CRITICAL = 5
PING_PONG_WARNING = 3
PING_PONG_CRITICAL = 5

WINDOW_SIZE = 30
# Results longer than this are truncated before hashing
RESULT_HASH_LIMIT = 2000


@dataclass(frozen=True)
class LoopDetection:
    detected: bool
    severity: LoopSeverity | None = None
    detector: str | None = None
    message: str = ""
    count: int = 0

    @property
    def should_stop(self) -> bool:
        return self.severity == LoopSeverity.CIRCUIT_BREAKER


NO_LOOP = LoopDetection(detected=False)


@dataclass(frozen=True)
class _CallRecord:
    call_hash: str
    full_hash: str
    tool_name: str


def _digest(payload: dict[str, Any]) -> str:
    text = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(text.encode()).hexdigest()[:16]


class ToolLoopDetector:
    """One detector per invocation; record every dispatched call."""

    def __init__(self, window_size: int = WINDOW_SIZE) -> None:
        self._history: deque[_CallRecord] = deque(maxlen=window_size)

    def record_and_check(self, tool_name: str, args: dict[str, Any], result: str) -> LoopDetection:
        """Record a tool call and return the most severe detection."""
        call_hash = _digest({"t": tool_name, "a": args})
        full_hash = _digest({"t": tool_name, "a": args, "r": result[:RESULT_HASH_LIMIT]})
        self._history.append(_CallRecord(call_hash, full_hash, tool_name))

        # Ties go to the later, more specific detector
        worst = NO_LOOP
        for detection in (
            self._detect_repeat(call_hash),
            self._detect_poll_no_progress(full_hash),
            self._detect_ping_pong(),
        ):
            if detection.detected and (
                not worst.detected
                or SEVERITY_RANK[detection.severity] >= SEVERITY_RANK[worst.severity]  # type: ignore[index]
            ):
                worst = detection
        return worst

    def reset(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)

    def _detect_repeat(self, call_hash: str) -> LoopDetection:
        count = sum(1 for h in self._history if h.call_hash == call_hash)
        if count >= REPEAT_CIRCUIT_BREAKER:
            return LoopDetection(
                True,
                LoopSeverity.CIRCUIT_BREAKER,
                "generic_repeat",
                f"Same tool call repeated {count} times; circuit breaker triggered",
                count,
            )
        if count >= REPEAT_CRITICAL:
            return LoopDetection(
                True, LoopSeverity.CRITICAL, "generic_repeat",
                f"Same tool call repeated {count} times", count,
            )
        if count >= REPEAT_WARNING:
            return LoopDetection(
                True, LoopSeverity.WARNING, "generic_repeat",
                f"Same tool call repeated {count} times", count,
            )
        return NO_LOOP

    def _detect_poll_no_progress(self, full_hash: str) -> LoopDetection:
        count = sum(1 for h in self._history if h.full_hash == full_hash)
        if count >= POLL_CRITICAL:
            return LoopDetection(
                True, LoopSeverity.CRITICAL, "poll_no_progress",
                f"Tool returned identical results {count} times", count,
            )
        if count >= POLL_WARNING:
            return LoopDetection(
                True, LoopSeverity.WARNING, "poll_no_progress",
                f"Tool returned identical results {count} times", count,
            )
        return NO_LOOP

    def _detect_ping_pong(self) -> LoopDetection:
        recent = list(self._history)[-20:]
        if len(recent) < 4:
            return NO_LOOP

        last = recent[-1].call_hash
        second_last = recent[-2].call_hash
        if last == second_last:
            return NO_LOOP

        cycles = 1
        i = len(recent) - 3
        while i >= 1 and recent[i].call_hash == last and recent[i - 1].call_hash == second_last:
            cycles += 1
            i -= 2

        if cycles >= PING_PONG_CRITICAL:
            severity = LoopSeverity.CRITICAL
        elif cycles >= PING_PONG_WARNING:
            severity = LoopSeverity.WARNING
        else:
            return NO_LOOP
        return LoopDetection(
            True, severity, "ping_pong",
            f"Ping-pong pattern detected: {cycles} cycles of alternating tool calls", cycles,
        )
