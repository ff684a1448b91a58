"""Safety modules for agentorg."""

from __future__ import annotations

from .loop_detector import LoopDetection, LoopSeverity, ToolLoopDetector

__all__ = [
    "LoopDetection",
    "LoopSeverity",
    "ToolLoopDetector",
]
