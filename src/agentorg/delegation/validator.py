"""
Delegation Validator

Pure guard run before any delegated task is created. Checks are evaluated in
a fixed order and the first failure wins:

1. Authorization: target slug is in the delegator's can_delegate_to
2. Depth: current depth is below the delegator's max_delegation_depth
3. Cycle: target is not already part of the delegation chain

The org-chart parent_id is never consulted.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from .models import AgentDefinition


class RejectionCode(StrEnum):
    NOT_AUTHORIZED = "not authorized"
    DEPTH_EXCEEDED = "depth exceeded"
    CIRCULAR = "circular delegation"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation. ``reason`` is set only when invalid."""

    valid: bool
    code: RejectionCode | None = None
    reason: str | None = None

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def reject(cls, code: RejectionCode, detail: str) -> ValidationResult:
        return cls(valid=False, code=code, reason=f"{code.value}: {detail}")


def validate_delegation(
    from_agent: AgentDefinition,
    to_agent: AgentDefinition,
    current_depth: int,
    chain: Sequence[str],
) -> ValidationResult:
    """Validate a single delegation hop."""
    if to_agent.slug not in from_agent.can_delegate_to:
        allowed = ", ".join(sorted(from_agent.can_delegate_to))
        return ValidationResult.reject(
            RejectionCode.NOT_AUTHORIZED,
            f'agent "{from_agent.slug}" may not delegate to "{to_agent.slug}" '
            f"(allowed: [{allowed}])",
        )

    if current_depth >= from_agent.max_delegation_depth:
        return ValidationResult.reject(
            RejectionCode.DEPTH_EXCEEDED,
            f"max delegation depth ({from_agent.max_delegation_depth}) reached "
            f"at depth {current_depth}",
        )

    if to_agent.id in chain:
        return ValidationResult.reject(
            RejectionCode.CIRCULAR,
            f'"{to_agent.slug}" is already in the delegation chain',
        )

    return ValidationResult.ok()
