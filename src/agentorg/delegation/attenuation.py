"""
Permission Attenuation

Privileges only shrink moving down the hierarchy: a delegated task receives
the intersection of what the delegator holds and what was requested.
"""

from __future__ import annotations

from collections.abc import Iterable


def attenuate(granted: Iterable[str], requested: Iterable[str] | None = None) -> frozenset[str]:
    """
    Intersect a requested capability set with a held one.

    Args:
        granted: Capabilities the delegator holds
        requested: Capabilities asked for; None or empty means full inheritance

    Returns:
        A subset of ``granted``
    """
    held = frozenset(granted)
    if not requested:
        return held
    return frozenset(requested) & held
