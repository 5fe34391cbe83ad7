from __future__ import annotations

from enum import IntEnum
from typing import Tuple


class AlertLevel(IntEnum):
    """Ordered so that comparisons express severity: NORMAL < AMBER < RED."""

    NORMAL = 0
    AMBER = 1
    RED = 2

    @classmethod
    def from_name(cls, name: str | None) -> "AlertLevel | None":
        if name is None or name == "NO_DATA":
            return None
        return cls[name]


def evaluate(avg: float, max_: float, amber: float, red: float) -> AlertLevel:
    """Map a bucket's average and peak wind speed onto an alert level."""
    if avg >= red or max_ >= red:
        return AlertLevel.RED
    if avg >= amber or max_ >= amber:
        return AlertLevel.AMBER
    return AlertLevel.NORMAL


def legacy_flags(level: AlertLevel) -> Tuple[bool, bool, bool]:
    """Return the (alert, amber, red) boolean triple older clients expect."""
    amber = level >= AlertLevel.AMBER
    red = level == AlertLevel.RED
    return amber, amber, red
