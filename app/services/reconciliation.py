"""
Reconciliation: Consumed Seconds to Minute Balances
===================================================

PURPOSE:
    Converts the seconds a call consumed back into the ledger's minute
    balances when a metering session ends.

    Deduction order: plan minutes (available_minutes) first, the remainder
    from top-up minutes (extra_minutes). Both balances are clamped at 0.
    ``seconds`` is recomputed from the resulting minutes so the at-rest
    invariant holds again. ``total_minutes`` is the entitlement and is
    never touched here.

    Zero consumption is a no-op: callers skip the write entirely, which
    makes start-then-immediate-end an exact round trip and repeated ends
    idempotent.

PHASE: ST-04 - Metering
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Absorbs binary float error, e.g. 0.7 * 60 == 41.99999999999999.
_FLOAT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class LedgerBalance:
    """Minute/second balances after reconciliation."""

    available_minutes: float
    extra_minutes: float
    seconds: int


def whole_seconds(minutes: float) -> int:
    """floor(minutes * 60), tolerant to float representation error."""
    if minutes <= 0:
        return 0
    return int(math.floor(minutes * 60 + _FLOAT_TOLERANCE))


def reconcile_consumption(
    available_minutes: float,
    extra_minutes: float,
    seconds_consumed: int,
) -> LedgerBalance:
    """Deduct ``seconds_consumed`` from available minutes, then extra minutes.

    Args:
        available_minutes: Plan-cycle balance before the call.
        extra_minutes: Top-up balance before the call.
        seconds_consumed: Ticks persisted during the call (>= 0).

    Returns:
        The new balances. With ``seconds_consumed == 0`` the inputs are
        returned unchanged (seconds recomputed).
    """
    if seconds_consumed < 0:
        raise ValueError(f"seconds_consumed must be >= 0, got {seconds_consumed}")

    available = max(float(available_minutes), 0.0)
    extra = max(float(extra_minutes), 0.0)
    minutes_to_deduct = seconds_consumed / 60

    from_available = min(available, minutes_to_deduct)
    available -= from_available
    remainder = minutes_to_deduct - from_available

    extra = max(extra - remainder, 0.0)

    # Snap values that are float noise away from zero.
    if available < _FLOAT_TOLERANCE / 60:
        available = 0.0
    if extra < _FLOAT_TOLERANCE / 60:
        extra = 0.0

    return LedgerBalance(
        available_minutes=available,
        extra_minutes=extra,
        seconds=whole_seconds(available + extra),
    )
