"""Replica distribution between the stable and canary Deployments."""

from __future__ import annotations

from typing import Tuple


def distribute(total: int, canary_percent: int) -> Tuple[int, int]:
    """Split *total* replicas into ``(stable, canary)`` for a canary percentage.

    The canary share is rounded up, so any step with ``total >= 1`` and a
    positive percentage runs at least one canary replica. The price is a
    skew of up to one replica toward the canary, which is large in relative
    terms at low replica counts (3 replicas at 10% gives 2 stable, 1 canary).

    Args:
        total: Replica count of the stable Deployment before the rollout.
        canary_percent: Share of replicas for the canary, 0-100.

    Returns:
        ``(stable_replicas, canary_replicas)``; they always sum to *total*.

    Raises:
        ValueError: If *total* is negative.
    """
    if total < 0:
        raise ValueError(f"total replicas must not be negative, got {total}")
    if canary_percent <= 0:
        return total, 0
    if canary_percent >= 100:
        return 0, total

    # ceil(total * p / 100) in integer arithmetic
    canary = -(-total * canary_percent // 100)
    stable = total - canary
    return max(stable, 0), max(canary, 0)
