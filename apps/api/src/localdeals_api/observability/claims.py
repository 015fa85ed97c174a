from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class ClaimsSnapshot:
    transitions: Dict[str, Dict[str, int]]
    capacity: Dict[str, int]
    points: Dict[str, int]
    webhooks: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "transitions": {key: dict(value) for key, value in self.transitions.items()},
            "capacity": dict(self.capacity),
            "points": dict(self.points),
            "webhooks": {key: dict(value) for key, value in self.webhooks.items()},
        }


class ClaimObservabilityStore:
    """Collect claim lifecycle, ledger and deposit webhook telemetry."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transitions: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._capacity: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._webhooks: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def record_transition(self, transition: str, outcome: str) -> None:
        with self._lock:
            self._transitions[transition][outcome or "unknown"] += 1

    def record_capacity_decision(self, granted: bool) -> None:
        with self._lock:
            self._capacity["granted" if granted else "denied"] += 1

    def record_capacity_release(self) -> None:
        with self._lock:
            self._capacity["released"] += 1

    def record_points(self, metric: str, amount: int = 1) -> None:
        with self._lock:
            self._points[metric] += amount

    def record_webhook(self, provider: str, outcome: str) -> None:
        with self._lock:
            self._webhooks[provider][outcome] += 1

    def snapshot(self) -> ClaimsSnapshot:
        with self._lock:
            transitions = {key: dict(value) for key, value in self._transitions.items()}
            capacity = dict(self._capacity)
            points = dict(self._points)
            webhooks = {key: dict(value) for key, value in self._webhooks.items()}
        return ClaimsSnapshot(transitions=transitions, capacity=capacity, points=points, webhooks=webhooks)

    def reset(self) -> None:
        with self._lock:
            self._transitions.clear()
            self._capacity.clear()
            self._points.clear()
            self._webhooks.clear()


_STORE = ClaimObservabilityStore()


def get_claims_store() -> ClaimObservabilityStore:
    return _STORE


__all__ = ["get_claims_store", "ClaimObservabilityStore", "ClaimsSnapshot"]
