"""Subscription matching and concurrent handler dispatch."""

from pyhassd.dispatch.engine import DispatchEngine
from pyhassd.dispatch.registry import StateHandler, Subscription, SubscriptionRegistry, pattern_matches
from pyhassd.dispatch.tracker import TaskTracker

__all__ = [
    "DispatchEngine",
    "StateHandler",
    "Subscription",
    "SubscriptionRegistry",
    "TaskTracker",
    "pattern_matches",
]
