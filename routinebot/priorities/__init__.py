"""Persisted routine priorities and the weighted selector built on them."""

from routinebot.priorities.selector import Selector, compute_weight, is_eligible
from routinebot.priorities.store import EMA_ALPHA, PriorityStore

__all__ = ["EMA_ALPHA", "PriorityStore", "Selector", "compute_weight", "is_eligible"]
