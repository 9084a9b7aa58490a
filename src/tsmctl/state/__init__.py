"""State management helpers for tsmctl."""
from __future__ import annotations

from .registry import RecordCollection, StateRegistry, StateRegistryError

__all__ = ["RecordCollection", "StateRegistry", "StateRegistryError"]
