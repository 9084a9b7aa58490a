"""Discovery of systemd units and the applications they run."""
from __future__ import annotations

from .environment import EnvironmentResolver, ResolvedEnvironment
from .inventory import build_unit_inventory
from .logs import read_service_log
from .units import ServiceUnit, validate_unit

__all__ = [
    "EnvironmentResolver",
    "ResolvedEnvironment",
    "ServiceUnit",
    "build_unit_inventory",
    "read_service_log",
    "validate_unit",
]
