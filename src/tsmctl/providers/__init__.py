"""Provider interfaces for tsmctl."""
from __future__ import annotations

from .nginx import NginxError, NginxProvider, NginxUnavailableError
from .systemd import SystemdError, SystemdProvider, UnitStatus

__all__ = [
    "NginxError",
    "NginxProvider",
    "NginxUnavailableError",
    "SystemdError",
    "SystemdProvider",
    "UnitStatus",
]
