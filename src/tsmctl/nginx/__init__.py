"""Nginx site parsing, scanning and safe updates."""
from __future__ import annotations

from .create import CreateResult, SiteCreator
from .parser import ParsedNginxSite, parse_nginx_config
from .report import list_reports, write_scan_report
from .scan import ScanEntry, ScanResult, SiteScanner
from .update import ConfigTransaction, SafeConfigUpdater, TransactionState, UpdateResult

__all__ = [
    "ConfigTransaction",
    "CreateResult",
    "ParsedNginxSite",
    "SafeConfigUpdater",
    "ScanEntry",
    "ScanResult",
    "SiteCreator",
    "SiteScanner",
    "TransactionState",
    "UpdateResult",
    "list_reports",
    "parse_nginx_config",
    "write_scan_report",
]
