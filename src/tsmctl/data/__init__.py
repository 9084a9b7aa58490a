"""Packaged data files (systemd unit templates)."""
