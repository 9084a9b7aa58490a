"""Machine inventory backed by the state registry."""
from __future__ import annotations

import logging
import socket
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psutil

from .discovery.environment import EnvironmentResolver
from .discovery.units import DEFAULT_UNIT_DIR, ServiceUnit, validate_unit
from .errors import ErrorCode, TsmError, validation_error
from .providers.systemd import UNKNOWN, SystemdError, SystemdProvider
from .state.registry import StateRegistry

LOGGER = logging.getLogger(__name__)

LOOPBACK_FALLBACK = "127.0.0.1"


@dataclass(slots=True, frozen=True)
class MachineInfo:
    """Identity of the host tsmctl is running on."""

    machine_name: str
    local_ip_address: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"machine_name": self.machine_name, "local_ip_address": self.local_ip_address}


def current_machine_info() -> MachineInfo:
    """Return the hostname and first non-loopback IPv4 address of this host."""
    address = LOOPBACK_FALLBACK
    for addresses in psutil.net_if_addrs().values():
        candidate = next(
            (
                entry.address
                for entry in addresses
                if entry.family == socket.AF_INET and not entry.address.startswith("127.")
            ),
            None,
        )
        if candidate is not None:
            address = candidate
            break
    return MachineInfo(machine_name=socket.gethostname(), local_ip_address=address)


@dataclass(slots=True)
class MachineInventory:
    """Look up, register and join machine records."""

    registry: StateRegistry
    unit_dir: Path = DEFAULT_UNIT_DIR
    resolver: EnvironmentResolver = field(default_factory=EnvironmentResolver)

    def find_by_ip(self, ip_address: str) -> dict[str, Any] | None:
        """Return the machine registered with *ip_address*."""
        return self.registry.machines.find_one({"local_ip_address": ip_address})

    def find_by_public_id(self, public_id: str) -> dict[str, Any] | None:
        """Return the machine with *public_id*."""
        return self.registry.machines.find_one({"public_id": public_id})

    def require(self, public_id: str) -> dict[str, Any]:
        """Return the machine with *public_id* or raise ``MACHINE_NOT_FOUND``."""
        public_id = _check_public_id(public_id)
        machine = self.find_by_public_id(public_id)
        if machine is None:
            raise _machine_not_found(public_id)
        return machine

    def current_machine(self, info: MachineInfo | None = None) -> dict[str, Any]:
        """Return the record of this host or raise ``MACHINE_NOT_FOUND``."""
        info = info or current_machine_info()
        machine = self.find_by_ip(info.local_ip_address)
        if machine is None:
            raise TsmError(
                ErrorCode.MACHINE_NOT_FOUND,
                "Current machine not found in database",
                status=404,
                details=f"Current IP: {info.local_ip_address}",
            )
        return machine

    def list_machines(self) -> list[dict[str, Any]]:
        """Return every machine record."""
        return self.registry.machines.find()

    def register(
        self,
        *,
        url_api: str | None = None,
        nginx_storage_path_options: Sequence[str] = (),
        services: Iterable[ServiceUnit] = (),
        info: MachineInfo | None = None,
    ) -> dict[str, Any]:
        """Validate *services* and record this host as a machine."""
        info = info or current_machine_info()
        if self.find_by_ip(info.local_ip_address) is not None:
            raise validation_error(
                "Machine already registered",
                f"A machine with IP {info.local_ip_address} already exists",
            )
        options = _check_options(nginx_storage_path_options)
        validated = self._validate_services(services)
        LOGGER.info(
            "Registering %s (%s) with %d services",
            info.machine_name,
            info.local_ip_address,
            len(validated),
        )
        return self.registry.machines.create(
            {
                "machine_name": info.machine_name,
                "local_ip_address": info.local_ip_address,
                "url_api": url_api,
                "nginx_storage_path_options": options,
                "services": [unit.to_dict() for unit in validated],
            }
        )

    def update(
        self,
        public_id: str,
        *,
        url_api: str | None = None,
        nginx_storage_path_options: Sequence[str] | None = None,
        services: Iterable[ServiceUnit] | None = None,
    ) -> dict[str, Any]:
        """Change the given fields of a machine; services are re-validated."""
        machine = self.require(public_id)
        updates: dict[str, object] = {}
        if url_api is not None:
            if not isinstance(url_api, str) or not url_api.strip():
                raise validation_error(
                    "Request validation failed", "url_api must be a non-empty string"
                )
            updates["url_api"] = url_api
        if nginx_storage_path_options is not None:
            updates["nginx_storage_path_options"] = _check_options(nginx_storage_path_options)
        if services is not None:
            updates["services"] = [unit.to_dict() for unit in self._validate_services(services)]
        if not updates:
            raise validation_error(
                "Request validation failed",
                "At least one field must be provided for update "
                "(url_api, nginx_storage_path_options or services)",
            )

        LOGGER.info("Updating machine %s: %s", machine["public_id"], ", ".join(updates))
        updated = self.registry.machines.find_one_and_update(
            {"public_id": machine["public_id"]}, updates
        )
        if updated is None:
            raise _machine_not_found(machine["public_id"])
        return updated

    def delete(self, public_id: str) -> dict[str, Any]:
        """Remove a machine record and return it."""
        public_id = _check_public_id(public_id)
        removed = self.registry.machines.find_one_and_delete({"public_id": public_id})
        if removed is None:
            raise _machine_not_found(public_id)
        LOGGER.info("Deleted machine %s (%s)", public_id, removed.get("machine_name"))
        return removed

    def services(self, info: MachineInfo | None = None) -> list[dict[str, Any]]:
        """Return the services attached to this host or raise ``SERVICE_NOT_FOUND``."""
        machine = self.current_machine(info)
        services = [
            service for service in machine.get("services") or [] if isinstance(service, Mapping)
        ]
        if not services:
            raise TsmError(
                ErrorCode.SERVICE_NOT_FOUND,
                "No services configured for this machine",
                status=404,
                details=f"Machine '{machine.get('machine_name')}' has no services configured",
            )
        return [dict(service) for service in services]

    def find_service(self, name: str, info: MachineInfo | None = None) -> dict[str, Any]:
        """Return the service of this host whose application is *name*."""
        for service in self.services(info):
            if service.get("name") == name:
                return service
        raise TsmError(
            ErrorCode.SERVICE_NOT_FOUND,
            "Service not found",
            status=404,
            details=f"Service with name '{name}' is not configured on this machine",
        )

    def service_statuses(
        self,
        provider: SystemdProvider,
        info: MachineInfo | None = None,
    ) -> list[dict[str, Any]]:
        """Query systemd for every service of this host.

        A unit whose status cannot be read is reported as ``unknown`` rather
        than failing the whole listing.
        """
        statuses: list[dict[str, Any]] = []
        for service in self.services(info):
            filename = str(service.get("filename", ""))
            entry: dict[str, Any] = {"name": service.get("name"), "filename": filename}
            try:
                status = provider.status(filename)
            except SystemdError as exc:
                LOGGER.warning("Cannot read status of %s: %s", filename, exc)
                entry["status"] = UNKNOWN
                statuses.append(entry)
                continue
            entry["status"] = status.status
            entry["on_start_status"] = status.on_start_status

            timer = service.get("timer_filename")
            if timer:
                entry["timer_filename"] = timer
                try:
                    timer_status = provider.timer_status(str(timer))
                except SystemdError as exc:
                    LOGGER.warning("Cannot read status of %s: %s", timer, exc)
                    entry["timer_status"] = UNKNOWN
                    entry["timer_trigger"] = UNKNOWN
                else:
                    entry["timer_status"] = timer_status.status
                    entry["timer_trigger"] = timer_status.trigger or UNKNOWN
            statuses.append(entry)
        return statuses

    def _validate_services(self, services: Iterable[ServiceUnit]) -> list[ServiceUnit]:
        return [
            validate_unit(unit, unit_dir=self.unit_dir, resolver=self.resolver)
            for unit in services
        ]

    def populate_sites(self, records: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Attach app host and nginx host machine details to site records."""
        records = list(records)
        ids = {
            record.get(key)
            for record in records
            for key in ("app_host_machine_public_id", "nginx_host_machine_public_id")
            if record.get(key)
        }
        machines = {
            machine["public_id"]: machine
            for machine in self.registry.machines.find({"public_id": {"$in": sorted(ids)}})
        }

        populated: list[dict[str, Any]] = []
        for record in records:
            entry = dict(record)
            entry["app_host_machine"] = _machine_summary(
                machines.get(record.get("app_host_machine_public_id"))
            )
            entry["nginx_host_machine"] = _machine_summary(
                machines.get(record.get("nginx_host_machine_public_id"))
            )
            populated.append(entry)
        return populated


def _check_public_id(public_id: str) -> str:
    if not isinstance(public_id, str) or not public_id.strip():
        raise validation_error("Request validation failed", "public_id must be a non-empty string")
    return public_id.strip()


def _check_options(options: Sequence[str]) -> list[str]:
    checked = list(options)
    if any(not isinstance(option, str) or not option.strip() for option in checked):
        raise validation_error(
            "Request validation failed",
            "nginx_storage_path_options must contain non-empty strings",
        )
    return checked


def _machine_not_found(public_id: str) -> TsmError:
    return TsmError(
        ErrorCode.MACHINE_NOT_FOUND,
        "Machine not found",
        status=404,
        details=f"No machine with public id {public_id}",
    )


def _machine_summary(machine: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if machine is None:
        return None
    return {
        "public_id": machine.get("public_id"),
        "machine_name": machine.get("machine_name"),
        "local_ip_address": machine.get("local_ip_address"),
    }


__all__ = ["MachineInfo", "MachineInventory", "current_machine_info"]
