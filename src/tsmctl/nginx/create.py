"""Create nginx site files from the packaged templates and register them."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ErrorCode, TsmError, internal_error, validation_error
from ..filesystem import PathState, classify_os_error, probe_path
from ..locking import LockManager
from ..machines import MachineInventory
from ..state.registry import StateRegistry
from ..templates import SITE_TEMPLATES, SiteVariables, TemplateEngine
from .parser import parse_nginx_config

LOGGER = logging.getLogger(__name__)

SITE_FILE_MODE = 0o644


@dataclass(slots=True)
class CreateResult:
    """A site file written from a template and its new record."""

    path: Path
    record: dict[str, Any]
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"file_path": str(self.path), "record": dict(self.record)}


def check_site_request(
    template: str,
    server_names: Sequence[str],
    port: int,
    directory: Path | str,
) -> tuple[str, tuple[str, ...]]:
    """Validate the request fields; return the template file and trimmed names."""
    key = str(template or "").strip()
    if not key:
        raise validation_error("Request validation failed", "template must be a non-empty string")
    if key not in SITE_TEMPLATES:
        raise validation_error(
            "Invalid template name", f"Must be one of: {', '.join(sorted(SITE_TEMPLATES))}"
        )
    names = tuple(str(name).strip() for name in server_names)
    if not names:
        raise validation_error(
            "Request validation failed", "server_names must be a non-empty list"
        )
    if any(not name for name in names):
        raise validation_error(
            "Request validation failed", "All server names must be non-empty strings"
        )
    if "/" in names[0] or names[0].startswith("."):
        raise validation_error(
            "Request validation failed", f"'{names[0]}' cannot be used as a file name"
        )
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise validation_error(
            "Request validation failed", "port must be a number between 1 and 65535"
        )
    if not str(directory).strip():
        raise validation_error(
            "Request validation failed", "directory must be a non-empty path"
        )
    return SITE_TEMPLATES[key], names


@dataclass(slots=True)
class SiteCreator:
    """Render a site template into an nginx directory and record the site."""

    registry: StateRegistry
    machines: MachineInventory
    templates: TemplateEngine
    locks: LockManager

    def create(
        self,
        *,
        template: str,
        server_names: Sequence[str],
        app_host_public_id: str,
        port: int,
        directory: Path,
        timeout: float | None = None,
    ) -> CreateResult:
        """Write ``<directory>/<first server name>`` and register it.

        The site proxies to the app host's address. The nginx host is this
        machine, which must already be registered.
        """
        template_file, names = check_site_request(template, server_names, port, directory)
        app_host_public_id = str(app_host_public_id or "").strip()
        if not app_host_public_id:
            raise validation_error(
                "Request validation failed", "app_host_public_id must be a non-empty string"
            )
        app_host = self.machines.find_by_public_id(app_host_public_id)
        if app_host is None:
            raise TsmError(
                ErrorCode.MACHINE_NOT_FOUND,
                "Machine not found",
                status=404,
                details="Machine with the given app host public id not found",
            )
        nginx_host = self.machines.current_machine()
        upstream_ip = app_host.get("local_ip_address")
        if not upstream_ip:
            raise internal_error(
                "Machine configuration error",
                f"Machine {app_host.get('public_id')} has no local_ip_address",
            )

        directory = Path(directory)
        self._require_directory(directory)
        path = directory / names[0]
        variables = SiteVariables(server_names=names, local_ip_address=upstream_ip, port=port)
        content = self.templates.render_to_string(template_file, variables)

        with self.locks.mutate_paths([path], timeout=timeout) as bundle:
            if self.registry.sites.find_one({"server_name": names[0]}) is not None:
                raise validation_error(
                    "Server name already exists in database",
                    f"A site named {names[0]} is already registered",
                )
            if path.exists():
                raise validation_error(
                    "Config file already exists", f"{path} would be overwritten"
                )
            try:
                self.templates.render_to_path(
                    template_file, path, variables, mode=SITE_FILE_MODE
                )
            except OSError as exc:
                if classify_os_error(exc) is PathState.DENIED:
                    raise TsmError(
                        ErrorCode.CONFIG_FILE_PERMISSION_DENIED,
                        "Permission denied writing config file",
                        status=403,
                        details=str(path),
                    ) from exc
                raise TsmError(
                    ErrorCode.CONFIG_WRITE_ERROR,
                    "Failed to create nginx config file",
                    status=500,
                    details=f"{path}: {exc}",
                ) from exc

            try:
                record = self.registry.sites.create(
                    {
                        "public_id": str(uuid.uuid4()),
                        "server_name": names[0],
                        "additional_server_names": list(names[1:]),
                        "port_number": port,
                        "app_host_machine_public_id": app_host.get("public_id"),
                        "nginx_host_machine_public_id": nginx_host.get("public_id"),
                        "framework": parse_nginx_config(content).framework,
                        "store_directory": str(directory),
                    }
                )
            except TsmError:
                path.unlink(missing_ok=True)
                raise
        LOGGER.info("Created %s for %s:%d", path, upstream_ip, port)
        return CreateResult(path=path, record=record, lock_wait_ms=bundle.wait_ms)

    @staticmethod
    def _require_directory(directory: Path) -> None:
        state = probe_path(directory, directory=True)
        if state is PathState.MISSING:
            raise TsmError(
                ErrorCode.NGINX_DIRECTORY_NOT_FOUND,
                "Nginx directory not found",
                status=404,
                details=f"{directory} does not exist",
            )
        if state is PathState.DENIED:
            raise TsmError(
                ErrorCode.NGINX_DIRECTORY_PERMISSION_DENIED,
                "Permission denied writing nginx directory",
                status=403,
                details=f"Cannot write to {directory}",
            )


__all__ = ["CreateResult", "SiteCreator", "check_site_request"]
