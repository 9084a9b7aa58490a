"""Systemd unit and nginx site templates with literal placeholder substitution."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from .errors import ErrorCode, TsmError, validation_error

SERVICE_TEMPLATES = (
    "expressjs.service",
    "flask.service",
    "fastapi.service",
    "nextjs.service",
    "nodejsscript.service",
    "pythonscript.service",
)
TIMER_TEMPLATES = ("nodejsscript.timer", "pythonscript.timer")
BUILTIN_TEMPLATES = SERVICE_TEMPLATES + TIMER_TEMPLATES

# Site template keys accepted by ``nginx create`` and the files they render.
SITE_TEMPLATES = {
    "expressjs": "expressjs.conf",
    "nextjs-python": "nextjs-python.conf",
}
SITE_SUFFIX = ".conf"
UNIT_SUFFIXES = (".service", ".timer")


@dataclass(slots=True, frozen=True)
class TemplateVariables:
    """Values substituted into a unit template."""

    project_name: str
    python_env_name: str | None = None
    port: int | None = None
    project_name_lowercase: str | None = None

    def placeholders(self) -> dict[str, str]:
        """Return the ``{{NAME}}`` to value mapping for set variables."""
        values = {
            "{{PROJECT_NAME}}": self.project_name,
            "{{PROJECT_NAME_LOWERCASE}}": self.project_name_lowercase
            or self.project_name.lower(),
        }
        if self.python_env_name:
            values["{{PYTHON_ENV_NAME}}"] = self.python_env_name
        if self.port is not None:
            values["{{PORT}}"] = str(self.port)
        return values


@dataclass(slots=True, frozen=True)
class SiteVariables:
    """Values substituted into an nginx site template."""

    server_names: tuple[str, ...]
    local_ip_address: str
    port: int

    def placeholders(self) -> dict[str, str]:
        """Return the ``{{NAME}}`` to value mapping."""
        return {
            "{{SERVER_NAMES}}": " ".join(self.server_names),
            "{{LOCAL_IP_ADDRESS}}": self.local_ip_address,
            "{{PORT}}": str(self.port),
        }


def replace_placeholders(content: str, variables: TemplateVariables | SiteVariables) -> str:
    """Replace every known placeholder in *content*; unknown ones are left as-is."""
    for placeholder, value in variables.placeholders().items():
        content = content.replace(placeholder, value)
    return content


@dataclass(slots=True, frozen=True)
class TemplateEngine:
    """Render unit and site templates, preferring files in an override directory."""

    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that checks ``<dir>/systemd`` and ``<dir>/nginx`` first."""
        return cls(override_dir=Path(override_dir).expanduser() if override_dir else None)

    def available(self) -> list[str]:
        """Return every template name this engine can render."""
        names = set(BUILTIN_TEMPLATES) | set(SITE_TEMPLATES.values())
        if self.override_dir is not None:
            for subdir, suffixes in (("systemd", UNIT_SUFFIXES), ("nginx", (SITE_SUFFIX,))):
                directory = self.override_dir / subdir
                if directory.is_dir():
                    names.update(
                        path.name for path in directory.iterdir() if path.suffix in suffixes
                    )
        return sorted(names)

    def load(self, name: str) -> str:
        """Return the raw text of template *name*."""
        if not name or "/" in name or name.startswith("."):
            raise validation_error("Invalid template name", f"'{name}' is not a template name")
        subdir = "nginx" if name.endswith(SITE_SUFFIX) else "systemd"
        if self.override_dir is not None:
            override = self.override_dir / subdir / name
            if override.is_file():
                return override.read_text(encoding="utf-8")
        if name not in BUILTIN_TEMPLATES and name not in SITE_TEMPLATES.values():
            allowed = ", ".join(self.available())
            raise validation_error("Invalid template name", f"Must be one of: {allowed}")
        resource = resources.files("tsmctl.data").joinpath(subdir, name)
        try:
            return resource.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise TsmError(
                ErrorCode.TEMPLATE_NOT_FOUND,
                "Template file not found",
                status=500,
                details=f"Packaged template {name} is missing",
            ) from exc

    def render_to_string(self, name: str, variables: TemplateVariables | SiteVariables) -> str:
        """Return template *name* with placeholders replaced."""
        if isinstance(variables, TemplateVariables) and not variables.project_name.strip():
            raise validation_error("Request validation failed", "project_name must be non-empty")
        return replace_placeholders(self.load(name), variables)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        variables: TemplateVariables | SiteVariables,
        *,
        mode: int = 0o644,
    ) -> bool:
        """Write the rendered template to *destination*; return True when it changed."""
        content = self.render_to_string(name, variables)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent), prefix=f".{destination.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


def template_variables(values: Mapping[str, object]) -> TemplateVariables:
    """Build :class:`TemplateVariables` from loosely typed input."""
    project_name = values.get("project_name")
    if not isinstance(project_name, str) or not project_name.strip():
        raise validation_error("Request validation failed", "project_name must be non-empty")
    port = values.get("port")
    if port is not None:
        try:
            port = int(str(port))
        except ValueError as exc:
            raise validation_error("Request validation failed", "port must be a number") from exc
        if not 1 <= port <= 65535:
            raise validation_error("Request validation failed", "port must be between 1 and 65535")
    python_env = values.get("python_env_name")
    lowercase = values.get("project_name_lowercase")
    return TemplateVariables(
        project_name=project_name.strip(),
        python_env_name=str(python_env) if python_env else None,
        port=port,
        project_name_lowercase=str(lowercase) if lowercase else None,
    )


__all__ = [
    "BUILTIN_TEMPLATES",
    "SERVICE_TEMPLATES",
    "SITE_TEMPLATES",
    "TIMER_TEMPLATES",
    "SiteVariables",
    "TemplateEngine",
    "TemplateVariables",
    "replace_placeholders",
    "template_variables",
]
