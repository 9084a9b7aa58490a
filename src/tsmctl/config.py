"""Configuration loader for tsmctl.

Values are layered in this order, later sources winning:

1. Built-in defaults.
2. ``/etc/tsmctl/config.yml`` (or the path given by ``--config-file`` or
   ``TSMCTL_CONFIG_FILE``).
3. Environment variables prefixed with ``TSMCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export TSMCTL_NGINX__SITES_AVAILABLE=/srv/nginx/sites
    export TSMCTL_NGINX__VALIDATE_TIMEOUT=null

Values are coerced via PyYAML's ``safe_load`` so booleans, numbers and
``null`` parse naturally. The result is exposed as frozen dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "TSMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
ALLOWED_ENVIRONMENTS = {"development", "production"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Where nginx sites live and how the configuration is checked."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    default_entry: str = "default"
    test_command: str = "nginx -t"
    validate_timeout: float | None = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "default_entry": self.default_entry,
            "test_command": self.test_command,
            "validate_timeout": self.validate_timeout,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    inventory_csv: Path | None = None
    inventory_unit_column: int = 5
    app_logs_dir: Path = Path("/var/log/applications")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "inventory_csv": str(self.inventory_csv) if self.inventory_csv else None,
            "inventory_unit_column": self.inventory_unit_column,
            "app_logs_dir": str(self.app_logs_dir),
        }


@dataclass(frozen=True)
class EnvironmentFileConfig:
    """Dotenv files searched for an application's identity."""

    primary: str = ".env"
    secondary: str = ".env.local"
    identity_variable: str = "NAME_APP"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "primary": self.primary,
            "secondary": self.secondary,
            "identity_variable": self.identity_variable,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for tsmctl."""

    config_file: Path
    environment: str
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    report_dir: Path
    lock_timeout: float
    nginx: NginxConfig
    systemd: SystemdConfig
    env_files: EnvironmentFileConfig

    @property
    def production(self) -> bool:
        """Return True when error details must be withheld."""
        return self.environment == "production"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "environment": self.environment,
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "report_dir": str(self.report_dir),
            "lock_timeout": self.lock_timeout,
            "nginx": self.nginx.to_dict(),
            "systemd": self.systemd.to_dict(),
            "env_files": self.env_files.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/tsmctl/config.yml",
    "environment": "development",
    "state_dir": "/var/lib/tsmctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/tsmctl",
    "runtime_dir": "/run/tsmctl",
    "templates_dir": "/etc/tsmctl/templates",
    "report_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "default_entry": "default",
        "test_command": "nginx -t",
        "validate_timeout": 60.0,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "inventory_csv": None,
        "inventory_unit_column": 5,
        "app_logs_dir": "/var/log/applications",
    },
    "env_files": {
        "primary": ".env",
        "secondary": ".env.local",
        "identity_variable": "NAME_APP",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "nginx": {"sites_available", "default_entry", "test_command", "validate_timeout"},
    "systemd": {
        "unit_dir",
        "systemctl_bin",
        "inventory_csv",
        "inventory_unit_column",
        "app_logs_dir",
    },
    "env_files": {"primary", "secondary", "identity_variable"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = Path(environ.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    merged = deepcopy(DEFAULTS)
    for layer in (_read_config_file(config_path), _environment_layer(environ), overrides):
        if layer:
            _merge_into(merged, layer)
    merged["config_file"] = str(config_path)

    _check_keys(merged)
    return _build_app_config(merged)


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _section(loaded, str(path))


def _check_keys(raw: Mapping[str, object]) -> None:
    extra = sorted(set(raw) - ALLOWED_TOP_LEVEL_KEYS)
    if extra:
        raise ConfigError(f"Unknown configuration keys: {', '.join(extra)}.")

    environment = raw.get("environment")
    if environment is not None and str(environment) not in ALLOWED_ENVIRONMENTS:
        allowed = ", ".join(sorted(ALLOWED_ENVIRONMENTS))
        raise ConfigError(f"Unsupported environment '{environment}'. Allowed: {allowed}.")

    for name, allowed_keys in ALLOWED_SECTION_KEYS.items():
        extra = sorted(set(_section(raw.get(name), name)) - allowed_keys)
        if extra:
            raise ConfigError(f"Unknown {name} configuration keys: {', '.join(extra)}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _path(raw.get("state_dir"), "state_dir")

    nginx_raw = _section(raw.get("nginx"), "nginx")
    test_command = str(nginx_raw.get("test_command") or "").strip()
    if not test_command:
        raise ConfigError("nginx.test_command must be a non-empty command.")
    timeout = nginx_raw.get("validate_timeout")
    nginx = NginxConfig(
        sites_available=_path(nginx_raw.get("sites_available"), "nginx.sites_available"),
        default_entry=str(nginx_raw.get("default_entry", "default")),
        test_command=test_command,
        validate_timeout=(
            None if timeout is None else _positive_number(timeout, "nginx.validate_timeout")
        ),
    )

    systemd_raw = _section(raw.get("systemd"), "systemd")
    inventory_csv = systemd_raw.get("inventory_csv")
    systemd = SystemdConfig(
        unit_dir=_path(systemd_raw.get("unit_dir"), "systemd.unit_dir"),
        systemctl_bin=str(systemd_raw.get("systemctl_bin", "systemctl")),
        inventory_csv=(
            _path(inventory_csv, "systemd.inventory_csv") if inventory_csv else None
        ),
        inventory_unit_column=_column(
            systemd_raw.get("inventory_unit_column", 5), "systemd.inventory_unit_column"
        ),
        app_logs_dir=_path(systemd_raw.get("app_logs_dir"), "systemd.app_logs_dir"),
    )

    env_raw = _section(raw.get("env_files"), "env_files")
    env_files = EnvironmentFileConfig(
        primary=_text(env_raw.get("primary"), "env_files.primary"),
        secondary=_text(env_raw.get("secondary"), "env_files.secondary"),
        identity_variable=_text(
            env_raw.get("identity_variable"), "env_files.identity_variable"
        ),
    )

    registry_dir = raw.get("registry_dir")
    report_dir = raw.get("report_dir")
    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        environment=str(raw.get("environment", "development")),
        state_dir=state_dir,
        registry_dir=(
            _path(registry_dir, "registry_dir") if registry_dir else state_dir / "registry"
        ),
        logs_dir=_path(raw.get("logs_dir"), "logs_dir"),
        runtime_dir=_path(raw.get("runtime_dir"), "runtime_dir"),
        templates_dir=_path(raw.get("templates_dir"), "templates_dir"),
        report_dir=(
            _path(report_dir, "report_dir") if report_dir else state_dir / "status_reports"
        ),
        lock_timeout=_positive_number(raw.get("lock_timeout", 30.0), "lock_timeout"),
        nginx=nginx,
        systemd=systemd,
        env_files=env_files,
    )


# ---------------------------------------------------------------------------
# Layering helpers
# ---------------------------------------------------------------------------


def _environment_layer(environ: Mapping[str, str]) -> dict[str, object]:
    """Turn ``TSMCTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for name, raw_value in environ.items():
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"Environment variable {name} conflicts with a scalar at {key}."
                )
            node = child
        node[keys[-1]] = _scalar(raw_value)
    return layer


def _merge_into(target: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, _section(value, key))
        else:
            target[key] = value


def _scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _section(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping, not {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"{label} must only use string keys.")
    return dict(value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path, got {value!r}.")


def _text(value: object, label: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    raise ConfigError(f"{label} must be a non-empty string, got {value!r}.")


def _column(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"{label} must be an integer, got {value!r}.")
    try:
        column = int(value)
    except ValueError as exc:
        raise ConfigError(f"{label} must be an integer, got {value!r}.") from exc
    if column < 0:
        raise ConfigError(f"{label} must be non-negative.")
    return column


def _positive_number(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{label} must be a number, got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"{label} must be a number, got {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero, got {number}.")
    return number


__all__ = [
    "AppConfig",
    "ConfigError",
    "EnvironmentFileConfig",
    "NginxConfig",
    "SystemdConfig",
    "load_config",
]
