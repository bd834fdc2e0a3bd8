"""
Configuration file support for Workload-Py.

Loads settings from ``~/.config/workload-py/config.yaml`` (or
``$XDG_CONFIG_HOME/workload-py/config.yaml``) and exposes them as typed
dataclasses that the CLI can merge with command-line flags.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("workload.config")

BACKEND_CHOICES = ("auto", "file", "native")
UNINSTALL_POLICIES = ("reject", "allow")


def default_config_path() -> Path:
    """Return the default configuration file path.

    Uses ``$XDG_CONFIG_HOME/workload-py/config.yaml`` when set, otherwise
    falls back to ``~/.config/workload-py/config.yaml``.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "workload-py" / "config.yaml"
    return Path.home() / ".config" / "workload-py" / "config.yaml"


def default_install_root() -> Path:
    """Return the default installation root."""
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "workload-py"
    return Path.home() / ".local" / "share" / "workload-py"


@dataclass
class NativeInstallerConfig:
    """Settings for the external installer command."""

    command: List[str] = field(default_factory=lambda: ["workload-native-installer"])
    timeout: Optional[float] = 600.0


def _seconds(value: Any, key: str, default: Optional[float]) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s %r", key, value)
        return default


@dataclass
class WorkloadConfig:
    """Top-level configuration loaded from the YAML file."""

    install_root: Path = field(default_factory=default_install_root)
    feed: Optional[Path] = None
    offline_cache: Optional[Path] = None
    platform: Optional[str] = None
    backend: str = "auto"
    default_generation: Optional[str] = None
    uninstall_policy: str = "reject"
    lock_timeout: float = 30.0
    native_installer: NativeInstallerConfig = field(
        default_factory=NativeInstallerConfig
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkloadConfig":
        """Construct a ``WorkloadConfig`` from a parsed YAML dictionary."""
        if not isinstance(data, dict):
            return cls()

        cfg = cls()
        if data.get("install_root"):
            cfg.install_root = Path(data["install_root"]).expanduser()
        if data.get("feed"):
            cfg.feed = Path(data["feed"]).expanduser()
        if data.get("offline_cache"):
            cfg.offline_cache = Path(data["offline_cache"]).expanduser()
        cfg.platform = data.get("platform")
        if data.get("default_generation") is not None:
            cfg.default_generation = str(data["default_generation"])

        backend = data.get("backend", cfg.backend)
        if backend in BACKEND_CHOICES:
            cfg.backend = backend
        else:
            logger.warning("Ignoring unknown backend %r, using 'auto'", backend)

        policy = data.get("uninstall_policy", cfg.uninstall_policy)
        if policy in UNINSTALL_POLICIES:
            cfg.uninstall_policy = policy
        else:
            logger.warning("Ignoring unknown uninstall_policy %r", policy)

        if data.get("lock_timeout") is not None:
            cfg.lock_timeout = _seconds(
                data["lock_timeout"], "lock_timeout", cfg.lock_timeout
            )

        native = data.get("native_installer") or {}
        if isinstance(native, dict):
            command = native.get("command")
            if isinstance(command, str):
                command = command.split()
            if command:
                cfg.native_installer.command = list(command)
            if "timeout" in native:
                timeout = native["timeout"]
                cfg.native_installer.timeout = (
                    _seconds(
                        timeout,
                        "native_installer.timeout",
                        cfg.native_installer.timeout,
                    )
                    if timeout is not None
                    else None
                )
        else:
            logger.warning("Skipping invalid native_installer entry: %s", native)

        return cfg

    @classmethod
    def from_file(cls, path: Path) -> "WorkloadConfig":
        """Read a YAML file and return a ``WorkloadConfig``.

        Returns an empty default config on any error.
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f.read())
            if data is None:
                return cls()
            return cls.from_dict(data)
        except (IOError, yaml.YAMLError) as e:
            logger.error("Failed to load config from %s: %s", path, e)
            return cls()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "WorkloadConfig":
        """Main entry point: load config from *config_path* or the default location.

        Environment variables ``WORKLOAD_ROOT``, ``WORKLOAD_FEED`` and
        ``WORKLOAD_GENERATION`` override the file.
        """
        path = config_path or default_config_path()
        cfg = cls.from_file(path) if path.exists() else cls()

        if os.environ.get("WORKLOAD_ROOT"):
            cfg.install_root = Path(os.environ["WORKLOAD_ROOT"]).expanduser()
        if os.environ.get("WORKLOAD_FEED"):
            cfg.feed = Path(os.environ["WORKLOAD_FEED"]).expanduser()
        if os.environ.get("WORKLOAD_GENERATION"):
            cfg.default_generation = os.environ["WORKLOAD_GENERATION"]
        return cfg
