"""
Process-wide configuration and the context object handed to every component.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .security import DEFAULT_ALLOWED_HOSTS, sanitize_project_name


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(value: Optional[str], default: float) -> float:
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class Settings:
    """Host-level settings. Paths are resolved once, at construction."""

    apps_dir: Path = Path("/var/apps")
    logs_dir: Optional[Path] = None
    nginx_conf_dir: Path = Path("/etc/nginx/conf.d")
    domain: Optional[str] = None
    use_sudo: bool = True
    allowed_hosts: Tuple[str, ...] = DEFAULT_ALLOWED_HOSTS
    command_timeout: float = 1800.0
    probe_timeout: float = 10.0
    lock_timeout: float = 0.0
    webhook_secret: Optional[str] = None
    webhook_lock_timeout: float = 60.0
    webhook_update_timeout: float = 600.0
    port_attempts: int = 10

    def __post_init__(self):
        self.apps_dir = Path(self.apps_dir).expanduser().resolve()
        if self.logs_dir is None:
            self.logs_dir = self.apps_dir / ".shipyard" / "logs"
        self.logs_dir = Path(self.logs_dir).expanduser().resolve()
        self.nginx_conf_dir = Path(self.nginx_conf_dir)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from SHIPYARD_* environment variables.

        Args:
            environ: Mapping to read from (os.environ if None)

        Returns:
            Settings
        """
        env = os.environ if environ is None else environ
        hosts = env.get("SHIPYARD_ALLOWED_HOSTS")
        return cls(
            apps_dir=Path(env.get("SHIPYARD_APPS_DIR", "/var/apps")),
            logs_dir=Path(env["SHIPYARD_LOGS_DIR"]) if env.get("SHIPYARD_LOGS_DIR") else None,
            nginx_conf_dir=Path(env.get("SHIPYARD_NGINX_CONF_DIR", "/etc/nginx/conf.d")),
            domain=env.get("SHIPYARD_DOMAIN") or None,
            use_sudo=_env_bool(env.get("SHIPYARD_USE_SUDO"), True),
            allowed_hosts=tuple(h.strip() for h in hosts.split(",") if h.strip()) if hosts else DEFAULT_ALLOWED_HOSTS,
            command_timeout=_env_float(env.get("SHIPYARD_COMMAND_TIMEOUT"), 1800.0),
            probe_timeout=_env_float(env.get("SHIPYARD_PROBE_TIMEOUT"), 10.0),
            lock_timeout=_env_float(env.get("SHIPYARD_LOCK_TIMEOUT"), 0.0),
            webhook_secret=env.get("SHIPYARD_WEBHOOK_SECRET") or None,
            webhook_lock_timeout=_env_float(env.get("SHIPYARD_WEBHOOK_LOCK_TIMEOUT"), 60.0),
            webhook_update_timeout=_env_float(env.get("SHIPYARD_WEBHOOK_UPDATE_TIMEOUT"), 600.0),
        )

    # Layout

    def project_path(self, name: str) -> Path:
        return self.apps_dir / sanitize_project_name(name)

    def build_log_path(self, name: str) -> Path:
        return self.project_path(name) / "build.log"

    def runtime_log_path(self, name: str) -> Path:
        return self.project_path(name) / "runtime.log"

    def activity_log_path(self, name: str) -> Path:
        return self.logs_dir / f"{sanitize_project_name(name)}.log"

    def events_path(self, name: str) -> Path:
        return self.logs_dir / f"{sanitize_project_name(name)}.events.ndjson"

    def nginx_config_path(self, name: str) -> Path:
        return self.nginx_conf_dir / f"{sanitize_project_name(name)}.conf"


@dataclass
class DeployContext:
    """
    Everything a pipeline run needs, constructed once per orchestrator process.

    Components receive the context (or the pieces of it they use) instead of
    reaching for module-level globals.
    """

    settings: Settings
    runner: "CommandRunner" = None
    locks: "ProjectLocks" = None
    store: "MetadataStore" = None
    ports: "PortAllocator" = None
    supervisor: "PM2Supervisor" = None
    proxy: "NginxConfigurator" = None

    def __post_init__(self):
        from .locks import ProjectLocks
        from .metadata import MetadataStore
        from .nginx import NginxConfigurator
        from .ports import PortAllocator
        from .runner import CommandRunner
        from .supervisor import PM2Supervisor

        s = self.settings
        if self.runner is None:
            self.runner = CommandRunner(default_timeout=s.command_timeout)
        if self.locks is None:
            self.locks = ProjectLocks(s.logs_dir / "locks")
        if self.store is None:
            self.store = MetadataStore(s.apps_dir)
        if self.ports is None:
            self.ports = PortAllocator(self.runner, timeout=s.probe_timeout)
        if self.supervisor is None:
            self.supervisor = PM2Supervisor(self.runner, timeout=s.probe_timeout * 6)
        if self.proxy is None:
            self.proxy = NginxConfigurator(
                self.runner,
                conf_dir=s.nginx_conf_dir,
                use_sudo=s.use_sudo,
                timeout=s.probe_timeout * 3,
            )

    @classmethod
    def from_env(cls) -> "DeployContext":
        return cls(Settings.from_env())
