"""
PM2 adapter: registers, restarts, removes and inspects supervised processes.

Each process is described by an ecosystem.config.json written next to the
code it runs, so `pm2 start <file>` is repeatable by hand.
"""

import json
import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .analyzer.result import PackageManager
from .envfile import EnvFile
from .errors import CommandFailed, ConfigurationError, ToolError
from .runner import CommandRunner
from .security import sanitize_project_name

logger = logging.getLogger(__name__)

ECOSYSTEM_FILE = "ecosystem.config.json"

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
SHELL_OPERATORS = ("&&", "||", "|", ";", ">", "<", "`", "$(")


def process_name(project: str, sub_path: str = "") -> str:
    """`<project>` or `<project>-<sub-package directory name>`."""
    if not sub_path:
        return project
    return sanitize_project_name(f"{project}-{Path(sub_path).name}")


@dataclass
class StartCommand:
    script: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


def _fallback(package_manager: PackageManager) -> StartCommand:
    pm = package_manager.value
    args = ["start"] if package_manager == PackageManager.YARN else ["run", "start"]
    return StartCommand(shutil.which(pm) or pm, args)


def resolve_start_command(start_script: Optional[str], work_dir: Path, package_manager: PackageManager) -> StartCommand:
    """
    Turn a package's start script into something PM2 can exec without a shell.

    Leading KEY=value assignments are moved into the environment. The rest
    runs directly when its executable is node, a local node_modules/.bin
    entry or on PATH, and the script uses no shell operators. Anything else
    goes through the package manager's start script.
    """
    if not start_script or any(op in start_script for op in SHELL_OPERATORS):
        return _fallback(package_manager)

    try:
        tokens = shlex.split(start_script)
    except ValueError:
        return _fallback(package_manager)

    env: Dict[str, str] = {}
    while tokens and _ASSIGNMENT.match(tokens[0]):
        key, value = tokens.pop(0).split("=", 1)
        env[key] = value

    if not tokens:
        return _fallback(package_manager)

    exe = tokens[0]
    local = Path(work_dir) / "node_modules" / ".bin" / exe
    if exe == "node":
        path = shutil.which("node") or "node"
    elif local.exists():
        path = str(local)
    else:
        path = shutil.which(exe)

    if path is None:
        logger.info(f"{exe} is not on PATH, starting through {package_manager.value}")
        return _fallback(package_manager)

    return StartCommand(path, tokens[1:], env)


@dataclass
class ProcessInfo:
    name: str
    status: str
    pid: Optional[int] = None
    uptime_ms: Optional[int] = None
    restarts: int = 0
    memory_bytes: int = 0
    cpu_percent: float = 0.0

    @classmethod
    def from_jlist(cls, entry: Dict[str, Any]) -> "ProcessInfo":
        pm2_env = entry.get("pm2_env") or {}
        monit = entry.get("monit") or {}
        return cls(
            name=entry.get("name", ""),
            status=pm2_env.get("status", "unknown"),
            pid=entry.get("pid") or None,
            uptime_ms=pm2_env.get("pm_uptime"),
            restarts=int(pm2_env.get("restart_time") or 0),
            memory_bytes=int(monit.get("memory") or 0),
            cpu_percent=float(monit.get("cpu") or 0),
        )

    @property
    def online(self) -> bool:
        return self.status == "online"


class PM2Supervisor:
    def __init__(self, runner: CommandRunner, timeout: float = 60.0):
        self.runner = runner
        self.timeout = timeout

    def _pm2(self, *args: str, check: bool = True, stage: str = "supervise"):
        return self.runner.run(["pm2", *args], timeout=self.timeout, check=check, stage=stage)

    def ecosystem_config(
        self,
        name: str,
        start: StartCommand,
        work_dir: Path,
        env: Dict[str, str],
        log_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        app: Dict[str, Any] = {
            "name": name,
            "script": start.script,
            "args": start.args,
            "cwd": str(work_dir),
            "interpreter": "none",
            "env": env,
            "instances": 1,
            "exec_mode": "fork",
            "watch": False,
            "autorestart": True,
            "max_restarts": 10,
            "min_uptime": "10s",
            "max_memory_restart": "1G",
            "merge_logs": True,
            "log_date_format": "YYYY-MM-DD HH:mm:ss Z",
        }
        if log_path:
            app["error_file"] = str(log_path)
            app["out_file"] = str(log_path)
        return {"apps": [app]}

    def register(
        self,
        process_name: str,
        start_command: Optional[str],
        work_dir: str,
        port: Optional[int] = None,
        env_vars: Optional[Dict[str, str]] = None,
        package_manager: PackageManager = PackageManager.NPM,
        log_path: Optional[str] = None,
    ) -> str:
        """
        Start (or replace) a supervised process.

        Args:
            process_name: PM2 entry name
            start_command: The package's start script text
            work_dir: Directory the process runs in; its .env is updated
            port: Injected as PORT
            env_vars: Extra variables merged into .env
            package_manager: Used when the script cannot be run directly
            log_path: runtime.log receiving stdout and stderr

        Returns:
            str: The supervisor id (the entry name)

        Raises:
            ConfigurationError: The package has no start script
            ToolError: pm2 failed
        """
        if not start_command:
            raise ConfigurationError(f"No start script in {work_dir}; nothing to supervise")

        directory = Path(work_dir)
        env_file = EnvFile(directory)
        updates = dict(env_vars or {})
        if port is not None:
            updates["PORT"] = str(port)
        if updates:
            env_file.update(updates)

        start = resolve_start_command(start_command, directory, package_manager)
        env = {**start.env, **env_file.get_all()}
        logger.info(f"Supervising {process_name}: {start.script} {' '.join(start.args)}".rstrip())

        ecosystem = directory / ECOSYSTEM_FILE
        with open(ecosystem, "w") as f:
            json.dump(self.ecosystem_config(process_name, start, directory, env, log_path), f, indent=2)

        self._pm2("delete", process_name, check=False)
        result = self._pm2("start", str(ecosystem))
        logger.debug(result.output)
        logger.info(f"PM2 process started: {process_name}")
        return process_name

    def refresh_env(self, work_dir: str) -> bool:
        """Copy the current .env into the ecosystem file. False when there is no ecosystem file."""
        ecosystem = Path(work_dir) / ECOSYSTEM_FILE
        if not ecosystem.exists():
            return False
        with open(ecosystem) as f:
            config = json.load(f)
        values = EnvFile(Path(work_dir)).get_all()
        for app in config.get("apps", []):
            app["env"] = {**(app.get("env") or {}), **values}
        with open(ecosystem, "w") as f:
            json.dump(config, f, indent=2)
        return True

    def restart(self, supervisor_id: str, work_dir: Optional[str] = None) -> None:
        """
        Restart an entry, picking up environment changes.

        With a work_dir holding an ecosystem file the file is refreshed from
        .env and restarted, so removed variables disappear as well.
        """
        if work_dir and self.refresh_env(work_dir):
            self._pm2("restart", str(Path(work_dir) / ECOSYSTEM_FILE), "--update-env")
        else:
            self._pm2("restart", supervisor_id, "--update-env")
        logger.info(f"PM2 process restarted: {supervisor_id}")

    def remove(self, supervisor_id: str) -> None:
        result = self._pm2("delete", supervisor_id, check=False, stage="remove")
        if result.ok or "not found" in result.output.lower():
            logger.info(f"PM2 process removed: {supervisor_id}")
            return
        raise CommandFailed(result.command, result.returncode, output=result.output, stage="remove")

    def list_processes(self) -> List[ProcessInfo]:
        result = self._pm2("jlist", stage="status")
        text = result.stdout
        # pm2 may print banners before the JSON array
        start = text.find("[")
        if start < 0:
            return []
        try:
            entries = json.loads(text[start:])
        except json.JSONDecodeError as e:
            raise ToolError(f"Unreadable pm2 jlist output: {e}", command=result.command, output=text, stage="status")
        return [ProcessInfo.from_jlist(entry) for entry in entries if isinstance(entry, dict)]

    def describe(self, supervisor_id: str) -> Optional[ProcessInfo]:
        for info in self.list_processes():
            if info.name == supervisor_id:
                return info
        return None

    def logs(self, supervisor_id: str, lines: int = 100) -> str:
        result = self._pm2("logs", supervisor_id, "--lines", str(lines), "--nostream", stage="logs")
        return result.output
