"""
Wrapper for the external tools the pipeline drives (git, npm/yarn/pnpm, pm2,
nginx, ss/netstat/lsof).

Every call has a timeout and its output can be appended to a stage log file.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import CommandFailed, CommandNotFound, CommandTimeout, ToolError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="ignore")
    return data


def append_command_log(log_path: str, command: Sequence[str], returncode: Optional[int], output: str) -> None:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).isoformat()
    status = "timeout" if returncode is None else f"exit {returncode}"
    with open(path, "a") as f:
        f.write(f"[{stamp}] === {' '.join(command)} ({status}) ===\n")
        if output:
            f.write(output.rstrip() + "\n")
        f.write("\n")


class CommandRunner:
    """Runs commands as argv lists (never through a shell)."""

    def __init__(self, default_timeout: float = 1800.0):
        self.default_timeout = default_timeout

    def run(
        self,
        command: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        log_path: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            command: Executable and arguments
            cwd: Working directory
            env: Extra environment variables layered over os.environ
            timeout: Seconds before the process is killed (default_timeout if None)
            check: Raise CommandFailed on a non-zero exit
            log_path: File the command's output is appended to
            stage: Pipeline stage name attached to raised errors

        Returns:
            CommandResult

        Raises:
            CommandNotFound: The executable does not exist
            CommandTimeout: The timeout expired
            CommandFailed: Non-zero exit with check=True
        """
        argv = [str(part) for part in command]
        limit = self.default_timeout if timeout is None else timeout

        if cwd is not None and not Path(cwd).is_dir():
            raise ToolError(f"Working directory does not exist: {cwd}", command=argv, stage=stage, log_path=log_path)

        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        logger.debug(f"Running: {' '.join(argv)} (cwd={cwd or os.getcwd()}, timeout={limit}s)")

        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
                timeout=limit,
            )
        except FileNotFoundError:
            raise CommandNotFound(argv, stage=stage, log_path=log_path)
        except subprocess.TimeoutExpired as e:
            output = "\n".join(p for p in (_as_text(e.stdout), _as_text(e.stderr)) if p)
            if log_path:
                append_command_log(log_path, argv, None, output)
            raise CommandTimeout(argv, limit, output=output, stage=stage, log_path=log_path)

        result = CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
        if log_path:
            append_command_log(log_path, argv, result.returncode, result.output)

        if check and not result.ok:
            raise CommandFailed(argv, result.returncode, output=result.output, stage=stage, log_path=log_path)

        return result
