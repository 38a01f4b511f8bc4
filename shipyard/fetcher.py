from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import ToolError, ValidationError
from .metadata import METADATA_FILE
from .runner import CommandRunner
from .security import DEFAULT_ALLOWED_HOSTS, validate_repo_url

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    path: str
    commit: str
    cloned: bool


def _head_commit(runner: CommandRunner, checkout: Path) -> str:
    try:
        r = runner.run(["git", "-C", str(checkout), "rev-parse", "HEAD"], timeout=30)
        return r.stdout.strip()[:12]
    except ToolError:
        return "HEAD"


def _wipe(checkout: Path) -> None:
    """Empty a workspace, keeping its metadata.json."""
    for entry in checkout.iterdir():
        if entry.name == METADATA_FILE:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def fetch_repo(
    runner: CommandRunner,
    repo_url: str,
    branch: str,
    project_path: str | Path,
    force: bool = False,
    allowed_hosts: Iterable[str] = DEFAULT_ALLOWED_HOSTS,
    log_path: Optional[str] = None,
    timeout: Optional[float] = None,
) -> FetchResult:
    """
    Put `branch` of `repo_url` into `project_path`.

    - No directory: shallow clone.
    - Directory with a .git: fast-forward it (switching branch if needed).
    - force: wipe the directory (keeping metadata.json) and clone again.
    - Directory without .git (an interrupted deploy): clone beside it and move
      the checkout in, keeping any log files already there.
    """
    if not validate_repo_url(repo_url, allowed_hosts):
        raise ValidationError(f"Repository URL not allowed: {repo_url}")

    checkout = Path(project_path)

    if checkout.exists() and force:
        logger.warning(f"Removing existing workspace (forced): {checkout}")
        _wipe(checkout)

    if checkout.exists() and (checkout / ".git").exists():
        logger.info(f"Workspace exists, fast-forwarding: {checkout}")
        _update(runner, checkout, branch, log_path, timeout)
        return FetchResult(str(checkout), _head_commit(runner, checkout), cloned=False)

    checkout.parent.mkdir(parents=True, exist_ok=True)
    target = checkout
    if checkout.exists():
        target = checkout.parent / f".{checkout.name}.clone"
        if target.exists():
            shutil.rmtree(target)

    logger.info(f"Cloning {repo_url} (branch: {branch}) into {checkout}")
    runner.run(
        ["git", "clone", "--branch", branch, "--depth", "1", repo_url, str(target)],
        cwd=str(checkout.parent),
        timeout=timeout,
        log_path=log_path,
        stage="fetch",
    )

    if target != checkout:
        for entry in target.iterdir():
            dest = checkout / entry.name
            if dest.is_dir() and not dest.is_symlink():
                shutil.rmtree(dest)
            elif dest.exists() or dest.is_symlink():
                dest.unlink()
            shutil.move(str(entry), str(dest))
        target.rmdir()

    return FetchResult(str(checkout), _head_commit(runner, checkout), cloned=True)


def _update(runner: CommandRunner, checkout: Path, branch: str, log_path: Optional[str], timeout: Optional[float]) -> None:
    git = ["git", "-C", str(checkout)]

    current = runner.run(git + ["rev-parse", "--abbrev-ref", "HEAD"], timeout=30, stage="fetch").stdout.strip()
    if current != branch:
        logger.info(f"Switching branch: {current} -> {branch}")
        runner.run(
            git + ["fetch", "--depth", "1", "origin", f"{branch}:refs/remotes/origin/{branch}"],
            timeout=timeout,
            log_path=log_path,
            stage="fetch",
        )
        runner.run(git + ["checkout", "-B", branch, f"origin/{branch}"], timeout=60, log_path=log_path, stage="fetch")
        return

    runner.run(
        git + ["pull", "--ff-only", "origin", branch],
        timeout=timeout,
        log_path=log_path,
        stage="fetch",
    )
