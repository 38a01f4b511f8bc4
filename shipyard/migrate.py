"""
Recover records for workspaces deployed before metadata.json existed.

Everything is inferred from what the old deploy left behind: the git
checkout, the nginx server block, .env / ecosystem files and pm2's process
list. Workspaces that already have a record are left alone.
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from .analyzer import analyze
from .envfile import EnvFile
from .errors import ShipyardError, ToolError
from .metadata import METADATA_FILE, ProjectRecord
from .supervisor import ECOSYSTEM_FILE, ProcessInfo

logger = logging.getLogger(__name__)

_BASE_LOCATION = re.compile(r"location\s+(/[^\s{]+)/\s*\{")
_PROXY_PORT = re.compile(r"proxy_pass\s+http://(?:localhost|127\.0\.0\.1):(\d+)")
_GIT_URL = re.compile(r"^\s*url\s*=\s*(.+)$", re.MULTILINE)
_GIT_HEAD = re.compile(r"refs/heads/(.+)")


def read_git_origin(workspace: Path) -> Tuple[Optional[str], Optional[str]]:
    """(remote url, checked-out branch) of a checkout, either may be None."""
    url = branch = None
    config = workspace / ".git" / "config"
    if config.is_file():
        match = _GIT_URL.search(config.read_text(errors="ignore"))
        if match:
            url = match.group(1).strip()
    head = workspace / ".git" / "HEAD"
    if head.is_file():
        match = _GIT_HEAD.search(head.read_text(errors="ignore"))
        if match:
            branch = match.group(1).strip()
    return url, branch


def _env_dirs(workspace: Path) -> List[Path]:
    dirs = [workspace]
    for pattern in ("*/.env", "*/*/.env", f"*/{ECOSYSTEM_FILE}", f"*/*/{ECOSYSTEM_FILE}"):
        for found in sorted(workspace.glob(pattern)):
            if "node_modules" not in found.parts and found.parent not in dirs:
                dirs.append(found.parent)
    return dirs


def _port_from_files(workspace: Path) -> Optional[int]:
    for directory in _env_dirs(workspace):
        value = EnvFile(directory).get("PORT")
        if value and value.isdigit():
            return int(value)

        ecosystem = directory / ECOSYSTEM_FILE
        if ecosystem.is_file():
            try:
                apps = json.loads(ecosystem.read_text()).get("apps", [])
            except (OSError, json.JSONDecodeError):
                continue
            for app in apps:
                port = str((app.get("env") or {}).get("PORT", ""))
                if port.isdigit():
                    return int(port)
    return None


def _match_process(entry: str, processes: List[ProcessInfo]) -> Optional[str]:
    for info in processes:
        if info.name == entry:
            return info.name
    for info in processes:
        if info.name.startswith(f"{entry}-"):
            return info.name
    return None


def recover_record(ctx, workspace: Path, processes: List[ProcessInfo]) -> Optional[ProjectRecord]:
    """Build a record for one legacy workspace, or None if nothing identifies it."""
    name = workspace.name
    repo_url, branch = read_git_origin(workspace)
    supervisor_id = _match_process(name, processes)

    if not repo_url and not supervisor_id:
        return None

    proxy_config_path = None
    base_path = "/"
    port = None
    config = ctx.settings.nginx_config_path(name)
    if config.is_file():
        proxy_config_path = str(config)
        text = config.read_text(errors="ignore")
        match = _BASE_LOCATION.search(text)
        if match:
            base_path = match.group(1)
        match = _PROXY_PORT.search(text)
        if match:
            port = int(match.group(1))

    port = _port_from_files(workspace) or port

    project_type, service_path = "unknown", ""
    try:
        analysis = analyze(str(workspace))
        project_type = analysis.type.value
        service = analysis.service()
        if service:
            service_path = service[0]
    except ShipyardError as e:
        logger.info(f"Could not classify {name}: {e}")

    return ProjectRecord(
        name=name,
        repo_url=repo_url or f"unknown-{name}",
        branch=branch or "main",
        type=project_type,
        port=port,
        base_path=base_path,
        supervisor_id=supervisor_id,
        proxy_config_path=proxy_config_path,
        service_path=service_path,
    )


def migrate_existing_projects(ctx) -> List[str]:
    """
    Create records for every workspace under apps_dir that lacks one.

    Returns:
        List of migrated project names
    """
    apps_dir = Path(ctx.settings.apps_dir)
    if not apps_dir.is_dir():
        return []

    try:
        processes = ctx.supervisor.list_processes()
    except ToolError as e:
        logger.warning(f"pm2 process list unavailable, migrating without it: {e}")
        processes = []

    migrated = []
    for workspace in sorted(apps_dir.iterdir()):
        if not workspace.is_dir() or workspace.name.startswith("."):
            continue
        if (workspace / METADATA_FILE).exists():
            continue

        record = recover_record(ctx, workspace, processes)
        if record is None:
            logger.info(f"Skipping {workspace.name}: no git origin and no pm2 process")
            continue

        ctx.store.save(record)
        migrated.append(record.name)
        logger.info(f"Created metadata for {record.name}")

    logger.info(f"Migrated {len(migrated)} project(s)")
    return migrated
