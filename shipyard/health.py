"""
Health of deployed projects: PM2 process state plus an optional HTTP probe.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .errors import ProjectNotFound, ToolError
from .metadata import ProjectRecord, utc_now

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    project_name: str
    healthy: bool
    last_check: str
    supervisor_status: Optional[str] = None
    port: Optional[int] = None
    uptime_ms: Optional[int] = None
    restarts: Optional[int] = None
    memory_bytes: Optional[int] = None
    cpu_percent: Optional[float] = None
    http_status: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def probe_http(port: int, path: str = "/", timeout: float = 5.0) -> Optional[int]:
    """Status code of http://localhost:<port><path>, or None when nothing answers."""
    try:
        response = requests.get(f"http://localhost:{port}{path}", timeout=timeout)
        return response.status_code
    except requests.RequestException as e:
        logger.info(f"HTTP probe of port {port} failed: {e}")
        return None


def _check_record(ctx, record: ProjectRecord, http: bool) -> HealthStatus:
    status = HealthStatus(project_name=record.name, healthy=False, last_check=utc_now(), port=record.port)

    if record.supervisor_id:
        try:
            info = ctx.supervisor.describe(record.supervisor_id)
        except ToolError as e:
            logger.error(f"Health check of {record.name} failed: {e}")
            status.supervisor_status = "unknown"
            status.error = str(e)
            return status

        if info is None:
            status.supervisor_status = "stopped"
        else:
            status.supervisor_status = info.status
            status.uptime_ms = info.uptime_ms
            status.restarts = info.restarts
            status.memory_bytes = info.memory_bytes
            status.cpu_percent = info.cpu_percent
            status.healthy = info.online
    else:
        # statically served: healthy while its server block is installed
        status.healthy = bool(record.proxy_config_path) and Path(record.proxy_config_path).exists()

    if http and record.port:
        status.http_status = probe_http(record.port, timeout=ctx.settings.probe_timeout)
        if status.http_status is None or status.http_status >= 500:
            status.healthy = False

    return status


def check_health(ctx, name: str, http: bool = False) -> HealthStatus:
    """
    Health of one project.

    Args:
        ctx: DeployContext
        name: Project name
        http: Also send a GET to the project's port

    Raises:
        ProjectNotFound: No record for that name
    """
    record = ctx.store.load(name)
    if record is None:
        raise ProjectNotFound(name)
    return _check_record(ctx, record, http)


def check_all(ctx, http: bool = False) -> List[HealthStatus]:
    return [_check_record(ctx, record, http) for record in ctx.store.list_all()]
