"""
Project records: the durable proof that a deploy completed.

One metadata.json per project, stored inside the project's workspace. The
store never caches; every call reads or writes the file.
"""

import dataclasses
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ProjectNotFound
from .security import normalize_repo_url, sanitize_project_name

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"

# attribute name -> key in metadata.json
_KEYS = {
    "name": "name",
    "repo_url": "repoUrl",
    "branch": "branch",
    "type": "type",
    "port": "port",
    "base_path": "basePath",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "supervisor_id": "supervisorId",
    "proxy_config_path": "proxyConfigPath",
    "environment": "environment",
    "webhook_enabled": "webhookEnabled",
    "domain": "domain",
    "service_path": "servicePath",
}

# keys written by older releases
_LEGACY_KEYS = {
    "pm2ProcessName": "supervisor_id",
    "nginxConfigPath": "proxy_config_path",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ProjectRecord:
    name: str
    repo_url: str
    branch: str = "main"
    type: str = "unknown"
    port: Optional[int] = None
    base_path: str = "/"
    created_at: str = ""
    updated_at: str = ""
    supervisor_id: Optional[str] = None
    proxy_config_path: Optional[str] = None
    environment: str = "production"
    webhook_enabled: bool = False
    domain: Optional[str] = None
    service_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in _KEYS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectRecord":
        by_key = {key: attr for attr, key in _KEYS.items()}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            attr = by_key.get(key) or _LEGACY_KEYS.get(key)
            if attr and attr not in kwargs:
                kwargs[attr] = value
        if kwargs.get("port") is not None:
            kwargs["port"] = int(kwargs["port"])
        return cls(**kwargs)

    @property
    def host(self) -> str:
        """Server name this project's route is published under."""
        return self.domain or f"{self.name}.local"


class MetadataStore:
    """File-backed store of ProjectRecords under <apps_dir>/<name>/metadata.json."""

    def __init__(self, apps_dir: Path):
        self.apps_dir = Path(apps_dir)

    def path_for(self, name: str) -> Path:
        return self.apps_dir / sanitize_project_name(name) / METADATA_FILE

    def save(self, record: ProjectRecord) -> ProjectRecord:
        """
        Write a record in full, replacing any previous one.

        Missing timestamps are filled in and updated_at is never earlier than
        created_at.

        Args:
            record: Record to persist

        Returns:
            The record as written
        """
        now = utc_now()
        created = record.created_at or now
        updated = record.updated_at or now
        if _parse_ts(updated) < _parse_ts(created):
            updated = created
        record = dataclasses.replace(record, created_at=created, updated_at=updated)

        path = self.path_for(record.name)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".metadata.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        logger.info(f"Metadata saved: {path}")
        return record

    def load(self, name: str) -> Optional[ProjectRecord]:
        """
        Read a record.

        Args:
            name: Project name

        Returns:
            ProjectRecord, or None if missing or unreadable
        """
        path = self.path_for(name)
        if not path.exists():
            return None

        try:
            with open(path, "r") as f:
                return ProjectRecord.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Cannot read metadata {path}: {e}")
            return None

    def update(self, name: str, **fields: Any) -> ProjectRecord:
        """
        Change some fields of an existing record and bump updated_at.

        Raises:
            ProjectNotFound: No record exists; nothing is written
        """
        existing = self.load(name)
        if existing is None:
            raise ProjectNotFound(name)

        fields.setdefault("updated_at", utc_now())
        return self.save(dataclasses.replace(existing, **fields))

    def list_all(self) -> List[ProjectRecord]:
        """All records, most recently updated first."""
        if not self.apps_dir.exists():
            return []

        records = []
        for entry in sorted(self.apps_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            record = self.load(entry.name)
            if record is not None:
                records.append(record)

        return sorted(records, key=lambda r: _parse_ts(r.updated_at), reverse=True)

    def find_by_repo(self, repo_url: str) -> List[ProjectRecord]:
        """Records whose repository URL matches, ignoring a trailing .git or slash."""
        wanted = normalize_repo_url(repo_url)
        return [r for r in self.list_all() if normalize_repo_url(r.repo_url) == wanted]

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        if path.exists():
            path.unlink()
            logger.info(f"Metadata deleted: {path}")

        workspace = path.parent
        if workspace.exists() and not any(workspace.iterdir()):
            workspace.rmdir()
