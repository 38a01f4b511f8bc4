"""
Input validation: repository URLs, project names, env keys and base paths.
"""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import urlparse

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = ("github.com", "www.github.com")

_SCP_URL = re.compile(r"^(?P<user>[A-Za-z0-9._-]+)@(?P<host>[A-Za-z0-9.-]+):(?P<path>[^\s]+)$")
_ENV_KEY = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_BASE_PATH = re.compile(r"^/[A-Za-z0-9._~/-]*$")


def _url_host(url: str) -> Optional[str]:
    """Return the lowercased host of an http(s), ssh or scp-style git URL."""
    match = _SCP_URL.match(url)
    if match:
        return match.group("host").lower()

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https", "ssh"):
        return None
    return (parsed.hostname or "").lower() or None


def validate_repo_url(url: str, allowed_hosts: Iterable[str] = DEFAULT_ALLOWED_HOSTS) -> bool:
    """
    Check a repository URL against the scheme and host allowlists.

    Args:
        url: Repository URL (https, http, ssh:// or git@host:owner/repo)
        allowed_hosts: Hostnames deployments may be fetched from

    Returns:
        bool: True if the URL may be cloned
    """
    if not url or any(ch.isspace() for ch in url):
        return False

    host = _url_host(url)
    if host is None:
        logger.warning(f"Disallowed repository URL scheme: {url}")
        return False

    allowed = {h.lower() for h in allowed_hosts}
    if host not in allowed:
        logger.warning(f"Disallowed repository host: {host}")
        return False

    return True


def sanitize_project_name(name: str) -> str:
    """Lowercase, map anything outside [a-z0-9-] to '-', squeeze and trim hyphens."""
    safe = re.sub(r"[^a-z0-9-]", "-", name.lower())
    safe = re.sub(r"-+", "-", safe)
    return safe.strip("-")


def repo_name_from_url(url: str) -> str:
    match = _SCP_URL.match(url)
    path = match.group("path") if match else urlparse(url).path
    last = path.rstrip("/").split("/")[-1]
    if last.endswith(".git"):
        last = last[: -len(".git")]
    return last


def derive_project_name(repo_url: str, branch: str = "main") -> str:
    """
    Build a project name from the repository name, suffixed with the branch
    unless it is main or master, so several branches can live side by side.
    """
    name = repo_name_from_url(repo_url)
    if branch and branch not in ("main", "master"):
        name = f"{name}-{branch}"
    return sanitize_project_name(name)


def normalize_repo_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def validate_env_key(key: str) -> bool:
    return bool(_ENV_KEY.match(key))


def normalize_base_path(base_path: Optional[str]) -> str:
    """
    Normalize a route prefix to '/' or '/segment[/segment]' form.

    Raises:
        ValidationError: If the path contains traversal or unsafe characters
    """
    if not base_path or base_path.strip() in ("", "/"):
        return "/"

    path = "/" + base_path.strip().strip("/")
    path = re.sub(r"/{2,}", "/", path)
    if ".." in path.split("/") or not _BASE_PATH.match(path):
        raise ValidationError(f"Invalid base path: {base_path}")
    return path
