"""
nginx server blocks for deployed projects.

Three shapes: static (files served by nginx), proxy (everything under the
base path forwarded to the supervised port) and combined (API proxied under
its base path, frontend build served at /).
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from .analyzer.result import AnalysisResult, ProjectType
from .errors import ConfigurationError, ToolError
from .runner import CommandRunner
from .security import normalize_base_path, sanitize_project_name

logger = logging.getLogger(__name__)

COMMON_NGINX_PATHS = ["/usr/sbin/nginx", "/usr/bin/nginx", "/sbin/nginx"]
DEFAULT_API_BASE = "/api"

SERVER_TEMPLATE = """server {
    listen 80;
    server_name {{SERVER_NAME}};
{{BODY}}}
"""

PROXY_TEMPLATE = """
    location {{MATCH}} {
        proxy_pass http://localhost:{{PORT}}/;
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;

        proxy_connect_timeout 60s;
        proxy_send_timeout 60s;
        proxy_read_timeout 60s;
    }
"""

REDIRECT_TEMPLATE = """
    location = {{BASE}} {
        return 301 {{BASE}}/;
    }
"""

STATIC_ROOT_TEMPLATE = """
    root {{STATIC_DIR}};
    index index.html;

    location / {
        try_files $uri $uri/ /index.html;
    }
"""

STATIC_ALIAS_TEMPLATE = """
    location {{BASE}}/ {
        alias {{STATIC_DIR}}/;
        index index.html;
        try_files $uri $uri/ {{BASE}}/index.html;
    }
"""

ASSETS_TEMPLATE = """
    gzip on;
    gzip_vary on;
    gzip_min_length 1024;
    gzip_types text/plain text/css text/xml text/javascript application/javascript application/x-javascript application/xml+rss application/json;

    location ~* \\.(jpg|jpeg|png|gif|ico|css|js|svg|woff|woff2|ttf|eot)$ {
        expires 1y;
        add_header Cache-Control "public, immutable";
    }
"""


def _fill(template: str, **values) -> str:
    text = template
    for key, value in values.items():
        text = text.replace("{{" + key + "}}", str(value))
    return text


def _proxy_block(port: int, base_path: str) -> str:
    if base_path == "/":
        return _fill(PROXY_TEMPLATE, MATCH="/", PORT=port)
    return _fill(REDIRECT_TEMPLATE, BASE=base_path) + _fill(PROXY_TEMPLATE, MATCH=f"{base_path}/", PORT=port)


def _static_block(static_dir: str, base_path: str) -> str:
    static_dir = str(static_dir).rstrip("/")
    if base_path == "/":
        block = _fill(STATIC_ROOT_TEMPLATE, STATIC_DIR=static_dir)
    else:
        block = _fill(REDIRECT_TEMPLATE, BASE=base_path) + _fill(STATIC_ALIAS_TEMPLATE, BASE=base_path, STATIC_DIR=static_dir)
    return block + ASSETS_TEMPLATE


def render_static(server_name: str, static_dir: str, base_path: str = "/") -> str:
    body = _static_block(static_dir, normalize_base_path(base_path))
    return _fill(SERVER_TEMPLATE, SERVER_NAME=server_name, BODY=body)


def render_proxy(server_name: str, port: int, base_path: str = "/") -> str:
    body = _proxy_block(port, normalize_base_path(base_path))
    return _fill(SERVER_TEMPLATE, SERVER_NAME=server_name, BODY=body)


def render_combined(server_name: str, port: int, static_dir: str, api_base: str = DEFAULT_API_BASE) -> str:
    api_base = normalize_base_path(api_base)
    if api_base == "/":
        api_base = DEFAULT_API_BASE
    body = _proxy_block(port, api_base) + _static_block(static_dir, "/")
    return _fill(SERVER_TEMPLATE, SERVER_NAME=server_name, BODY=body)


def proxy_shape(project_type: ProjectType, analysis: AnalysisResult) -> str:
    """
    Decide which server block a project gets: "static", "proxy" or "combined".

    Raises:
        ConfigurationError: The layout cannot be routed
    """
    if project_type == ProjectType.FRONTEND:
        return "proxy" if analysis.is_ssr else "static"
    if project_type == ProjectType.BACKEND:
        return "proxy"
    if project_type == ProjectType.MULTI_PACKAGE:
        frontend, backend = analysis.frontend, analysis.backend
        if backend and frontend:
            if frontend.is_ssr:
                raise ConfigurationError(
                    "A server-rendered frontend next to a backend needs two ports; deploy them as separate projects"
                )
            return "combined"
        if backend:
            return "proxy"
        if frontend:
            return "proxy" if frontend.is_ssr else "static"
    raise ConfigurationError(f"Cannot route a project of type {project_type.value}")


def find_nginx() -> str:
    found = shutil.which("nginx")
    if found:
        return found
    for candidate in COMMON_NGINX_PATHS:
        if os.path.exists(candidate):
            return candidate
    return "nginx"


class NginxConfigurator:
    def __init__(self, runner: CommandRunner, conf_dir: Path, use_sudo: bool = True, timeout: float = 30.0):
        self.runner = runner
        self.conf_dir = Path(conf_dir)
        self.use_sudo = use_sudo
        self.timeout = timeout

    def config_path(self, project_name: str) -> Path:
        return self.conf_dir / f"{sanitize_project_name(project_name)}.conf"

    def _privileged(self, command: List[str]) -> List[str]:
        return ["sudo", *command] if self.use_sudo else command

    def render(
        self,
        project_name: str,
        workspace_path: str,
        project_type: ProjectType,
        analysis: AnalysisResult,
        port: Optional[int] = None,
        base_path: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> str:
        server_name = domain or f"{sanitize_project_name(project_name)}.local"
        base = normalize_base_path(base_path)
        shape = proxy_shape(project_type, analysis)

        if shape != "static" and not port:
            raise ConfigurationError(f"A port is required to proxy {project_name}")

        if shape == "proxy":
            return render_proxy(server_name, port, base)

        sub_path, package = analysis.static_package() or ("", analysis)
        static_dir = Path(workspace_path) / sub_path / (package.static_output_dir or "dist")

        if shape == "combined":
            return render_combined(server_name, port, str(static_dir), base)
        return render_static(server_name, str(static_dir), base)

    def generate(
        self,
        project_name: str,
        workspace_path: str,
        project_type: ProjectType,
        analysis: AnalysisResult,
        port: Optional[int] = None,
        base_path: Optional[str] = None,
        domain: Optional[str] = None,
        validate: bool = True,
    ) -> str:
        """
        Render and install the project's server block.

        Args:
            project_name: Project name; the file is <conf_dir>/<name>.conf
            workspace_path: Project workspace (static roots live under it)
            project_type: Classification of the project
            analysis: Analysis result of the workspace
            port: Supervised port, required for proxy and combined shapes
            base_path: Route prefix ("/" by default; API prefix for combined)
            domain: server_name, defaults to <name>.local
            validate: Run `nginx -t` after writing

        Returns:
            str: Path of the installed config file

        Raises:
            ConfigurationError: Missing port or unroutable layout; nothing is written
            ToolError: The file could not be installed
        """
        content = self.render(project_name, workspace_path, project_type, analysis, port, base_path, domain)
        target = self.config_path(project_name)
        self._install(content, target)
        logger.info(f"nginx config written: {target}")

        if validate and not self.validate():
            logger.warning(f"nginx -t failed; {target} was kept, check it by hand")

        return str(target)

    def _install(self, content: str, target: Path) -> None:
        if not self.use_sudo:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            return

        fd, tmp = tempfile.mkstemp(prefix=f"{target.stem}.", suffix=".nginx.conf")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            self.runner.run(["sudo", "cp", tmp, str(target)], timeout=self.timeout, stage="proxy")
        finally:
            os.unlink(tmp)

    def validate(self) -> bool:
        try:
            self.runner.run(self._privileged([find_nginx(), "-t"]), timeout=self.timeout, stage="proxy")
            return True
        except ToolError as e:
            logger.warning(f"nginx config test failed: {e}")
            return False

    def reload(self) -> bool:
        """Reload nginx, with sudo first and plain second. False (and a warning) when both fail."""
        nginx = find_nginx()
        attempts = [["sudo", nginx, "-s", "reload"], [nginx, "-s", "reload"]] if self.use_sudo else [[nginx, "-s", "reload"]]
        for command in attempts:
            try:
                self.runner.run(command, timeout=self.timeout, stage="proxy")
                logger.info("nginx reloaded")
                return True
            except ToolError as e:
                logger.debug(f"{' '.join(command)} failed: {e}")
        logger.warning(f"nginx reload failed; run `sudo {nginx} -s reload` by hand")
        return False

    def remove(self, config_path: str) -> None:
        path = Path(config_path)
        if self.use_sudo:
            self.runner.run(["sudo", "rm", "-f", str(path)], timeout=self.timeout, stage="remove")
        else:
            path.unlink(missing_ok=True)
        logger.info(f"nginx config removed: {path}")
