"""
Deployment pipeline: resolve, port, fetch, analyze, install, build,
supervise, proxy and persist, plus update, remove and env management.

Every mutating operation holds the project's lock and logs into the
project's activity file. Stage failures come back as a failed
PipelineResult naming the stage; completed stages are not rolled back.
"""

import logging
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .analyzer import AnalysisResult, ProjectType, analyze
from .builder import build_project, install_dependencies
from .context import DeployContext
from .envfile import EnvFile
from .errors import ClassificationError, ConfigurationError, ProjectNotFound, ShipyardError, ToolError, ValidationError
from .events import EventTypes, emit_event, get_last_event, get_status_from_events
from .fetcher import fetch_repo
from .logs import project_logging
from .metadata import METADATA_FILE, ProjectRecord, utc_now
from .nginx import proxy_shape
from .security import (
    derive_project_name,
    normalize_repo_url,
    normalize_base_path,
    sanitize_project_name,
    validate_env_key,
    validate_repo_url,
)
from .supervisor import process_name

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("production", "staging", "development")


@dataclass
class DeployRequest:
    repo_url: str
    branch: str = "main"
    project_type: Optional[ProjectType] = None
    port: Optional[int] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    base_path: Optional[str] = None
    environment: str = "production"
    webhook_enabled: bool = False
    domain: Optional[str] = None
    force: bool = False


@dataclass
class PipelineResult:
    success: bool
    project_name: Optional[str] = None
    project_path: Optional[str] = None
    port: Optional[int] = None
    proxy_config_path: Optional[str] = None
    supervisor_id: Optional[str] = None
    commit: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[str] = None
    build_log: Optional[str] = None
    runtime_log: Optional[str] = None
    activity_log: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RemoveResult:
    name: str
    removed: bool
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Orchestrator:
    def __init__(self, ctx: DeployContext):
        self.ctx = ctx

    @property
    def settings(self):
        return self.ctx.settings

    def _lock_timeout(self, lock_timeout: Optional[float]) -> float:
        return self.settings.lock_timeout if lock_timeout is None else lock_timeout

    def _new_result(self, name: str) -> PipelineResult:
        s = self.settings
        return PipelineResult(
            success=False,
            project_name=name,
            project_path=str(s.project_path(name)),
            build_log=str(s.build_log_path(name)),
            runtime_log=str(s.runtime_log_path(name)),
            activity_log=str(s.activity_log_path(name)),
        )

    def _fail(self, result: PipelineResult, stage: str, error: ShipyardError) -> PipelineResult:
        logger.error(f"Stage {stage} failed for {result.project_name}: {error}")
        emit_event(
            self.settings.events_path(result.project_name),
            EventTypes.ERROR,
            {"stage": stage, "error": str(error), "log_path": getattr(error, "log_path", None)},
        )
        result.success = False
        result.stage = stage
        result.error = str(error)
        return result

    # Deploy

    def resolve_name(self, request: DeployRequest) -> str:
        if request.name:
            name = sanitize_project_name(request.name)
        else:
            name = derive_project_name(request.repo_url, request.branch)
        if not name:
            raise ValidationError(f"Cannot derive a project name from {request.name or request.repo_url!r}")
        return name

    def deploy(self, request: DeployRequest, lock_timeout: Optional[float] = None) -> PipelineResult:
        """
        Run the full pipeline for a repository.

        Args:
            request: What to deploy and how
            lock_timeout: Seconds to wait for a concurrent operation on the
                same project (settings.lock_timeout if None)

        Returns:
            PipelineResult; on failure `stage` names the failed stage

        Raises:
            ProjectBusy: Another operation holds the project's lock
        """
        try:
            name = self.resolve_name(request)
        except ValidationError as e:
            logger.error(f"Stage resolve failed: {e}")
            return PipelineResult(success=False, stage="resolve", error=str(e))

        with self.ctx.locks.hold(name, timeout=self._lock_timeout(lock_timeout)):
            with project_logging(self.settings.logs_dir, name):
                return self._deploy(name, request)

    def _validate(self, name: str, request: DeployRequest, base_path: str, domain: Optional[str]) -> None:
        if not validate_repo_url(request.repo_url, self.settings.allowed_hosts):
            raise ValidationError(f"Repository URL not allowed: {request.repo_url}")

        bad_keys = [key for key in request.env_vars if not validate_env_key(key)]
        if bad_keys:
            raise ValidationError(f"Invalid environment variable names: {', '.join(bad_keys)}")

        if request.environment not in ENVIRONMENTS:
            raise ValidationError(f"Unknown environment {request.environment!r}; expected one of {', '.join(ENVIRONMENTS)}")

        host = domain or f"{name}.local"
        for other in self.ctx.store.list_all():
            if other.name != name and other.host == host and other.base_path == base_path:
                raise ValidationError(f"Route {host}{base_path} is already used by project {other.name}")

    def _resolve_port(self, name: str, preferred: Optional[int], existing: Optional[ProjectRecord]) -> Optional[int]:
        if preferred is None and existing is not None:
            preferred = existing.port
        if preferred is None:
            return None
        if not 0 < preferred < 65536:
            raise ValidationError(f"Invalid port: {preferred}")

        held = {r.port for r in self.ctx.store.list_all() if r.name != name and r.port}
        if existing is not None and existing.port == preferred and preferred not in held:
            # our own process is listening there
            return preferred

        port = self.ctx.ports.allocate(preferred, self.settings.port_attempts, exclude=held)
        if port in held:
            raise ConfigurationError(f"No free port found from {preferred}; every probed port is taken")
        return port

    def _check_analysis(self, analysis: AnalysisResult, request: DeployRequest, port: Optional[int]) -> None:
        if analysis.type == ProjectType.UNKNOWN:
            raise ClassificationError(
                "Could not determine the project type; pass an explicit type (backend, frontend or multi-package)"
            )
        proxy_shape(analysis.type, analysis)
        if analysis.needs_port and port is None:
            raise ConfigurationError(f"A {analysis.type.value} project is supervised and proxied; a port is required")

    def _deploy(self, name: str, request: DeployRequest) -> PipelineResult:
        s = self.settings
        ctx = self.ctx
        result = self._new_result(name)
        workspace = s.project_path(name)
        build_log = str(s.build_log_path(name))
        events = s.events_path(name)

        logger.info(f"Deploying {request.repo_url} (branch {request.branch}) as {name}")
        emit_event(events, EventTypes.DEPLOY_START, {"repo_url": request.repo_url, "branch": request.branch})

        stage = "resolve"
        try:
            base_path = normalize_base_path(request.base_path)
            domain = request.domain or s.domain
            self._validate(name, request, base_path, domain)
            existing = ctx.store.load(name)
            if (
                existing is not None
                and not request.force
                and normalize_repo_url(existing.repo_url) != normalize_repo_url(request.repo_url)
            ):
                raise ValidationError(
                    f"Project {name} is deployed from {existing.repo_url}; pick another name or redeploy with force"
                )

            stage = "port"
            port = self._resolve_port(name, request.port, existing)
            result.port = port

            stage = "fetch"
            fetched = fetch_repo(
                ctx.runner,
                request.repo_url,
                request.branch,
                workspace,
                force=request.force,
                allowed_hosts=s.allowed_hosts,
                log_path=str(s.activity_log_path(name)),
                timeout=s.command_timeout,
            )
            result.commit = fetched.commit
            emit_event(events, EventTypes.FETCH_DONE, {"commit": fetched.commit, "cloned": fetched.cloned})

            stage = "analyze"
            analysis = analyze(str(workspace), request.project_type)
            self._check_analysis(analysis, request, port)
            for line in analysis.rationale:
                logger.info(line)
            emit_event(events, EventTypes.ANALYZE_DONE, {
                "type": analysis.type.value,
                "package_manager": analysis.package_manager.value,
                "rule": analysis.matched_rule,
                "frontend_path": analysis.frontend_path,
                "backend_path": analysis.backend_path,
            })

            service = analysis.service()
            packages = analysis.sub_packages()

            stage = "install"
            for sub_path, package in packages:
                install_dependencies(
                    ctx.runner, str(workspace / sub_path), package.package_manager, build_log, s.command_timeout
                )
            emit_event(events, EventTypes.INSTALL_DONE, {"packages": [p for p, _ in packages]})

            stage = "build"
            for sub_path, package in packages:
                work_dir = workspace / sub_path
                if request.env_vars and (service is None or service[0] != sub_path):
                    # build-time variables for statically served packages
                    EnvFile(work_dir).update(request.env_vars)
                if not build_project(ctx.runner, str(work_dir), package, build_log, s.command_timeout):
                    result.warnings.append(f"No build script in {sub_path or '.'}; build skipped")
            emit_event(events, EventTypes.BUILD_DONE, {})

            stage = "supervise"
            service_path = ""
            if service is not None:
                service_path, package = service
                result.supervisor_id = ctx.supervisor.register(
                    process_name(name, service_path),
                    package.start_command,
                    str(workspace / service_path),
                    port=port,
                    env_vars=request.env_vars,
                    package_manager=package.package_manager,
                    log_path=str(s.runtime_log_path(name)),
                )
            else:
                logger.info("Statically served; no process to supervise")
            emit_event(events, EventTypes.SUPERVISE_DONE, {"supervisor_id": result.supervisor_id})

            stage = "proxy"
            result.proxy_config_path = ctx.proxy.generate(
                name, str(workspace), analysis.type, analysis, port, base_path, domain, validate=False
            )
            if not ctx.proxy.validate():
                result.warnings.append(f"nginx -t failed; check {result.proxy_config_path}")
            if not ctx.proxy.reload():
                result.warnings.append("nginx reload failed; reload it by hand")
            emit_event(events, EventTypes.PROXY_DONE, {"config": result.proxy_config_path})

            stage = "persist"
            ctx.store.save(ProjectRecord(
                name=name,
                repo_url=request.repo_url,
                branch=request.branch,
                type=analysis.type.value,
                port=port,
                base_path=base_path,
                created_at=existing.created_at if existing else "",
                updated_at=utc_now(),
                supervisor_id=result.supervisor_id,
                proxy_config_path=result.proxy_config_path,
                environment=request.environment,
                webhook_enabled=request.webhook_enabled,
                domain=domain,
                service_path=service_path,
            ))
        except ShipyardError as e:
            return self._fail(result, stage, e)

        for warning in result.warnings:
            logger.warning(warning)
        emit_event(events, EventTypes.DONE, {"port": port, "warnings": result.warnings})
        logger.info(f"Deployed {name}")
        result.success = True
        return result

    # Update / remove

    def _require(self, name: str) -> ProjectRecord:
        record = self.ctx.store.load(name)
        if record is None:
            raise ProjectNotFound(name)
        return record

    def update(self, name: str, branch: Optional[str] = None, lock_timeout: Optional[float] = None) -> PipelineResult:
        """
        Pull the latest commit of a deployed project and restart it.

        Dependencies are not reinstalled; deploy again for a full rebuild.

        Raises:
            ProjectNotFound: No record for that name
            ProjectBusy: Another operation holds the project's lock
        """
        name = sanitize_project_name(name)
        self._require(name)

        with self.ctx.locks.hold(name, timeout=self._lock_timeout(lock_timeout)):
            with project_logging(self.settings.logs_dir, name):
                record = self._require(name)
                return self._update(record, branch or record.branch)

    def _update(self, record: ProjectRecord, branch: str) -> PipelineResult:
        s = self.settings
        name = record.name
        events = s.events_path(name)
        result = self._new_result(name)
        result.port = record.port
        result.supervisor_id = record.supervisor_id
        result.proxy_config_path = record.proxy_config_path
        workspace = s.project_path(name)

        logger.info(f"Updating {name} (branch {branch})")
        emit_event(events, EventTypes.UPDATE_START, {"branch": branch})

        stage = "fetch"
        try:
            fetched = fetch_repo(
                self.ctx.runner,
                record.repo_url,
                branch,
                workspace,
                allowed_hosts=s.allowed_hosts,
                log_path=str(s.activity_log_path(name)),
                timeout=s.command_timeout,
            )
            result.commit = fetched.commit

            stage = "supervise"
            if record.supervisor_id:
                self.ctx.supervisor.restart(record.supervisor_id, work_dir=str(workspace / record.service_path))

            stage = "persist"
            self.ctx.store.update(name, branch=branch)
        except ShipyardError as e:
            return self._fail(result, stage, e)

        emit_event(events, EventTypes.UPDATE_DONE, {"commit": result.commit, "branch": branch})
        logger.info(f"Updated {name} to {result.commit}")
        result.success = True
        return result

    def remove(self, name: str, lock_timeout: Optional[float] = None) -> RemoveResult:
        """
        Tear a project down: supervisor entry, nginx config, workspace, then the record.

        Failures of the first three are collected as warnings; the record is
        deleted regardless.

        Raises:
            ProjectNotFound: No record for that name
            ProjectBusy: Another operation holds the project's lock
        """
        name = sanitize_project_name(name)
        self._require(name)

        with self.ctx.locks.hold(name, timeout=self._lock_timeout(lock_timeout)):
            with project_logging(self.settings.logs_dir, name):
                record = self._require(name)
                return self._remove(record)

    def _remove(self, record: ProjectRecord) -> RemoveResult:
        ctx = self.ctx
        name = record.name
        events = self.settings.events_path(name)
        warnings: List[str] = []

        logger.info(f"Removing {name}")
        emit_event(events, EventTypes.REMOVE_START, {})

        if record.supervisor_id:
            try:
                ctx.supervisor.remove(record.supervisor_id)
            except ToolError as e:
                warnings.append(f"Could not remove PM2 process {record.supervisor_id}: {e}")

        if record.proxy_config_path:
            try:
                ctx.proxy.remove(record.proxy_config_path)
                if not ctx.proxy.reload():
                    warnings.append("nginx reload failed; reload it by hand")
            except (ToolError, OSError) as e:
                warnings.append(f"Could not remove nginx config {record.proxy_config_path}: {e}")

        workspace = self.settings.project_path(name)
        if workspace.is_dir():
            for entry in workspace.iterdir():
                if entry.name == METADATA_FILE:
                    continue
                try:
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                except OSError as e:
                    warnings.append(f"Could not delete {entry}: {e}")

        ctx.store.delete(name)

        for warning in warnings:
            logger.warning(warning)
        emit_event(events, EventTypes.REMOVE_DONE, {"warnings": warnings})
        logger.info(f"Removed {name}")
        return RemoveResult(name=name, removed=True, warnings=warnings)

    # Status

    def status(self, name: str) -> Dict[str, Any]:
        """Record plus the pipeline state derived from the event journal."""
        name = sanitize_project_name(name)
        record = self._require(name)
        events = self.settings.events_path(name)
        return {
            "project": record.to_dict(),
            "status": get_status_from_events(events),
            "busy": self.ctx.locks.is_locked(name),
            "last_event": get_last_event(events),
        }

    # Environment

    def _env_file(self, record: ProjectRecord) -> EnvFile:
        return EnvFile(self.settings.project_path(record.name) / record.service_path)

    def _mutate_env(self, name: str, action: str, change, lock_timeout: Optional[float], applies=None):
        """
        Apply `change` to the project's .env under its lock, then restart.

        `applies`, when given, is checked under the lock; if it returns False
        nothing is changed or restarted and False is returned.
        """
        name = sanitize_project_name(name)
        self._require(name)
        with self.ctx.locks.hold(name, timeout=self._lock_timeout(lock_timeout)):
            with project_logging(self.settings.logs_dir, name):
                record = self._require(name)
                env_file = self._env_file(record)
                if applies is not None and not applies(env_file):
                    return False
                outcome = change(env_file)
                self.ctx.store.update(name)
                emit_event(self.settings.events_path(name), EventTypes.ENV_CHANGED, {"action": action})
                if record.supervisor_id:
                    self.ctx.supervisor.restart(record.supervisor_id, work_dir=str(env_file.directory))
                return outcome

    def set_env(self, name: str, key: str, value: str, lock_timeout: Optional[float] = None) -> None:
        self._mutate_env(name, f"set {key}", lambda env: env.set(key, value), lock_timeout)

    def unset_env(self, name: str, key: str, lock_timeout: Optional[float] = None) -> bool:
        """Remove a variable; False when it was not set (nothing is restarted then)."""
        return self._mutate_env(
            name, f"unset {key}", lambda env: env.unset(key), lock_timeout, applies=lambda env: key in env.get_all()
        )

    def restore_env(self, name: str, backup_path: Optional[str] = None, lock_timeout: Optional[float] = None) -> Path:
        return self._mutate_env(name, "restore", lambda env: env.restore(backup_path), lock_timeout)

    def get_env(self, name: str, key: str) -> Optional[str]:
        return self._env_file(self._require(sanitize_project_name(name))).get(key)

    def list_env(self, name: str) -> Dict[str, str]:
        return self._env_file(self._require(sanitize_project_name(name))).get_all()

    def backup_env(self, name: str) -> Path:
        return self._env_file(self._require(sanitize_project_name(name))).backup()
