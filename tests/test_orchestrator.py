import json
import threading

import pytest
from conftest import clone_from, write_package

from shipyard.analyzer import ProjectType
from shipyard.envfile import EnvFile
from shipyard.errors import ProjectBusy, ProjectNotFound
from shipyard.events import get_status_from_events, read_events
from shipyard.metadata import ProjectRecord
from shipyard.orchestrator import DeployRequest, Orchestrator

REPO = "https://github.com/acme/api-server.git"


@pytest.fixture
def orchestrator(ctx):
    return Orchestrator(ctx)


@pytest.fixture
def git(runner):
    def serve(source):
        runner.on("git", "clone", effect=clone_from(source))
        runner.on("rev-parse", "HEAD", stdout="abc123def456\n")
        return runner
    return serve


def test_express_deploy_end_to_end(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, env_vars={"API_KEY": "k"}))

    assert result.success, result.error
    assert result.project_name == "api-server"
    assert result.port == 3000
    assert result.commit == "abc123def456"
    assert result.supervisor_id == "api-server"

    workspace = ctx.settings.project_path("api-server")
    env_text = (workspace / ".env").read_text()
    assert "PORT=3000" in env_text and "API_KEY=k" in env_text
    ecosystem = json.loads((workspace / "ecosystem.config.json").read_text())
    assert ecosystem["apps"][0]["name"] == "api-server"

    conf = ctx.settings.nginx_config_path("api-server")
    assert "proxy_pass http://localhost:3000/;" in conf.read_text()

    record = ctx.store.load("api-server")
    assert record.type == "backend"
    assert record.port == 3000
    assert record.supervisor_id == "api-server"
    assert record.proxy_config_path == str(conf)

    assert get_status_from_events(ctx.settings.events_path("api-server")) == "deployed"
    assert runner.ran("npm", "install")
    assert runner.ran("pm2", "start")
    assert any("build skipped" in w for w in result.warnings)


def test_remove_collects_warnings_and_deletes_everything(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    runner.on("pm2", "delete", returncode=1, stderr="boom")

    result = orchestrator.remove("api-server")

    assert result.removed
    assert any("PM2" in w for w in result.warnings)
    assert ctx.store.load("api-server") is None
    assert not ctx.settings.nginx_config_path("api-server").exists()
    assert not ctx.settings.project_path("api-server").exists()
    assert get_status_from_events(ctx.settings.events_path("api-server")) == "removed"


def test_remove_unknown_project(orchestrator):
    with pytest.raises(ProjectNotFound):
        orchestrator.remove("ghost")


def test_backend_without_port_fails_before_install(orchestrator, runner, git, express_repo):
    git(express_repo)

    result = orchestrator.deploy(DeployRequest(repo_url=REPO))

    assert not result.success
    assert result.stage == "analyze"
    assert not runner.ran("npm", "install")


def test_disallowed_host_fails_at_resolve(ctx, orchestrator, runner):
    result = orchestrator.deploy(DeployRequest(repo_url="https://evil.example.com/acme/api.git", port=3000))

    assert not result.success
    assert result.stage == "resolve"
    assert not runner.ran("git")
    assert ctx.store.load("api") is None


def test_invalid_env_key_fails_at_resolve(orchestrator, runner):
    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, env_vars={"bad-key": "x"}))
    assert result.stage == "resolve"
    assert not runner.ran("git")


def test_clone_failure(ctx, orchestrator, runner):
    runner.on("git", "clone", returncode=128, stderr="fatal: repository not found")

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000))

    assert not result.success
    assert result.stage == "fetch"
    assert "repository not found" in result.error
    events = read_events(ctx.settings.events_path("api-server"))
    assert events[-1]["type"] == "ERROR"
    assert events[-1]["data"]["stage"] == "fetch"
    assert ctx.store.load("api-server") is None


def test_static_frontend_needs_no_port(ctx, orchestrator, runner, git, vite_repo):
    git(vite_repo)

    result = orchestrator.deploy(DeployRequest(repo_url="https://github.com/acme/web-app", env_vars={"VITE_API": "/api"}))

    assert result.success, result.error
    assert result.port is None
    assert result.supervisor_id is None
    assert runner.ran("npm", "run", "build")
    assert not runner.ran("pm2", "start")

    workspace = ctx.settings.project_path("web-app")
    assert EnvFile(workspace).get_all() == {"VITE_API": "/api"}
    assert f"root {workspace / 'dist'};" in ctx.settings.nginx_config_path("web-app").read_text()
    assert ctx.store.load("web-app").type == "frontend"


def test_unknown_project_type_is_rejected(orchestrator, git, tmp_path):
    git(write_package(tmp_path / "src" / "lib", dependencies={"lodash": "4"}))

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000))

    assert not result.success
    assert result.stage == "analyze"
    assert "explicit type" in result.error


def test_explicit_type_overrides_detection(ctx, orchestrator, git, tmp_path):
    repo = write_package(tmp_path / "src" / "svc", dependencies={"lodash": "4"}, scripts={"start": "node main.js"})
    git(repo)

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, project_type=ProjectType.BACKEND))
    assert result.success, result.error
    assert ctx.store.load("api-server").type == "backend"


def test_route_collision_is_rejected(ctx, orchestrator, runner):
    ctx.store.save(ProjectRecord(name="shop", repo_url="https://github.com/acme/shop", domain="example.com"))

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, domain="example.com"))

    assert result.stage == "resolve"
    assert "shop" in result.error
    assert not runner.ran("git")


def test_same_domain_different_base_path_is_allowed(ctx, orchestrator, git, express_repo):
    ctx.store.save(ProjectRecord(name="shop", repo_url="https://github.com/acme/shop", domain="example.com"))
    git(express_repo)

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, domain="example.com", base_path="/api"))
    assert result.success, result.error
    assert ctx.store.load("api-server").base_path == "/api"


def test_port_held_by_another_project_is_skipped(ctx, orchestrator, git, express_repo):
    ctx.store.save(ProjectRecord(name="other", repo_url="https://github.com/acme/other", port=3000))
    git(express_repo)

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000))

    assert result.success, result.error
    assert result.port == 3001
    assert "PORT=3001" in (ctx.settings.project_path("api-server") / ".env").read_text()


def test_redeploy_keeps_port_and_created_at(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    first = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000))
    created = ctx.store.load("api-server").created_at
    # the running process now holds the port
    runner.on("ss", stdout="tcp LISTEN 0 511 0.0.0.0:3000 0.0.0.0:*\n")

    second = orchestrator.deploy(DeployRequest(repo_url=REPO, force=True))

    assert first.success and second.success, second.error
    assert second.port == 3000
    assert ctx.store.load("api-server").created_at == created


def test_same_name_from_another_repository_is_rejected(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    calls_before = len(runner.commands)

    result = orchestrator.deploy(DeployRequest(repo_url="https://github.com/someone-else/api-server", port=3000))

    assert not result.success
    assert result.stage == "resolve"
    assert "acme/api-server" in result.error
    assert len(runner.commands) == calls_before
    assert ctx.store.load("api-server").repo_url == REPO


def test_same_repository_without_git_suffix_redeploys(ctx, orchestrator, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    result = orchestrator.deploy(DeployRequest(repo_url="https://github.com/acme/api-server", force=True))
    assert result.success, result.error


def test_forced_redeploy_switches_repository(ctx, orchestrator, runner, git, express_repo):
    other = "https://github.com/someone-else/api-server.git"
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success

    result = orchestrator.deploy(DeployRequest(repo_url=other, port=3000, force=True))

    assert result.success, result.error
    assert runner.ran("git", "clone", other)
    assert ctx.store.load("api-server").repo_url == other


def test_failed_forced_redeploy_keeps_the_record(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    runner.on("npm", "install", returncode=1, stderr="npm ERR! ERESOLVE")

    result = orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000, force=True))

    assert not result.success
    assert result.stage == "install"
    record = ctx.store.load("api-server")
    assert record is not None
    assert record.supervisor_id == "api-server"
    assert record.port == 3000
    assert (ctx.settings.project_path("api-server") / "server.js").exists()


def test_multi_package_deploy(ctx, orchestrator, runner, git, tmp_path):
    repo = write_package(tmp_path / "src" / "shop", workspaces=["apps/*"])
    write_package(repo / "apps" / "web", dependencies={"react": "18"}, dev_dependencies={"vite": "5"},
                  scripts={"build": "vite build"})
    write_package(repo / "apps" / "api", dependencies={"express": "4"}, scripts={"start": "node main.js"})
    git(repo)

    result = orchestrator.deploy(DeployRequest(repo_url="https://github.com/acme/shop", port=4000))

    assert result.success, result.error
    workspace = ctx.settings.project_path("shop")
    install_dirs = [call["cwd"] for call in runner.calls if call["stage"] == "install"]
    assert install_dirs == [str(workspace / "apps" / "web"), str(workspace / "apps" / "api")]
    assert runner.ran("npm", "run", "build")

    assert result.supervisor_id == "shop-api"
    ecosystem = json.loads((workspace / "apps" / "api" / "ecosystem.config.json").read_text())
    assert ecosystem["apps"][0]["name"] == "shop-api"
    assert "PORT=4000" in (workspace / "apps" / "api" / ".env").read_text()

    conf = ctx.settings.nginx_config_path("shop").read_text()
    assert f"root {workspace / 'apps' / 'web' / 'dist'};" in conf
    assert "location /api/ {" in conf
    assert "proxy_pass http://localhost:4000/;" in conf

    record = ctx.store.load("shop")
    assert record.type == "multi-package"
    assert record.service_path == "apps/api"


def test_busy_project(ctx, orchestrator):
    with ctx.locks.hold("api-server"):
        with pytest.raises(ProjectBusy):
            orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000))


def test_update_unknown_project(orchestrator):
    with pytest.raises(ProjectNotFound):
        orchestrator.update("ghost")


def test_update_pulls_and_restarts(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    (ctx.settings.project_path("api-server") / ".git").mkdir()
    runner.on("--abbrev-ref", stdout="main\n")

    result = orchestrator.update("api-server")

    assert result.success, result.error
    assert result.commit == "abc123def456"
    assert runner.ran("pull", "--ff-only", "origin", "main")
    assert runner.ran("pm2", "restart")
    assert sum(1 for argv in runner.commands if argv[:2] == ["git", "clone"]) == 1
    assert get_status_from_events(ctx.settings.events_path("api-server")) == "deployed"


def test_update_while_another_update_runs(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    (ctx.settings.project_path("api-server") / ".git").mkdir()
    runner.on("--abbrev-ref", stdout="main\n")

    pulling = threading.Event()
    release = threading.Event()

    def slow_pull(argv, cwd):
        pulling.set()
        release.wait(5)

    runner.on("pull", effect=slow_pull)
    outcome = {}

    def webhook_update():
        outcome["result"] = orchestrator.update("api-server")

    first = threading.Thread(target=webhook_update)
    first.start()
    assert pulling.wait(5)

    try:
        with pytest.raises(ProjectBusy):
            orchestrator.update("api-server", lock_timeout=0)
        with pytest.raises(ProjectBusy):
            orchestrator.set_env("api-server", "FLAG", "1", lock_timeout=0)
    finally:
        release.set()
        first.join(5)

    assert outcome["result"].success
    assert orchestrator.update("api-server", lock_timeout=0).success


def test_update_switches_branch(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    (ctx.settings.project_path("api-server") / ".git").mkdir()
    runner.on("--abbrev-ref", stdout="main\n")

    result = orchestrator.update("api-server", branch="develop")

    assert result.success, result.error
    assert runner.ran("checkout", "-B", "develop", "origin/develop")
    assert ctx.store.load("api-server").branch == "develop"


def test_failed_update_reports_stage(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success
    (ctx.settings.project_path("api-server") / ".git").mkdir()
    runner.on("--abbrev-ref", stdout="main\n")
    runner.on("pull", returncode=1, stderr="fatal: Not possible to fast-forward")

    result = orchestrator.update("api-server")

    assert not result.success
    assert result.stage == "fetch"
    assert get_status_from_events(ctx.settings.events_path("api-server")) == "failed"


def test_env_changes_restart_the_process(ctx, orchestrator, runner, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success

    def restarts():
        return sum(1 for argv in runner.commands if argv[:2] == ["pm2", "restart"])

    orchestrator.set_env("api-server", "FEATURE_FLAG", "on")
    assert orchestrator.get_env("api-server", "FEATURE_FLAG") == "on"
    assert restarts() == 1

    assert orchestrator.unset_env("api-server", "MISSING") is False
    assert restarts() == 1

    orchestrator.backup_env("api-server")
    assert orchestrator.unset_env("api-server", "FEATURE_FLAG") is True
    assert "FEATURE_FLAG" not in orchestrator.list_env("api-server")

    orchestrator.restore_env("api-server")
    assert orchestrator.get_env("api-server", "FEATURE_FLAG") == "on"
    assert restarts() == 3

    info = orchestrator.status("api-server")
    assert info["status"] == "deployed"
    assert info["busy"] is False
    assert info["last_event"]["type"] == "ENV_CHANGED"


def test_unset_waits_for_the_lock_before_reading_env(ctx, orchestrator, git, express_repo):
    git(express_repo)
    assert orchestrator.deploy(DeployRequest(repo_url=REPO, port=3000)).success

    with ctx.locks.hold("api-server"):
        with pytest.raises(ProjectBusy):
            orchestrator.unset_env("api-server", "NOT_SET", lock_timeout=0)
