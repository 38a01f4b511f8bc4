import json
import shutil
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from shipyard.context import DeployContext, Settings
from shipyard.errors import CommandFailed
from shipyard.runner import CommandResult


class FakeRunner:
    """
    Stands in for CommandRunner: records every call and answers from a script.

    Handlers match when all their tokens appear in the command; the most
    recently added matching handler wins. Unmatched commands succeed with no
    output.
    """

    def __init__(self):
        self.calls: List[dict] = []
        self._handlers = []

    def on(self, *tokens, returncode=0, stdout="", stderr="", raises=None, effect: Optional[Callable] = None):
        self._handlers.append((tokens, returncode, stdout, stderr, raises, effect))
        return self

    def run(self, command, cwd=None, env=None, timeout=None, check=True, log_path=None, stage=None):
        argv = [str(part) for part in command]
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "stage": stage})

        result = CommandResult(argv, 0)
        for tokens, returncode, stdout, stderr, raises, effect in reversed(self._handlers):
            if all(token in argv for token in tokens):
                if effect is not None:
                    effect(argv, cwd)
                if raises is not None:
                    raise raises
                result = CommandResult(argv, returncode, stdout, stderr)
                break

        if check and not result.ok:
            raise CommandFailed(argv, result.returncode, output=result.output, stage=stage, log_path=log_path)
        return result

    @property
    def commands(self) -> List[List[str]]:
        return [call["argv"] for call in self.calls]

    def ran(self, *tokens) -> bool:
        return any(all(token in argv for token in tokens) for argv in self.commands)


def write_package(directory: Path, dependencies=None, scripts=None, dev_dependencies=None, **extra) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    manifest = {"name": directory.name, "version": "1.0.0", **extra}
    if scripts is not None:
        manifest["scripts"] = scripts
    if dependencies is not None:
        manifest["dependencies"] = dependencies
    if dev_dependencies is not None:
        manifest["devDependencies"] = dev_dependencies
    (directory / "package.json").write_text(json.dumps(manifest))
    return directory


def clone_from(source: Path) -> Callable:
    """Runner effect that makes `git clone ... <target>` copy `source` into the target."""
    def effect(argv, cwd):
        shutil.copytree(source, argv[-1])
    return effect


@pytest.fixture
def settings(tmp_path):
    return Settings(apps_dir=tmp_path / "apps", nginx_conf_dir=tmp_path / "nginx", use_sudo=False)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def ctx(settings, runner):
    return DeployContext(settings, runner=runner)


@pytest.fixture
def express_repo(tmp_path):
    repo = write_package(
        tmp_path / "src" / "api-server",
        dependencies={"express": "^4.18.0"},
        scripts={"start": "node server.js"},
    )
    (repo / "server.js").write_text("require('express')().listen(process.env.PORT)\n")
    return repo


@pytest.fixture
def vite_repo(tmp_path):
    return write_package(
        tmp_path / "src" / "web-app",
        dependencies={"react": "^18.0.0"},
        dev_dependencies={"vite": "^5.0.0"},
        scripts={"build": "vite build", "dev": "vite"},
    )
