"""
Classification rules, evaluated in order; the first match wins.

New frameworks or monorepo layouts are supported by appending a rule, not by
adding branches to the analyzer.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .result import ProjectType
from .walk import Manifest

BACKEND_FRAMEWORKS = (
    "express",
    "fastify",
    "koa",
    "nest",
    "@nestjs/core",
    "hapi",
    "@hapi/hapi",
    "restify",
)

FRONTEND_FRAMEWORKS = (
    "react",
    "vue",
    "angular",
    "@angular/core",
    "svelte",
    "next",
    "nuxt",
    "remix",
    "@remix-run/react",
)

MONOREPO_TOOLS = ("turbo", "lerna")
MONOREPO_CONFIG_FILES = ("nx.json", "turbo.json", "lerna.json", "pnpm-workspace.yaml")


@dataclass(frozen=True)
class ClassificationRule:
    """A predicate over a directory's manifest and the type it implies."""
    id: str
    kind: ProjectType
    matches: Callable[[Manifest, Path], bool]
    description: str


def _depends_on_any(names: Tuple[str, ...]) -> Callable[[Manifest, Path], bool]:
    return lambda manifest, directory: any(manifest.has_dep(n) for n in names)


def _has_workspaces(manifest: Manifest, directory: Path) -> bool:
    workspaces = manifest.data.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    return bool(workspaces)


def _has_monorepo_config(manifest: Manifest, directory: Path) -> bool:
    return any((directory / name).exists() for name in MONOREPO_CONFIG_FILES)


BACKEND_RULE = ClassificationRule(
    id="backend-framework",
    kind=ProjectType.BACKEND,
    matches=_depends_on_any(BACKEND_FRAMEWORKS),
    description="depends on a server framework",
)

FRONTEND_RULE = ClassificationRule(
    id="frontend-framework",
    kind=ProjectType.FRONTEND,
    matches=_depends_on_any(FRONTEND_FRAMEWORKS),
    description="depends on a UI framework",
)

# Rules for the repository root
ROOT_RULES: List[ClassificationRule] = [
    ClassificationRule(
        id="workspaces",
        kind=ProjectType.MULTI_PACKAGE,
        matches=_has_workspaces,
        description="manifest declares workspaces",
    ),
    ClassificationRule(
        id="monorepo-tool",
        kind=ProjectType.MULTI_PACKAGE,
        matches=_depends_on_any(MONOREPO_TOOLS),
        description="depends on a monorepo tool",
    ),
    ClassificationRule(
        id="monorepo-config",
        kind=ProjectType.MULTI_PACKAGE,
        matches=_has_monorepo_config,
        description="has a monorepo tool config file",
    ),
    BACKEND_RULE,
    FRONTEND_RULE,
]

# Rules for a sub-package of a multi-package layout
PACKAGE_RULES: List[ClassificationRule] = [BACKEND_RULE, FRONTEND_RULE]


def classify(manifest: Manifest, rules: List[ClassificationRule] = ROOT_RULES) -> Optional[ClassificationRule]:
    """Return the first rule matching the manifest's directory, or None."""
    for rule in rules:
        if rule.matches(manifest, manifest.directory):
            return rule
    return None


@dataclass(frozen=True)
class RenderingRule:
    framework: str
    dependencies: Tuple[str, ...]
    is_ssr: bool
    output_dir: Optional[str]


FRONTEND_RENDERING: List[RenderingRule] = [
    RenderingRule("nextjs", ("next",), True, ".next"),
    RenderingRule("nuxt", ("nuxt", "nuxt3"), True, ".output"),
    RenderingRule("remix", ("@remix-run/node",), True, None),
    RenderingRule("vite", ("vite",), False, "dist"),
    RenderingRule("create-react-app", ("react-scripts",), False, "build"),
]

DEFAULT_RENDERING = RenderingRule("static", (), False, "dist")


def detect_rendering(manifest: Manifest) -> RenderingRule:
    """Rendering mode and build output directory of a frontend package."""
    for rule in FRONTEND_RENDERING:
        if any(manifest.has_dep(dep) for dep in rule.dependencies):
            return rule
    return DEFAULT_RENDERING
