from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .result import AnalysisResult, PackageManager, ProjectType
from .rules import PACKAGE_RULES, classify, detect_rendering
from .walk import IGNORE_DIRS, Manifest, read_manifest

logger = logging.getLogger(__name__)

FRONTEND_PATHS = [
    "apps/frontend",
    "apps/web",
    "packages/frontend",
    "packages/web",
    "frontend",
    "web",
    "client",
]

BACKEND_PATHS = [
    "apps/backend",
    "apps/api",
    "apps/server",
    "packages/backend",
    "packages/api",
    "packages/server",
    "backend",
    "api",
    "server",
]

# Parents whose children are scanned as well as first-level directories
NESTED_PARENTS = ("packages", "apps")

LOCK_FILES = [
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("yarn.lock", PackageManager.YARN),
]


def detect_package_manager(directory: str | Path) -> PackageManager:
    root = Path(directory)
    for lock_file, manager in LOCK_FILES:
        if (root / lock_file).exists():
            return manager
    return PackageManager.NPM


def has_lock_file(directory: str | Path, manager: PackageManager) -> bool:
    names = {
        PackageManager.NPM: "package-lock.json",
        PackageManager.YARN: "yarn.lock",
        PackageManager.PNPM: "pnpm-lock.yaml",
    }
    return (Path(directory) / names[manager]).exists()


def _first_with_manifest(root: Path, candidates: List[str]) -> Optional[str]:
    for rel in candidates:
        if (root / rel / "package.json").is_file():
            return rel
    return None


def _scan_candidates(root: Path) -> List[Path]:
    dirs: List[Path] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or entry.name.startswith(".") or entry.name in IGNORE_DIRS:
            continue
        dirs.append(entry)
        if entry.name in NESTED_PARENTS:
            dirs.extend(
                child for child in sorted(entry.iterdir())
                if child.is_dir() and not child.name.startswith(".") and child.name not in IGNORE_DIRS
            )
    return dirs


def locate_packages(workspace: str | Path) -> Tuple[Optional[str], Optional[str]]:
    """
    Find the frontend-like and backend-like packages of a multi-package layout.

    Conventional locations are tried first; when none of them holds a
    manifest, every first-level directory (and every packages/* or apps/*
    child) with a manifest is classified by its dependencies. The first match
    of each kind wins.

    Returns:
        (frontend_path, backend_path), relative to the workspace, either may be None
    """
    root = Path(workspace)
    frontend = _first_with_manifest(root, FRONTEND_PATHS)
    backend = _first_with_manifest(root, BACKEND_PATHS)
    if frontend or backend:
        return frontend, backend

    for directory in _scan_candidates(root):
        manifest = read_manifest(directory)
        if manifest is None:
            continue
        rule = classify(manifest, PACKAGE_RULES)
        if rule is None:
            continue
        rel = directory.relative_to(root).as_posix()
        if rule.kind == ProjectType.FRONTEND and frontend is None:
            frontend = rel
            logger.info(f"Found frontend package by dependencies: {rel}")
        elif rule.kind == ProjectType.BACKEND and backend is None:
            backend = rel
            logger.info(f"Found backend package by dependencies: {rel}")
        if frontend and backend:
            break

    return frontend, backend


def analyze_package(
    directory: str | Path,
    kind: ProjectType,
    package_manager: Optional[PackageManager] = None,
    manifest: Optional[Manifest] = None,
) -> AnalysisResult:
    """Scripts, package manager and (for frontends) rendering mode of one package."""
    directory = Path(directory)
    if manifest is None:
        manifest = read_manifest(directory)
    scripts = manifest.scripts if manifest else {}

    res = AnalysisResult(
        type=kind,
        package_manager=package_manager or detect_package_manager(directory),
        path=str(directory),
        has_build_script=bool(scripts.get("build")),
        has_start_script=bool(scripts.get("start")),
        build_command=scripts.get("build"),
        start_command=scripts.get("start"),
    )

    if kind == ProjectType.FRONTEND and manifest is not None:
        rendering = detect_rendering(manifest)
        res.framework = rendering.framework
        res.is_ssr = rendering.is_ssr
        res.static_output_dir = rendering.output_dir
        res.rationale.append(
            f"Frontend framework {rendering.framework}: "
            f"{'server-rendered' if rendering.is_ssr else 'static'}"
            + (f", output in {rendering.output_dir}" if rendering.output_dir else "")
        )

    return res
