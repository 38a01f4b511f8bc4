from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..errors import ClassificationError
from .detect_node import analyze_package, detect_package_manager, locate_packages
from .result import AnalysisResult, PackageManager, ProjectType
from .rules import ROOT_RULES, classify
from .walk import read_manifest

logger = logging.getLogger(__name__)

__all__ = ["analyze", "AnalysisResult", "PackageManager", "ProjectType"]


def _multi_package(
    root: Path,
    package_manager: Optional[PackageManager],
    base: Optional[AnalysisResult] = None,
) -> AnalysisResult:
    frontend_path, backend_path = locate_packages(root)
    if not frontend_path and not backend_path:
        raise ClassificationError(
            f"Multi-package layout in {root} but no frontend or backend package could be identified"
        )

    frontend = (
        analyze_package(root / frontend_path, ProjectType.FRONTEND, package_manager) if frontend_path else None
    )
    backend = (
        analyze_package(root / backend_path, ProjectType.BACKEND, package_manager) if backend_path else None
    )

    res = base or AnalysisResult(
        type=ProjectType.MULTI_PACKAGE,
        package_manager=package_manager or (backend or frontend).package_manager,
        path=str(root),
    )
    res.type = ProjectType.MULTI_PACKAGE
    res.frontend_path, res.backend_path = frontend_path, backend_path
    res.frontend, res.backend = frontend, backend
    res.rationale.append(f"Packages: frontend={frontend_path or '-'} backend={backend_path or '-'}")
    return res


def analyze(workspace_path: str, explicit_type: Optional[ProjectType] = None) -> AnalysisResult:
    """
    Classify a checked-out repository and recover its scripts.

    Static analysis only; no user code is executed. An explicit type skips
    classification but the manifest is still read for commands and the
    package manager.

    Raises:
        ClassificationError: No manifest anywhere and no explicit type, or a
            multi-package layout without identifiable packages
    """
    root = Path(workspace_path)
    if explicit_type == ProjectType.UNKNOWN:
        explicit_type = None

    manifest = read_manifest(root)

    if manifest is None:
        logger.info("No package.json at the repository root, looking for sub-packages")
        frontend_path, backend_path = locate_packages(root)
        if frontend_path or backend_path:
            if explicit_type not in (None, ProjectType.MULTI_PACKAGE):
                logger.warning(f"Ignoring explicit type {explicit_type.value}: the root has no manifest")
            res = _multi_package(root, None)
            res.matched_rule = "sub-packages"
            return res
        if explicit_type is not None:
            logger.warning(f"No manifest found; proceeding with explicit type {explicit_type.value}")
            return AnalysisResult(
                type=explicit_type,
                package_manager=detect_package_manager(root),
                path=str(root),
                rationale=["No manifest found; type supplied by the operator"],
            )
        raise ClassificationError(f"No package.json found in {root} or any known sub-directory")

    package_manager = detect_package_manager(root)
    logger.info(f"Package manager: {package_manager.value}")

    if explicit_type is not None:
        logger.info(f"Using explicit project type: {explicit_type.value}")
        if explicit_type == ProjectType.MULTI_PACKAGE:
            base = analyze_package(root, ProjectType.MULTI_PACKAGE, package_manager, manifest)
            res = _multi_package(root, package_manager, base)
        else:
            res = analyze_package(root, explicit_type, package_manager, manifest)
        res.matched_rule = "explicit"
        return res

    rule = classify(manifest, ROOT_RULES)
    if rule is None:
        logger.warning("Could not determine the project type from package.json")
        res = analyze_package(root, ProjectType.UNKNOWN, package_manager, manifest)
        res.rationale.append("No rule matched the root manifest")
        return res

    logger.info(f"Detected {rule.kind.value} project ({rule.description})")
    if rule.kind == ProjectType.MULTI_PACKAGE:
        base = analyze_package(root, ProjectType.MULTI_PACKAGE, package_manager, manifest)
        res = _multi_package(root, package_manager, base)
    else:
        res = analyze_package(root, rule.kind, package_manager, manifest)

    res.matched_rule = rule.id
    res.rationale.insert(0, f"Root manifest {rule.description} (rule {rule.id})")
    return res
