"""
Dependency installation and build steps, driven by the detected package manager.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from .analyzer.detect_node import has_lock_file
from .analyzer.result import AnalysisResult, PackageManager
from .runner import CommandRunner

logger = logging.getLogger(__name__)


def install_command(package_manager: PackageManager, work_dir: Path) -> List[str]:
    locked = has_lock_file(work_dir, package_manager)
    if package_manager == PackageManager.PNPM:
        return ["pnpm", "install", "--frozen-lockfile"] if locked else ["pnpm", "install"]
    if package_manager == PackageManager.YARN:
        return ["yarn", "install", "--frozen-lockfile"] if locked else ["yarn", "install"]
    # npm ci rejects --legacy-peer-deps setups, so always install
    return ["npm", "install", "--legacy-peer-deps"]


def build_command(package_manager: PackageManager) -> List[str]:
    if package_manager == PackageManager.YARN:
        return ["yarn", "build"]
    return [package_manager.value, "run", "build"]


def install_dependencies(
    runner: CommandRunner,
    work_dir: str,
    package_manager: PackageManager,
    log_path: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Install a package's dependencies.

    devDependencies are installed too: most build steps need them.

    Raises:
        ToolError: The package manager failed or timed out
    """
    command = install_command(package_manager, Path(work_dir))
    logger.info(f"Installing dependencies in {work_dir}: {' '.join(command)}")
    runner.run(command, cwd=work_dir, timeout=timeout, log_path=log_path, stage="install")
    logger.info("Dependencies installed")


def build_project(
    runner: CommandRunner,
    work_dir: str,
    analysis: AnalysisResult,
    log_path: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bool:
    """
    Run the package's build script.

    Args:
        runner: Command runner
        work_dir: Package directory
        analysis: Analysis of that package
        log_path: build.log of the project
        timeout: Seconds before the build is killed

    Returns:
        bool: False when the package has no build script and nothing ran

    Raises:
        ToolError: The build failed or timed out
    """
    if not analysis.has_build_script:
        logger.warning(f"No build script in {work_dir}, skipping build")
        return False

    command = build_command(analysis.package_manager)
    bin_dir = Path(work_dir) / "node_modules" / ".bin"
    env = {
        "NODE_ENV": "production",
        "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}",
    }

    logger.info(f"Building {work_dir}: {' '.join(command)}")
    runner.run(command, cwd=work_dir, env=env, timeout=timeout, log_path=log_path, stage="build")

    if analysis.static_output_dir and not analysis.is_ssr:
        output_dir = Path(work_dir) / analysis.static_output_dir
        if output_dir.exists():
            logger.info(f"Build output: {output_dir}")
        else:
            logger.warning(f"Expected build output not found: {output_dir}")

    return True
