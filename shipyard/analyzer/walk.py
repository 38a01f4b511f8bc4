from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

MANIFEST = "package.json"

IGNORE_DIRS = {
    ".git",
    "node_modules",
    ".next",
    ".nuxt",
    ".output",
    "build",
    "dist",
    "coverage",
}


@dataclass
class Manifest:
    path: Path
    data: Dict = field(default_factory=dict)

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def dependencies(self) -> Dict[str, str]:
        return {**(self.data.get("dependencies") or {}), **(self.data.get("devDependencies") or {})}

    @property
    def scripts(self) -> Dict[str, str]:
        return self.data.get("scripts") or {}

    def has_dep(self, name: str) -> bool:
        return name in self.dependencies


def read_text(path: str | Path, limit_bytes: int = 1_000_000) -> str:
    p = Path(path)
    try:
        if p.stat().st_size > limit_bytes:
            return ""  # too large, skip content
    except OSError:
        return ""

    for enc in ("utf-8-sig", "latin-1"):
        try:
            with open(p, "r", encoding=enc) as f:
                return f.read()
        except UnicodeDecodeError:
            continue
        except OSError:
            return ""
    return ""


def read_manifest(directory: str | Path) -> Optional[Manifest]:
    """Parse <directory>/package.json; None when absent or not a JSON object."""
    pj = Path(directory) / MANIFEST
    if not pj.is_file():
        return None
    try:
        data = json.loads(read_text(pj) or "{}")
    except json.JSONDecodeError as e:
        logger.warning(f"Unreadable manifest {pj}: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return Manifest(pj, data)
