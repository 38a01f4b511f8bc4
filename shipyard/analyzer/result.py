from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class ProjectType(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    MULTI_PACKAGE = "multi-package"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ProjectType"]:
        """Map CLI/user input to a type; None or 'auto' means detect."""
        if value is None:
            return None
        value = value.strip().lower()
        if value in ("", "auto"):
            return None
        if value in ("monorepo", "multi", "multipackage"):
            return cls.MULTI_PACKAGE
        return cls(value)


class PackageManager(str, Enum):
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


@dataclass
class AnalysisResult:
    # Identity
    type: ProjectType
    package_manager: PackageManager
    path: str

    # Scripts from the manifest
    has_build_script: bool = False
    has_start_script: bool = False
    build_command: Optional[str] = None
    start_command: Optional[str] = None

    # Frontend rendering
    framework: Optional[str] = None
    is_ssr: bool = False
    static_output_dir: Optional[str] = None

    # Multi-package layouts (paths relative to the workspace root)
    frontend_path: Optional[str] = None
    backend_path: Optional[str] = None
    frontend: Optional["AnalysisResult"] = None
    backend: Optional["AnalysisResult"] = None

    matched_rule: Optional[str] = None
    rationale: List[str] = field(default_factory=list)

    def sub_packages(self) -> List[Tuple[str, "AnalysisResult"]]:
        """(relative path, analysis) for every package that must be installed and built."""
        if self.type != ProjectType.MULTI_PACKAGE:
            return [("", self)]
        packages = []
        if self.frontend is not None:
            packages.append((self.frontend_path or "", self.frontend))
        if self.backend is not None:
            packages.append((self.backend_path or "", self.backend))
        return packages

    def service(self) -> Optional[Tuple[str, "AnalysisResult"]]:
        """The package that needs a long-running process, if any."""
        if self.type == ProjectType.BACKEND:
            return "", self
        if self.type == ProjectType.FRONTEND:
            return ("", self) if self.is_ssr else None
        if self.type == ProjectType.MULTI_PACKAGE:
            if self.backend is not None:
                return self.backend_path or "", self.backend
            if self.frontend is not None and self.frontend.is_ssr:
                return self.frontend_path or "", self.frontend
        return None

    @property
    def needs_port(self) -> bool:
        return self.service() is not None

    def static_package(self) -> Optional[Tuple[str, "AnalysisResult"]]:
        """The package whose build output nginx serves directly, if any."""
        if self.type == ProjectType.FRONTEND and not self.is_ssr:
            return "", self
        if self.type == ProjectType.MULTI_PACKAGE and self.frontend is not None and not self.frontend.is_ssr:
            return self.frontend_path or "", self.frontend
        return None
