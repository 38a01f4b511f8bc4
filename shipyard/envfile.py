"""
Project .env management on top of python-dotenv.
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values, set_key, unset_key

from .errors import ValidationError
from .security import validate_env_key

logger = logging.getLogger(__name__)

ENV_FILE = ".env"
BACKUP_PREFIX = ".env.backup."

SENSITIVE_MARKERS = ("secret", "password", "key", "token")


def mask_value(key: str, value: str) -> str:
    """Hide values whose key looks like a credential."""
    lowered = key.lower()
    if any(marker in lowered for marker in SENSITIVE_MARKERS):
        return "***"
    return value


class EnvFile:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.path = self.directory / ENV_FILE

    def get_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.path).items() if v is not None}

    def get(self, key: str) -> Optional[str]:
        return self.get_all().get(key)

    def set(self, key: str, value: str) -> None:
        if not validate_env_key(key):
            raise ValidationError(f"Invalid environment variable name: {key}")
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        set_key(str(self.path), key, value, quote_mode="auto")
        logger.info(f"Set {key} in {self.path}")

    def update(self, values: Mapping[str, str]) -> None:
        """Merge several variables into the file, keeping the others."""
        for key, value in values.items():
            self.set(key, str(value))

    def unset(self, key: str) -> bool:
        """
        Remove a variable.

        Returns:
            bool: False when the key was not present
        """
        if key not in self.get_all():
            return False
        unset_key(str(self.path), key)
        logger.info(f"Removed {key} from {self.path}")
        return True

    def backup(self) -> Path:
        """Copy the current file to .env.backup.<timestamp> and return its path."""
        if not self.path.exists():
            raise ValidationError(f"No environment file to back up: {self.path}")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.directory / f"{BACKUP_PREFIX}{stamp}"
        shutil.copy2(self.path, target)
        logger.info(f"Backed up {self.path} to {target}")
        return target

    def backups(self) -> List[Path]:
        """Backups of this file, oldest first."""
        return sorted(self.directory.glob(f"{BACKUP_PREFIX}*"))

    def restore(self, backup_path: Optional[str] = None) -> Path:
        """
        Replace the file with a backup (the newest one when none is named).

        Relative paths are resolved against the project directory.

        Returns:
            Path: The backup that was restored
        """
        if backup_path:
            source = Path(backup_path)
            if not source.is_absolute():
                source = self.directory / source
        else:
            existing = self.backups()
            if not existing:
                raise ValidationError(f"No backups found in {self.directory}")
            source = existing[-1]

        if not source.is_file():
            raise ValidationError(f"Backup not found: {source}")

        shutil.copy2(source, self.path)
        logger.info(f"Restored {self.path} from {source}")
        return source
