from __future__ import annotations

import glob
import logging
import os
from pathlib import Path
from typing import Optional

from shotmatrix.constants import PLATFORM_FOLDERS
from shotmatrix.errors import BuildRequiredError
from shotmatrix.schemas import BuildConfig, Platform
from shotmatrix.services.interfaces import BuildResolver

LOGGER = logging.getLogger("shotmatrix.artifacts")


class OutputLayout:
    """Resolve on-disk locations for screenshots and diagnostics of a run."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    @staticmethod
    def ensure_dir(path: Path) -> Path:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def job_dir(self, platform: Platform, folder: str, language: str) -> Path:
        return self._root / PLATFORM_FOLDERS[platform.value] / folder / language

    @staticmethod
    def failure_dir(output_dir: Path, artifacts_dir: str) -> Path:
        return OutputLayout.ensure_dir(Path(output_dir) / artifacts_dir)


class GlobArtifactResolver(BuildResolver):
    """Find previously built app bundles via the per-platform ``artifact_glob``."""

    def __init__(self, build_config: BuildConfig, base_dir: Optional[Path] = None) -> None:
        self._build_config = build_config
        self._base_dir = Path(base_dir) if base_dir else Path.cwd()

    def resolve_artifact(self, platform: Platform, override_path: Optional[str] = None) -> Optional[str]:
        if override_path:
            candidate = Path(override_path)
            if not candidate.is_absolute():
                candidate = self._base_dir / candidate
            if not candidate.exists():
                raise BuildRequiredError(platform.value, f"{override_path} does not exist")
            return str(candidate)

        settings = self._build_config.for_platform(platform)
        if settings is None or not settings.artifact_glob:
            LOGGER.debug("No artifact_glob configured for %s", platform.value)
            return None

        pattern = settings.artifact_glob
        if not os.path.isabs(pattern):
            pattern = str(self._base_dir / pattern)
        matches = glob.glob(pattern, recursive=True)
        if not matches:
            LOGGER.debug("Pattern %s matched no %s artifacts", pattern, platform.value)
            return None
        newest = max(matches, key=os.path.getmtime)
        LOGGER.info("Resolved %s artifact %s (%d candidates)", platform.value, newest, len(matches))
        return newest
