from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from PIL import Image

from shotmatrix.errors import ScreenshotValidationError
from shotmatrix.schemas import ScreenshotResult
from shotmatrix.services.interfaces import ImageInspector

LOGGER = logging.getLogger("shotmatrix.validation")


class PillowImageInspector(ImageInspector):
    def dimensions(self, path: str) -> Tuple[int, int]:
        with Image.open(path) as image:
            return image.size


class ImageValidator:
    """Compare captured screenshot sizes with the configured device dimensions."""

    def __init__(self, inspector: Optional[ImageInspector] = None, *, enforce: bool = False) -> None:
        self._inspector = inspector or PillowImageInspector()
        self._enforce = enforce
        self.warnings: List[str] = []
        self.errors: List[ScreenshotValidationError] = []

    def check(
        self,
        job_id: str,
        screenshot: ScreenshotResult,
        expected: Optional[Tuple[int, int]],
    ) -> ScreenshotResult:
        try:
            width, height = self._inspector.dimensions(screenshot.path)
        except Exception as exc:
            message = f"Could not read dimensions of {screenshot.name}: {exc}"
            LOGGER.warning("%s: %s", job_id, message)
            self.warnings.append(message)
            return screenshot.model_copy(update={"error": message})

        update = {"width": width, "height": height}
        if expected is not None and (width, height) != tuple(expected):
            error = ScreenshotValidationError(job_id, screenshot.name, (width, height), tuple(expected))
            if self._enforce:
                self.errors.append(error)
                update.update({"success": False, "error": error.detail})
            else:
                LOGGER.warning("%s: %s", job_id, error.detail)
                self.warnings.append(error.detail)
        return screenshot.model_copy(update=update)
