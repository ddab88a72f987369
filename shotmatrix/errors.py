"""Exception hierarchy for planning and executing screenshot runs."""

from __future__ import annotations

from typing import Optional


class ShotmatrixError(Exception):
    """Base exception for all run planning and execution errors."""


class ConfigurationError(ShotmatrixError):
    """Raised before any job starts when the configuration or filters are unusable."""


class PortRangeError(ConfigurationError):
    """Raised when a base port or offset produces ports outside the TCP range."""

    def __init__(self, message: str, *, port: Optional[int] = None) -> None:
        self.port = port
        super().__init__(message)


class BuildRequiredError(ConfigurationError):
    """Raised when no application artifact can be resolved for a platform."""

    def __init__(self, platform: str, detail: Optional[str] = None) -> None:
        self.platform = platform
        message = f"No {platform} application artifact available; build the app or pass an explicit path"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class JobError(ShotmatrixError):
    """Raised for failures scoped to a single job."""

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        self.detail = message
        super().__init__(f"{job_id}: {message}")


class ProvisioningError(JobError):
    """Raised when booting, localizing or installing onto a device fails."""

    def __init__(self, job_id: str, step: str, cause: Optional[BaseException] = None) -> None:
        self.step = step
        self.cause = cause
        message = f"provisioning failed during {step}"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(job_id, message)


class ActionError(JobError):
    """Raised when a screenshot plan action cannot be completed."""


class ElementNotFoundError(ActionError):
    def __init__(self, job_id: str, selector: str) -> None:
        self.selector = selector
        super().__init__(job_id, f"element not found: {selector}")


class ActionTimeoutError(ActionError):
    def __init__(self, job_id: str, selector: str, timeout: float) -> None:
        self.selector = selector
        self.timeout = timeout
        super().__init__(job_id, f"timed out after {timeout:g}s waiting for {selector}")


class ScreenshotValidationError(JobError):
    """Raised when an enforced image dimension check fails."""

    def __init__(self, job_id: str, name: str, actual: tuple, expected: tuple) -> None:
        self.name = name
        self.actual = actual
        self.expected = expected
        super().__init__(
            job_id,
            f"screenshot {name} is {actual[0]}x{actual[1]}, expected {expected[0]}x{expected[1]}",
        )


class TeardownError(JobError):
    """Teardown failures are logged against the job and never change its status."""


class JobCancelledError(JobError):
    """Raised at a suspension point once the shared cancellation token trips."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id, "cancelled")
