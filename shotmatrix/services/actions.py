from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from shotmatrix.errors import (
    ActionError,
    ActionTimeoutError,
    ElementNotFoundError,
    JobCancelledError,
    JobError,
)
from shotmatrix.schemas import PlanAction, ScreenshotPlan, ScreenshotResult, Selector, Timeouts
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.interfaces import AutomationProvider
from shotmatrix.services.platforms import PlatformHandler

LOGGER = logging.getLogger("shotmatrix.actions")

ORIENTATIONS = ("portrait", "landscape")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class ActionRunner:
    """Drive the screenshot plans of one job against a live automation session."""

    def __init__(
        self,
        handler: PlatformHandler,
        automation: AutomationProvider,
        session: object,
        device_id: str,
        token: CancellationToken,
        timeouts: Timeouts,
        *,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._handler = handler
        self._job = handler.job
        self._automation = automation
        self._session = session
        self._device_id = device_id
        self._token = token
        self._timeouts = timeouts
        self._log = log or (lambda message: None)
        self.screenshots: List[ScreenshotResult] = []
        self.warnings: List[str] = []

    def run(self) -> List[ScreenshotResult]:
        for plan in self._job.screenshots:
            self.run_plan(plan)
        return self.screenshots

    def run_plan(self, plan: ScreenshotPlan) -> None:
        self._log(f"Screenshot plan {plan.name}: {len(plan.actions)} actions")
        orientation = self._apply_orientation(plan)
        self._run_dismissors(plan)
        for action in plan.actions:
            self._token.raise_if_cancelled(self._job.job_id)
            self._run_action(action, orientation)
        self._check_assertion(plan)

    def _sleep(self, seconds: float) -> None:
        if self._token.wait(seconds):
            raise JobCancelledError(self._job.job_id)

    def _poll_for(self, selector: Selector, timeout: float) -> Optional[object]:
        deadline = time.monotonic() + timeout
        while True:
            self._token.raise_if_cancelled(self._job.job_id)
            try:
                element = self._automation.find_element(self._session, selector)
            except Exception as exc:
                raise ActionError(self._job.job_id, f"lookup of {selector.describe()} failed: {exc}") from exc
            if element is not None:
                return element
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._sleep(min(self._timeouts.poll_interval_seconds, remaining))

    def _apply_orientation(self, plan: ScreenshotPlan) -> Optional[str]:
        if not plan.orientation:
            return None
        orientation = plan.orientation.strip().lower()
        if orientation not in ORIENTATIONS:
            raise ActionError(
                self._job.job_id,
                f"invalid orientation '{plan.orientation}' in plan {plan.name}; expected portrait or landscape",
            )
        try:
            self._automation.set_orientation(self._session, orientation)
        except Exception as exc:
            raise ActionError(self._job.job_id, f"could not set orientation {orientation}: {exc}") from exc
        self._sleep(self._timeouts.orientation_settle_seconds)
        return orientation

    def _run_dismissors(self, plan: ScreenshotPlan) -> None:
        for selector in self._handler.dismissors_for(plan):
            try:
                element = self._poll_for(selector, self._timeouts.dismissor_seconds)
                if element is None:
                    LOGGER.debug("%s: dismissor %s not present", self._job.job_id, selector.describe())
                    continue
                self._automation.click(self._session, element)
                self._log(f"Dismissed popup via {selector.describe()}")
            except JobCancelledError:
                raise
            except Exception as exc:
                LOGGER.debug("%s: dismissor %s failed: %s", self._job.job_id, selector.describe(), exc)
                continue
            self._sleep(self._timeouts.dismissor_delay_seconds)

    def _run_action(self, action: PlanAction, orientation: Optional[str]) -> None:
        kind = action.kind
        if kind == "tap":
            element = self._poll_for(action.tap, self._timeouts.element_seconds)
            if element is None:
                raise ElementNotFoundError(self._job.job_id, action.tap.describe())
            try:
                self._automation.click(self._session, element)
            except Exception as exc:
                raise ActionError(self._job.job_id, f"tap on {action.tap.describe()} failed: {exc}") from exc
            self._log(f"Tapped {action.tap.describe()}")
        elif kind == "wait":
            self._sleep(action.wait.seconds)
        elif kind == "wait_for":
            timeout = action.wait_for.timeout or self._timeouts.element_seconds
            if self._poll_for(action.wait_for.selector, timeout) is None:
                raise ActionTimeoutError(self._job.job_id, action.wait_for.selector.describe(), timeout)
        elif kind == "capture":
            self._capture(action.capture.name, orientation)

    def _capture(self, name: str, orientation: Optional[str]) -> None:
        filename = f"{name}_{self._job.language}.png"
        path = Path(self._job.output_dir) / filename
        try:
            data = self._handler.screenshot(self._device_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except JobError:
            raise
        except Exception as exc:
            raise ActionError(self._job.job_id, f"capture {name} failed: {exc}") from exc
        self.screenshots.append(
            ScreenshotResult(
                name=name,
                language=self._job.language,
                orientation=orientation,
                path=str(path),
                size_bytes=len(data),
                captured_at=_utcnow(),
            )
        )
        self._log(f"Captured {filename} ({len(data)} bytes)")

    def _check_assertion(self, plan: ScreenshotPlan) -> None:
        selector = self._handler.assertion_for(plan)
        if selector is None:
            return
        try:
            if self._poll_for(selector, self._timeouts.element_seconds) is not None:
                return
            message = f"Assertion {selector.describe()} not met after plan {plan.name}"
        except ActionError as exc:
            message = f"Assertion {selector.describe()} could not be checked after plan {plan.name}: {exc.detail}"
        LOGGER.warning("%s: %s", self._job.job_id, message)
        self._log(f"WARNING {message}")
        self.warnings.append(message)
