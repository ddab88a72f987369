from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from shotmatrix.constants import DEFAULT_DEVICE_POLL_SECONDS
from shotmatrix.errors import JobError, ProvisioningError
from shotmatrix.schemas import AppResetPolicy, Platform, RunConfig, ScreenshotPlan, Selector
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.interfaces import DeviceDriver
from shotmatrix.services.planning import RunJob

LOGGER = logging.getLogger("shotmatrix.platforms")


class IosCapabilities(BaseModel):
    platform: Literal["ios"] = "ios"
    device_name: str
    udid: str
    platform_version: str
    app: str
    language: str
    locale: str
    wda_local_port: int
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "platformName": "iOS",
            "appium:automationName": "XCUITest",
            "appium:deviceName": self.device_name,
            "appium:udid": self.udid,
            "appium:platformVersion": self.platform_version,
            "appium:app": self.app,
            "appium:language": self.language,
            "appium:locale": self.locale,
            "appium:wdaLocalPort": self.wda_local_port,
            "appium:noReset": True,
            "appium:autoAcceptAlerts": True,
            "appium:newCommandTimeout": 300,
        }
        payload.update(self.extra)
        return payload


class AndroidCapabilities(BaseModel):
    platform: Literal["android"] = "android"
    device_name: str
    avd: str
    serial: str
    platform_version: str
    app: str
    language: str
    locale: str
    system_port: int
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "platformName": "Android",
            "appium:automationName": "UiAutomator2",
            "appium:deviceName": self.device_name,
            "appium:avd": self.avd,
            "appium:udid": self.serial,
            "appium:platformVersion": self.platform_version,
            "appium:app": self.app,
            "appium:language": self.language,
            "appium:locale": self.locale,
            "appium:systemPort": self.system_port,
            "appium:noReset": True,
            "appium:autoGrantPermissions": True,
            "appium:newCommandTimeout": 300,
        }
        payload.update(self.extra)
        return payload


Capabilities = Union[IosCapabilities, AndroidCapabilities]


class LanguageLedger:
    """Last language provisioned onto each device, shared across a run."""

    def __init__(self) -> None:
        self._languages: Dict[str, str] = {}
        self._lock = threading.Lock()

    def swap(self, device_key: str, language: str) -> Optional[str]:
        with self._lock:
            previous = self._languages.get(device_key)
            self._languages[device_key] = language
            return previous


class PlatformHandler:
    """Platform-specific provisioning and capture for one job."""

    platform: Platform

    def __init__(
        self,
        job: RunJob,
        config: RunConfig,
        driver: DeviceDriver,
        token: CancellationToken,
        *,
        poll_interval: float = DEFAULT_DEVICE_POLL_SECONDS,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.job = job
        self.config = config
        self.driver = driver
        self._token = token
        self._poll_interval = poll_interval
        self._log = log or (lambda message: None)

    @property
    def target(self) -> str:
        raise NotImplementedError

    @property
    def bundle_id(self) -> Optional[str]:
        settings = self.config.build_config.for_platform(self.platform)
        return settings.package if settings else None

    def run_step(self, step: str, func: Callable[..., Any], *args: Any) -> Any:
        self._token.raise_if_cancelled(self.job.job_id)
        self._log(f"Provisioning step: {step}")
        try:
            return func(*args)
        except JobError:
            raise
        except Exception as exc:
            raise ProvisioningError(self.job.job_id, step, exc) from exc

    def _wait_until_ready(self, device_id: str) -> None:
        deadline = time.monotonic() + self.config.timeouts.device_operation_seconds
        while True:
            self._token.raise_if_cancelled(self.job.job_id)
            try:
                ready = self.driver.is_ready(device_id)
            except Exception as exc:
                raise ProvisioningError(self.job.job_id, "wait for boot", exc) from exc
            if ready:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisioningError(
                    self.job.job_id,
                    "wait for boot",
                    TimeoutError(
                        f"{device_id} not ready after {self.config.timeouts.device_operation_seconds:g}s"
                    ),
                )
            self._token.wait(min(self._poll_interval, remaining))

    def boot(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def prepare(self, device_id: str, ledger: LanguageLedger) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def status_bar_settings(self) -> Optional[Dict[str, Any]]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def capabilities(self, device_id: str) -> Capabilities:  # pragma: no cover - interface stub
        raise NotImplementedError

    def _install_and_reset(self, device_id: str, ledger: LanguageLedger) -> None:
        policy = self.config.app_reset.policy
        bundle = self.bundle_id
        if policy != AppResetPolicy.none and not bundle:
            LOGGER.warning(
                "App reset policy %s ignored for %s: build_config.%s.package is not set",
                policy.value,
                self.job.job_id,
                self.platform.value,
            )
        if policy == AppResetPolicy.always_reinstall and bundle:
            try:
                self.driver.uninstall_app(device_id, bundle)
            except Exception as exc:
                LOGGER.debug("Uninstall of %s on %s skipped: %s", bundle, device_id, exc)
        self.run_step("install app", self.driver.install_app, device_id, self.job.app_path)
        previous = ledger.swap(self.job.device_key, self.job.language)
        if (
            policy == AppResetPolicy.clear_data_on_language_change
            and bundle
            and previous is not None
            and previous != self.job.language
        ):
            self.run_step("reset app data", self.driver.reset_app_data, device_id, bundle)

    def dismissors_for(self, plan: ScreenshotPlan) -> List[Selector]:
        if plan.dismissors is not None:
            return plan.dismissors.for_platform(self.platform)
        return self.config.dismissors.for_platform(self.platform)

    def assertion_for(self, plan: ScreenshotPlan) -> Optional[Selector]:
        if plan.assertion is None:
            return None
        return plan.assertion.for_platform(self.platform)

    def expected_size(self, orientation: Optional[str]) -> Optional[Tuple[int, int]]:
        sizes = self.config.validation.expected_sizes.for_platform(self.platform).get(self.job.folder)
        if sizes is None:
            return None
        if (orientation or "portrait").lower() == "landscape":
            return sizes.landscape
        return sizes.portrait

    def screenshot(self, device_id: str) -> bytes:
        return self.driver.screenshot(device_id)

    def device_logs(self, device_id: str) -> str:
        return self.driver.device_logs(device_id)


class IosPlatform(PlatformHandler):
    platform = Platform.ios

    @property
    def target(self) -> str:
        device = self.job.ios_device
        return device.udid or device.name

    def boot(self) -> str:
        # Simulator language preferences are only picked up on a cold boot.
        try:
            self.driver.shutdown(self.target)
        except Exception as exc:
            LOGGER.debug("Pre-boot shutdown of %s ignored: %s", self.target, exc)
        self.run_step("set locale", self.driver.set_locale, self.target, self.job.language, self.job.platform_locale)
        device_id = self.run_step("boot", self.driver.boot, self.target) or self.target
        self._wait_until_ready(device_id)
        return device_id

    def prepare(self, device_id: str, ledger: LanguageLedger) -> None:
        settings = self.status_bar_settings()
        if settings:
            self.run_step("status bar", self.driver.set_status_bar, device_id, settings)
        self._install_and_reset(device_id, ledger)

    def status_bar_settings(self) -> Optional[Dict[str, Any]]:
        if self.config.status_bar.ios is None:
            return None
        return self.config.status_bar.ios.model_dump(exclude_none=True)

    def capabilities(self, device_id: str) -> IosCapabilities:
        device = self.job.ios_device
        return IosCapabilities(
            device_name=device.name,
            udid=device_id,
            platform_version=device.platform_version,
            app=self.job.app_path,
            language=self.job.platform_locale,
            locale=self.job.platform_locale,
            wda_local_port=self.job.ports.ios_aux_port,
            extra=dict(self.config.capabilities.ios),
        )


class AndroidPlatform(PlatformHandler):
    platform = Platform.android

    @property
    def target(self) -> str:
        return self.job.android_device.avd

    def boot(self) -> str:
        device_id = self.run_step("boot", self.driver.boot, self.target)
        if not device_id:
            raise ProvisioningError(self.job.job_id, "boot", RuntimeError(f"emulator {self.target} reported no serial"))
        self._wait_until_ready(device_id)
        return device_id

    def prepare(self, device_id: str, ledger: LanguageLedger) -> None:
        self.run_step("set locale", self.driver.set_locale, device_id, self.job.language, self.job.platform_locale)
        settings = self.status_bar_settings()
        if settings:
            self.run_step("demo mode", self.driver.set_status_bar, device_id, settings)
        self._install_and_reset(device_id, ledger)

    def status_bar_settings(self) -> Optional[Dict[str, Any]]:
        settings = self.config.status_bar.android
        if settings is None or not settings.demo_mode:
            return None
        return settings.model_dump(exclude_none=True)

    def capabilities(self, device_id: str) -> AndroidCapabilities:
        device = self.job.android_device
        return AndroidCapabilities(
            device_name=device.name,
            avd=device.avd,
            serial=device_id,
            platform_version=device.platform_version,
            app=self.job.app_path,
            language=self.job.language,
            locale=self.job.platform_locale,
            system_port=self.job.ports.android_aux_port,
            extra=dict(self.config.capabilities.android),
        )


def platform_for(
    job: RunJob,
    config: RunConfig,
    driver: DeviceDriver,
    token: CancellationToken,
    **kwargs: Any,
) -> PlatformHandler:
    handler_cls = IosPlatform if job.platform == Platform.ios else AndroidPlatform
    return handler_cls(job, config, driver, token, **kwargs)
