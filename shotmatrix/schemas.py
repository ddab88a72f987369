from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from shotmatrix.constants import (
    DEFAULT_BASE_PORT,
    DEFAULT_DEVICE_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_DISMISSOR_DELAY_SECONDS,
    DEFAULT_DISMISSOR_TIMEOUT_SECONDS,
    DEFAULT_ELEMENT_TIMEOUT_SECONDS,
    DEFAULT_FAILURE_ARTIFACTS_DIR,
    DEFAULT_ORIENTATION_SETTLE_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PORT_OFFSET,
    DEFAULT_WAIT_SECONDS,
)

_IOS_VERSION = re.compile(r"^\d+(\.\d+){0,2}$")
_ANDROID_VERSION = re.compile(r"^\d+$")


class Platform(str, Enum):
    ios = "ios"
    android = "android"


# Configuration -------------------------------------------------------------------
class Selector(BaseModel):
    accessibility_id: Optional[str] = None
    id: Optional[str] = None
    ios_class_chain: Optional[str] = None
    android_uiautomator: Optional[str] = None
    xpath: Optional[str] = None

    @field_validator("xpath")
    @classmethod
    def validate_xpath(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("/", "(")):
            raise ValueError("XPath selectors must start with '/' or '('.")
        return value

    @model_validator(mode="after")
    def require_strategy(self) -> "Selector":
        if not self.strategies():
            raise ValueError("Selector needs at least one locator strategy.")
        return self

    def strategies(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for key in ("accessibility_id", "id", "ios_class_chain", "android_uiautomator", "xpath"):
            value = getattr(self, key)
            if value:
                pairs.append((key, value))
        return pairs

    def describe(self) -> str:
        return ", ".join(f"{key}={value}" for key, value in self.strategies())


class IosDevice(BaseModel):
    name: str
    udid: Optional[str] = None
    folder: str
    platform_version: str

    @field_validator("platform_version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        if not _IOS_VERSION.match(value):
            raise ValueError("iOS platform_version must look like '18.5'.")
        return value


class AndroidDevice(BaseModel):
    name: str
    avd: str
    folder: str
    platform_version: str

    @field_validator("platform_version", mode="before")
    @classmethod
    def validate_version(cls, value: Any) -> str:
        value = str(value)
        if not _ANDROID_VERSION.match(value):
            raise ValueError("Android platform_version must be an API level such as '34'.")
        return value

    @field_validator("avd")
    @classmethod
    def validate_avd(cls, value: str) -> str:
        if not value or " " in value:
            raise ValueError("AVD names may not be empty or contain spaces.")
        return value


Device = Union[IosDevice, AndroidDevice]


class DeviceSets(BaseModel):
    ios: List[IosDevice] = Field(default_factory=list)
    android: List[AndroidDevice] = Field(default_factory=list)

    def for_platform(self, platform: Platform) -> List[Device]:
        return list(self.ios) if platform == Platform.ios else list(self.android)


class LocaleMapping(BaseModel):
    ios: str
    android: str

    def for_platform(self, platform: Platform) -> str:
        return self.ios if platform == Platform.ios else self.android


class WaitAction(BaseModel):
    seconds: float = Field(default=DEFAULT_WAIT_SECONDS, ge=0)


class WaitForAction(BaseModel):
    selector: Selector
    timeout: Optional[float] = Field(default=None, gt=0)


class CaptureAction(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or "/" in cleaned or "\\" in cleaned:
            raise ValueError("Capture names must be non-empty and contain no path separators.")
        return cleaned


class PlanAction(BaseModel):
    """One step of a screenshot plan; exactly one key is set."""

    tap: Optional[Selector] = None
    wait: Optional[WaitAction] = None
    wait_for: Optional[WaitForAction] = None
    capture: Optional[CaptureAction] = None

    @model_validator(mode="after")
    def require_single_kind(self) -> "PlanAction":
        present = [key for key in ("tap", "wait", "wait_for", "capture") if getattr(self, key) is not None]
        if len(present) != 1:
            raise ValueError("Each action must define exactly one of tap, wait, wait_for, capture.")
        return self

    @property
    def kind(self) -> str:
        for key in ("tap", "wait", "wait_for", "capture"):
            if getattr(self, key) is not None:
                return key
        raise AssertionError("unreachable")


class PlatformSelectors(BaseModel):
    ios: Optional[Selector] = None
    android: Optional[Selector] = None

    def for_platform(self, platform: Platform) -> Optional[Selector]:
        return self.ios if platform == Platform.ios else self.android


class PlatformDismissors(BaseModel):
    ios: List[Selector] = Field(default_factory=list)
    android: List[Selector] = Field(default_factory=list)

    def for_platform(self, platform: Platform) -> List[Selector]:
        return list(self.ios) if platform == Platform.ios else list(self.android)


class ScreenshotPlan(BaseModel):
    name: str
    orientation: Optional[str] = None
    actions: List[PlanAction] = Field(default_factory=list)
    assertion: Optional[PlatformSelectors] = Field(default=None, alias="assert")
    dismissors: Optional[PlatformDismissors] = None

    model_config = {"populate_by_name": True}


class PlatformBuild(BaseModel):
    artifact_glob: Optional[str] = None
    package: Optional[str] = None


class BuildConfig(BaseModel):
    ios: Optional[PlatformBuild] = None
    android: Optional[PlatformBuild] = None

    def for_platform(self, platform: Platform) -> Optional[PlatformBuild]:
        return self.ios if platform == Platform.ios else self.android


class PortSettings(BaseModel):
    base_port: int = DEFAULT_BASE_PORT
    port_offset: int = DEFAULT_PORT_OFFSET


class Timeouts(BaseModel):
    element_seconds: float = Field(default=DEFAULT_ELEMENT_TIMEOUT_SECONDS, gt=0)
    dismissor_seconds: float = Field(default=DEFAULT_DISMISSOR_TIMEOUT_SECONDS, gt=0)
    dismissor_delay_seconds: float = Field(default=DEFAULT_DISMISSOR_DELAY_SECONDS, ge=0)
    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    orientation_settle_seconds: float = Field(default=DEFAULT_ORIENTATION_SETTLE_SECONDS, ge=0)
    device_operation_seconds: float = Field(default=DEFAULT_DEVICE_OPERATION_TIMEOUT_SECONDS, gt=0)


class AppResetPolicy(str, Enum):
    none = "none"
    clear_data_on_language_change = "clear_data_on_language_change"
    always_reinstall = "always_reinstall"


class AppReset(BaseModel):
    policy: AppResetPolicy = AppResetPolicy.none


class FailureArtifactSettings(BaseModel):
    save_page_source: bool = True
    save_screenshot: bool = True
    save_device_logs: bool = True
    artifacts_dir: str = DEFAULT_FAILURE_ARTIFACTS_DIR


class IosStatusBar(BaseModel):
    time: Optional[str] = "9:41"
    wifi_bars: Optional[int] = Field(default=3, ge=0, le=3)
    cellular_bars: Optional[int] = Field(default=4, ge=0, le=4)
    battery_state: Optional[str] = "charged"


class AndroidStatusBar(BaseModel):
    demo_mode: bool = True
    clock: Optional[str] = "0941"
    battery: Optional[int] = Field(default=100, ge=0, le=100)
    wifi: Optional[str] = "4"
    notifications: bool = False


class StatusBar(BaseModel):
    ios: Optional[IosStatusBar] = None
    android: Optional[AndroidStatusBar] = None


class ExpectedSize(BaseModel):
    portrait: Optional[Tuple[int, int]] = None
    landscape: Optional[Tuple[int, int]] = None


class PlatformExpectedSizes(BaseModel):
    ios: Dict[str, ExpectedSize] = Field(default_factory=dict)
    android: Dict[str, ExpectedSize] = Field(default_factory=dict)

    def for_platform(self, platform: Platform) -> Dict[str, ExpectedSize]:
        return self.ios if platform == Platform.ios else self.android


class ValidationSettings(BaseModel):
    enforce_image_size: bool = False
    expected_sizes: PlatformExpectedSizes = Field(default_factory=PlatformExpectedSizes)


class CapabilityExtensions(BaseModel):
    ios: Dict[str, Any] = Field(default_factory=dict)
    android: Dict[str, Any] = Field(default_factory=dict)


class RunConfig(BaseModel):
    devices: DeviceSets
    languages: List[str]
    locale_mapping: Dict[str, LocaleMapping] = Field(default_factory=dict)
    screenshots: List[ScreenshotPlan]
    build_config: BuildConfig = Field(default_factory=BuildConfig)
    ports: PortSettings = Field(default_factory=PortSettings)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    app_reset: AppReset = Field(default_factory=AppReset)
    failure_artifacts: FailureArtifactSettings = Field(default_factory=FailureArtifactSettings)
    status_bar: StatusBar = Field(default_factory=StatusBar)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    capabilities: CapabilityExtensions = Field(default_factory=CapabilityExtensions)
    dismissors: PlatformDismissors = Field(default_factory=PlatformDismissors)

    @field_validator("languages")
    @classmethod
    def validate_languages(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if len({item.lower() for item in cleaned}) != len(cleaned):
            raise ValueError("Languages must be unique.")
        return cleaned

    @model_validator(mode="after")
    def validate_unique_folders(self) -> "RunConfig":
        seen: Dict[str, str] = {}
        for device in [*self.devices.ios, *self.devices.android]:
            if device.folder in seen:
                raise ValueError(
                    f"Device folder '{device.folder}' is used by both {seen[device.folder]} and {device.name}."
                )
            seen[device.folder] = device.name
        names = [plan.name for plan in self.screenshots]
        if len(set(names)) != len(names):
            raise ValueError("Screenshot plan names must be unique.")
        return self


class RunOverrides(BaseModel):
    ios_app_path: Optional[str] = None
    android_app_path: Optional[str] = None
    server_url: Optional[str] = None
    base_port: Optional[int] = None
    max_parallel: Optional[int] = Field(default=None, ge=1)

    def app_path(self, platform: Platform) -> Optional[str]:
        return self.ios_app_path if platform == Platform.ios else self.android_app_path


def load_config(path: Union[str, Path]) -> RunConfig:
    """Read a JSON configuration document into a validated ``RunConfig``."""
    return RunConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))


# Results -------------------------------------------------------------------------
class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"
    cancelled = "cancelled"


class JobPhase(str, Enum):
    pending = "pending"
    provisioning = "provisioning"
    executing = "executing"
    validating = "validating"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class FailureArtifactKind(str, Enum):
    page_source = "page_source"
    screenshot = "screenshot"
    device_logs = "device_logs"


class ScreenshotResult(BaseModel):
    name: str
    language: str
    orientation: Optional[str] = None
    path: str
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: int = 0
    captured_at: str
    success: bool = True
    error: Optional[str] = None


class FailureArtifact(BaseModel):
    kind: FailureArtifactKind
    path: str
    captured_at: str
    size_bytes: int = 0


class JobResult(BaseModel):
    index: int
    job_id: str
    platform: Platform
    device: str
    folder: str
    language: str
    output_dir: str
    status: JobStatus = JobStatus.pending
    phases: List[JobPhase] = Field(default_factory=lambda: [JobPhase.pending])
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    screenshots: List[ScreenshotResult] = Field(default_factory=list)
    artifacts: List[FailureArtifact] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    log_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def phase(self) -> JobPhase:
        return self.phases[-1]

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.success


class RunStatus(str, Enum):
    success = "success"
    partial_success = "partial_success"
    failed = "failed"
    cancelled = "cancelled"


class RunSummary(BaseModel):
    total_jobs: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    platforms: List[str] = Field(default_factory=list)
    devices: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    screenshots: int = 0


class EnvironmentInfo(BaseModel):
    os: str
    python_version: str
    hostname: str
    working_directory: str
    version: str
    config_hash: Optional[str] = None


class RunResult(BaseModel):
    run_id: str
    started_at: str
    ended_at: str
    duration_seconds: float
    success: bool
    status: RunStatus
    summary: RunSummary
    jobs: List[JobResult]
    environment: EnvironmentInfo
    output_root: str
    error_message: Optional[str] = None

    model_config = {"frozen": True}

    def failed_jobs(self) -> List[JobResult]:
        return [job for job in self.jobs if job.status != JobStatus.success]


# API payloads --------------------------------------------------------------------
class PlanRequest(BaseModel):
    config: RunConfig
    output_root: str = "Screenshots"
    platforms: Optional[List[str]] = None
    devices: Optional[List[str]] = None
    languages: Optional[List[str]] = None
    screenshots: Optional[List[str]] = None
    overrides: RunOverrides = Field(default_factory=RunOverrides)


class PlannedJob(BaseModel):
    index: int
    job_id: str
    platform: Platform
    device: str
    folder: str
    language: str
    locale: str
    output_dir: str
    automation_port: int
    aux_port: int
    app_path: str
    screenshots: List[str]


class PlanView(BaseModel):
    total_jobs: int
    total_platforms: int
    total_devices: int
    total_languages: int
    total_screenshots: int
    estimated_duration_minutes: float
    jobs: List[PlannedJob]


class RunState(str, Enum):
    queued = "queued"
    running = "running"
    finished = "finished"
    failed = "failed"
    cancelled = "cancelled"


class RunRecord(BaseModel):
    id: str
    state: RunState
    output_root: str
    total_jobs: int
    completed_jobs: int = 0
    created_at: str
    updated_at: str
    note: Optional[str] = None
    result: Optional[RunResult] = None

    model_config = {"from_attributes": True}
