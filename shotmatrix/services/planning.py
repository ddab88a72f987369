from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from shotmatrix.constants import ESTIMATED_MINUTES_PER_JOB
from shotmatrix.errors import BuildRequiredError, ConfigurationError
from shotmatrix.schemas import (
    AndroidDevice,
    Device,
    IosDevice,
    LocaleMapping,
    Platform,
    PlannedJob,
    PlanView,
    RunConfig,
    RunOverrides,
    ScreenshotPlan,
)
from shotmatrix.services.artifacts import OutputLayout
from shotmatrix.services.interfaces import BuildResolver
from shotmatrix.services.ports import PortAllocation, PortAllocator

LOGGER = logging.getLogger("shotmatrix.planning")

PLATFORM_ORDER = (Platform.ios, Platform.android)


@dataclass(frozen=True)
class RunJob:
    index: int
    platform: Platform
    language: str
    locale: LocaleMapping
    screenshots: Tuple[ScreenshotPlan, ...]
    output_dir: Path
    ports: PortAllocation
    app_path: str
    ios_device: Optional[IosDevice] = None
    android_device: Optional[AndroidDevice] = None

    def __post_init__(self) -> None:
        if self.platform == Platform.ios:
            valid = self.ios_device is not None and self.android_device is None
        else:
            valid = self.android_device is not None and self.ios_device is None
        if not valid:
            raise ValueError(f"Job {self.index} must carry exactly one {self.platform.value} device")

    @property
    def job_id(self) -> str:
        return f"job-{self.index}"

    @property
    def device(self) -> Device:
        return self.ios_device if self.platform == Platform.ios else self.android_device  # type: ignore[return-value]

    @property
    def device_name(self) -> str:
        return self.device.name

    @property
    def folder(self) -> str:
        return self.device.folder

    @property
    def device_key(self) -> str:
        """Identity of the physical simulator/emulator the job occupies."""
        return f"{self.platform.value}:{self.folder}"

    @property
    def platform_locale(self) -> str:
        return self.locale.for_platform(self.platform)

    @property
    def aux_port(self) -> int:
        return self.ports.aux_port(self.platform)


@dataclass(frozen=True)
class RunPlan:
    jobs: Tuple[RunJob, ...]
    output_root: Path
    total_platforms: int
    total_devices: int
    total_languages: int
    total_screenshots: int
    estimated_duration_minutes: float
    artifact_paths: Dict[Platform, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.jobs)

    def __iter__(self) -> Iterator[RunJob]:
        return iter(self.jobs)

    def to_view(self) -> PlanView:
        return PlanView(
            total_jobs=len(self.jobs),
            total_platforms=self.total_platforms,
            total_devices=self.total_devices,
            total_languages=self.total_languages,
            total_screenshots=self.total_screenshots,
            estimated_duration_minutes=self.estimated_duration_minutes,
            jobs=[
                PlannedJob(
                    index=job.index,
                    job_id=job.job_id,
                    platform=job.platform,
                    device=job.device_name,
                    folder=job.folder,
                    language=job.language,
                    locale=job.platform_locale,
                    output_dir=str(job.output_dir),
                    automation_port=job.ports.automation_port,
                    aux_port=job.aux_port,
                    app_path=job.app_path,
                    screenshots=[plan.name for plan in job.screenshots],
                )
                for job in self.jobs
            ],
        )


def _normalize_filter(values: Optional[Sequence[str]]) -> Optional[List[str]]:
    if not values:
        return None
    cleaned = [value.strip().lower() for value in values if value and value.strip()]
    return cleaned or None


class RunPlanBuilder:
    """Expand a configuration and allow-list filters into an ordered job list."""

    def build(
        self,
        config: RunConfig,
        output_root: Union[str, Path],
        *,
        platforms: Optional[Sequence[str]] = None,
        devices: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
        screenshots: Optional[Sequence[str]] = None,
        port_allocator: Optional[PortAllocator] = None,
        overrides: Optional[RunOverrides] = None,
        resolver: Optional[BuildResolver] = None,
    ) -> RunPlan:
        overrides = overrides or RunOverrides()
        layout = OutputLayout(Path(output_root))
        if port_allocator is None:
            port_allocator = PortAllocator(
                overrides.base_port if overrides.base_port is not None else config.ports.base_port,
                config.ports.port_offset,
            )

        LOGGER.info(
            "Building run plan (platforms=%s devices=%s languages=%s screenshots=%s)",
            ",".join(platforms) if platforms else "all",
            ",".join(devices) if devices else "all",
            ",".join(languages) if languages else "all",
            ",".join(screenshots) if screenshots else "all",
        )

        selected_platforms = self._select_platforms(platforms)
        selected_languages = self._select_languages(config, languages)
        selected_plans = self._select_screenshots(config, screenshots)
        device_filter = _normalize_filter(devices)

        combos: List[Tuple[Platform, str, Device]] = []
        for platform in selected_platforms:
            platform_devices = [
                device
                for device in config.devices.for_platform(platform)
                if device_filter is None
                or device.name.lower() in device_filter
                or device.folder.lower() in device_filter
            ]
            for language in selected_languages:
                for device in platform_devices:
                    combos.append((platform, language, device))

        if not combos:
            raise ConfigurationError("No jobs match the supplied platform, device and language filters")

        missing = [language for language in selected_languages if language not in config.locale_mapping]
        if missing:
            raise ConfigurationError(f"No locale mapping for language(s): {', '.join(missing)}")

        artifact_paths: Dict[Platform, str] = {}
        for platform in PLATFORM_ORDER:
            if any(combo[0] == platform for combo in combos):
                artifact_paths[platform] = self._resolve_artifact(platform, overrides, resolver)

        jobs: List[RunJob] = []
        for index, (platform, language, device) in enumerate(combos):
            jobs.append(
                RunJob(
                    index=index,
                    platform=platform,
                    language=language,
                    locale=config.locale_mapping[language],
                    screenshots=tuple(selected_plans),
                    output_dir=layout.job_dir(platform, device.folder, language),
                    ports=port_allocator.allocate(index),
                    app_path=artifact_paths[platform],
                    ios_device=device if platform == Platform.ios else None,  # type: ignore[arg-type]
                    android_device=device if platform == Platform.android else None,  # type: ignore[arg-type]
                )
            )

        plan = RunPlan(
            jobs=tuple(jobs),
            output_root=layout.root,
            total_platforms=len({job.platform for job in jobs}),
            total_devices=len({job.device_key for job in jobs}),
            total_languages=len({job.language for job in jobs}),
            total_screenshots=len(selected_plans),
            estimated_duration_minutes=len(jobs) * ESTIMATED_MINUTES_PER_JOB,
            artifact_paths=artifact_paths,
        )
        LOGGER.info(
            "Planned %d jobs across %d platforms and %d languages",
            len(jobs),
            plan.total_platforms,
            plan.total_languages,
        )
        return plan

    def _select_platforms(self, platforms: Optional[Sequence[str]]) -> List[Platform]:
        wanted = _normalize_filter(platforms)
        if wanted is None:
            return list(PLATFORM_ORDER)
        known = {platform.value for platform in PLATFORM_ORDER}
        unknown = sorted(set(wanted) - known)
        if unknown:
            raise ConfigurationError(f"Unknown platform(s): {', '.join(unknown)}")
        return [platform for platform in PLATFORM_ORDER if platform.value in wanted]

    def _select_languages(self, config: RunConfig, languages: Optional[Sequence[str]]) -> List[str]:
        wanted = _normalize_filter(languages)
        if wanted is None:
            return list(config.languages)
        return [language for language in config.languages if language.lower() in wanted]

    def _select_screenshots(self, config: RunConfig, screenshots: Optional[Sequence[str]]) -> List[ScreenshotPlan]:
        wanted = _normalize_filter(screenshots)
        if wanted is None:
            return list(config.screenshots)
        selected = [plan for plan in config.screenshots if plan.name.lower() in wanted]
        if not selected:
            raise ConfigurationError("No screenshot plans match the supplied screenshot filter")
        return selected

    def _resolve_artifact(
        self,
        platform: Platform,
        overrides: RunOverrides,
        resolver: Optional[BuildResolver],
    ) -> str:
        override_path = overrides.app_path(platform)
        if resolver is not None:
            resolved = resolver.resolve_artifact(platform, override_path)
        else:
            resolved = override_path
        if not resolved:
            raise BuildRequiredError(platform.value)
        return resolved


def build_plan(config: RunConfig, output_root: Union[str, Path], **filters) -> RunPlan:
    return RunPlanBuilder().build(config, output_root, **filters)
