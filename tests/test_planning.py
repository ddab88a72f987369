from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

import pytest

from shotmatrix.errors import BuildRequiredError, ConfigurationError
from shotmatrix.schemas import BuildConfig, LocaleMapping, Platform, PlatformBuild, RunConfig, RunOverrides
from shotmatrix.services.artifacts import GlobArtifactResolver
from shotmatrix.services.planning import RunJob, RunPlanBuilder, build_plan
from shotmatrix.services.ports import PortAllocation, PortAllocator


@pytest.mark.unit
def test_full_matrix_orders_platform_language_device(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    config = config_factory()

    plan = build_plan(config, tmp_path / "Screenshots", overrides=app_overrides)

    assert len(plan) == 4
    assert [job.index for job in plan] == [0, 1, 2, 3]
    assert [(job.platform, job.language) for job in plan] == [
        (Platform.ios, "en-US"),
        (Platform.ios, "de-DE"),
        (Platform.android, "en-US"),
        (Platform.android, "de-DE"),
    ]
    assert [job.ports.automation_port for job in plan] == [4723, 4733, 4743, 4753]
    assert PortAllocator.validate_allocations(job.ports for job in plan) == []
    assert plan.total_platforms == 2
    assert plan.total_devices == 2
    assert plan.total_languages == 2
    assert plan.total_screenshots == 2
    assert plan.estimated_duration_minutes == 8.0


@pytest.mark.unit
def test_jobs_carry_layout_locale_and_artifact(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    root = tmp_path / "Screenshots"
    plan = build_plan(config_factory(), root, overrides=app_overrides)

    ios_job = plan.jobs[1]
    android_job = plan.jobs[2]

    assert ios_job.output_dir == root / "iOS" / "iphone_15_pro_max" / "de-DE"
    assert android_job.output_dir == root / "Android" / "pixel_7" / "en-US"
    assert ios_job.platform_locale == "de_DE"
    assert ios_job.app_path == app_overrides.ios_app_path
    assert android_job.app_path == app_overrides.android_app_path
    assert android_job.android_device is not None and android_job.ios_device is None
    assert android_job.device_key == "android:pixel_7"
    assert android_job.aux_port == android_job.ports.android_aux_port
    assert [item.name for item in ios_job.screenshots] == ["home", "settings"]


@pytest.mark.unit
def test_platform_filter_drops_other_platform_and_its_artifact(
    tmp_path: Path, config_factory: Callable[..., RunConfig]
) -> None:
    ios_app = tmp_path / "Demo.app"
    ios_app.mkdir()
    overrides = RunOverrides(ios_app_path=str(ios_app))

    plan = build_plan(config_factory(), tmp_path / "out", platforms=["iOS"], overrides=overrides)

    assert len(plan) == 2
    assert {job.platform for job in plan} == {Platform.ios}
    assert [job.index for job in plan] == [0, 1]
    assert list(plan.artifact_paths) == [Platform.ios]


@pytest.mark.unit
def test_device_language_and_screenshot_filters_are_case_insensitive(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    plan = build_plan(
        config_factory(),
        tmp_path / "out",
        devices=["PIXEL_7"],
        languages=["DE-de"],
        screenshots=["Settings"],
        overrides=app_overrides,
    )

    assert len(plan) == 1
    job = plan.jobs[0]
    assert job.index == 0
    assert job.ports.automation_port == 4723
    assert job.folder == "pixel_7"
    assert job.language == "de-DE"
    assert [item.name for item in job.screenshots] == ["settings"]


@pytest.mark.unit
def test_device_filter_matches_display_name(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    plan = build_plan(config_factory(), tmp_path / "out", devices=["iPhone 15 Pro Max"], overrides=app_overrides)

    assert {job.folder for job in plan} == {"iphone_15_pro_max"}


@pytest.mark.unit
def test_filters_matching_nothing_raise(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    with pytest.raises(ConfigurationError, match="No jobs match"):
        build_plan(config_factory(), tmp_path / "out", languages=["fr-FR"], overrides=app_overrides)
    with pytest.raises(ConfigurationError, match="screenshot"):
        build_plan(config_factory(), tmp_path / "out", screenshots=["missing"], overrides=app_overrides)
    with pytest.raises(ConfigurationError, match="Unknown platform"):
        build_plan(config_factory(), tmp_path / "out", platforms=["windows"], overrides=app_overrides)


@pytest.mark.unit
def test_missing_locale_mapping_is_a_configuration_error(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    config = config_factory(languages=["en-US", "fr-FR"])

    with pytest.raises(ConfigurationError, match="fr-FR"):
        build_plan(config, tmp_path / "out", overrides=app_overrides)


@pytest.mark.unit
def test_missing_artifact_raises_build_required(tmp_path: Path, config_factory: Callable[..., RunConfig]) -> None:
    with pytest.raises(BuildRequiredError) as excinfo:
        build_plan(config_factory(), tmp_path / "out", platforms=["android"])
    assert excinfo.value.platform == "android"


@pytest.mark.unit
def test_base_port_override_shifts_every_block(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    overrides = app_overrides.model_copy(update={"base_port": 8100})

    plan = build_plan(config_factory(), tmp_path / "out", overrides=overrides)

    assert [job.ports.automation_port for job in plan] == [8100, 8110, 8120, 8130]


@pytest.mark.unit
def test_plan_view_lists_every_job(
    tmp_path: Path, config_factory: Callable[..., RunConfig], app_overrides: RunOverrides
) -> None:
    view = build_plan(config_factory(), tmp_path / "out", overrides=app_overrides).to_view()

    assert view.total_jobs == 4
    assert view.jobs[2].job_id == "job-2"
    assert view.jobs[2].aux_port == view.jobs[2].automation_port + 2
    assert view.jobs[0].aux_port == view.jobs[0].automation_port + 1
    assert view.jobs[3].screenshots == ["home", "settings"]


@pytest.mark.unit
def test_run_job_requires_exactly_one_device(
    tmp_path: Path, config_factory: Callable[..., RunConfig]
) -> None:
    config = config_factory()

    with pytest.raises(ValueError):
        RunJob(
            index=0,
            platform=Platform.ios,
            language="en-US",
            locale=LocaleMapping(ios="en_US", android="en_US"),
            screenshots=(),
            output_dir=tmp_path,
            ports=PortAllocation(4723, 4724, 4725),
            app_path="Demo.app",
            ios_device=config.devices.ios[0],
            android_device=config.devices.android[0],
        )


@pytest.mark.unit
def test_glob_resolver_picks_newest_match(tmp_path: Path, config_factory: Callable[..., RunConfig]) -> None:
    older = tmp_path / "build" / "old" / "app-debug.apk"
    newer = tmp_path / "build" / "new" / "app-debug.apk"
    for path in (older, newer):
        path.parent.mkdir(parents=True)
        path.write_bytes(b"apk")
    os.utime(older, (1_000_000, 1_000_000))
    os.utime(newer, (2_000_000, 2_000_000))
    build_config = BuildConfig(android=PlatformBuild(artifact_glob="build/**/*.apk"))
    resolver = GlobArtifactResolver(build_config, base_dir=tmp_path)

    assert resolver.resolve_artifact(Platform.android) == str(newer)
    assert resolver.resolve_artifact(Platform.ios) is None

    plan = RunPlanBuilder().build(
        config_factory(), tmp_path / "out", platforms=["android"], resolver=resolver
    )
    assert {job.app_path for job in plan} == {str(newer)}


@pytest.mark.unit
def test_glob_resolver_rejects_missing_override(tmp_path: Path) -> None:
    resolver = GlobArtifactResolver(BuildConfig(), base_dir=tmp_path)

    with pytest.raises(BuildRequiredError):
        resolver.resolve_artifact(Platform.ios, "missing/Demo.app")
