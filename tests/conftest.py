from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pytest
from PIL import Image

from shotmatrix.schemas import Platform, RunConfig, RunOverrides, Selector
from shotmatrix.services.interfaces import AutomationProvider, DeviceDriver, DeviceRuntime


def png_bytes(size: Tuple[int, int]) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, "white").save(buffer, format="PNG")
    return buffer.getvalue()


class FakeDeviceDriver(DeviceDriver):
    def __init__(
        self,
        *,
        fail_on: Iterable[str] = (),
        image_size: Tuple[int, int] = (1290, 2796),
        logs: str = "boot complete\n",
        ready: bool = True,
    ) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail_on: Set[str] = set(fail_on)
        self.image_size = image_size
        self.logs = logs
        self.ready = ready
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call, _ in self.calls if call == name)

    def names(self) -> List[str]:
        with self._lock:
            return [call for call, _ in self.calls]

    def boot(self, target: str) -> str:
        self._record("boot", target)
        return f"{target}-serial"

    def is_ready(self, device_id: str) -> bool:
        self._record("is_ready", device_id)
        return self.ready

    def shutdown(self, device_id: str) -> None:
        self._record("shutdown", device_id)

    def install_app(self, device_id: str, path: str) -> None:
        self._record("install_app", device_id, path)

    def uninstall_app(self, device_id: str, bundle_id: str) -> None:
        self._record("uninstall_app", device_id, bundle_id)

    def set_locale(self, device_id: str, language: str, locale: str) -> None:
        self._record("set_locale", device_id, language, locale)

    def set_status_bar(self, device_id: str, settings: Dict[str, Any]) -> None:
        self._record("set_status_bar", device_id, settings)

    def reset_app_data(self, device_id: str, bundle_id: str) -> None:
        self._record("reset_app_data", device_id, bundle_id)

    def screenshot(self, device_id: str) -> bytes:
        self._record("screenshot", device_id)
        return png_bytes(self.image_size)

    def device_logs(self, device_id: str) -> str:
        self._record("device_logs", device_id)
        return self.logs


class FakeAutomation(AutomationProvider):
    def __init__(
        self,
        *,
        missing: Iterable[str] = (),
        unreadable: Iterable[str] = (),
        fail_on: Iterable[str] = (),
        on_session: Optional[Callable[[], None]] = None,
    ) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.missing: Set[str] = set(missing)
        self.unreadable: Set[str] = set(unreadable)
        self.fail_on: Set[str] = set(fail_on)
        self.on_session = on_session
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call, _ in self.calls if call == name)

    def start_server(self, port: int) -> object:
        self._record("start_server", port)
        return port

    def stop_server(self, port: int) -> None:
        self._record("stop_server", port)

    def create_session(self, server_url: str, capabilities: Dict[str, Any]) -> object:
        self._record("create_session", server_url, capabilities)
        if self.on_session is not None:
            self.on_session()
        return {"url": server_url, "capabilities": capabilities}

    def quit_session(self, session: object) -> None:
        self._record("quit_session", session)

    def find_element(self, session: object, selector: Selector) -> Optional[object]:
        self._record("find_element", selector.describe())
        if selector.describe() in self.unreadable:
            raise RuntimeError(f"stale session while looking up {selector.describe()}")
        if selector.describe() in self.missing:
            return None
        return {"selector": selector.describe()}

    def click(self, session: object, element: object) -> None:
        self._record("click", element)

    def set_orientation(self, session: object, orientation: str) -> None:
        self._record("set_orientation", orientation)

    def page_source(self, session: object) -> str:
        self._record("page_source", session)
        return "<hierarchy><node text='Home'/></hierarchy>"


def make_config_dict(**sections: Any) -> Dict[str, Any]:
    config: Dict[str, Any] = {
        "devices": {
            "ios": [
                {"name": "iPhone 15 Pro Max", "udid": "SIM-1", "folder": "iphone_15_pro_max", "platform_version": "17.5"}
            ],
            "android": [
                {"name": "Pixel 7", "avd": "Pixel_7_API_34", "folder": "pixel_7", "platform_version": "34"}
            ],
        },
        "languages": ["en-US", "de-DE"],
        "locale_mapping": {
            "en-US": {"ios": "en_US", "android": "en_US"},
            "de-DE": {"ios": "de_DE", "android": "de_DE"},
        },
        "screenshots": [
            {
                "name": "home",
                "actions": [
                    {"wait_for": {"selector": {"accessibility_id": "home_title"}, "timeout": 0.2}},
                    {"capture": {"name": "home"}},
                ],
            },
            {
                "name": "settings",
                "actions": [
                    {"tap": {"accessibility_id": "settings_tab"}},
                    {"wait": {"seconds": 0}},
                    {"capture": {"name": "settings"}},
                ],
            },
        ],
        "timeouts": {
            "element_seconds": 0.2,
            "dismissor_seconds": 0.05,
            "dismissor_delay_seconds": 0,
            "poll_interval_seconds": 0.02,
            "orientation_settle_seconds": 0,
            "device_operation_seconds": 1,
        },
    }
    config.update(sections)
    return config


@pytest.fixture
def config_factory() -> Callable[..., RunConfig]:
    def _factory(**sections: Any) -> RunConfig:
        return RunConfig.model_validate(make_config_dict(**sections))

    return _factory


@pytest.fixture
def app_overrides(tmp_path: Path) -> RunOverrides:
    ios_app = tmp_path / "build" / "Demo.app"
    ios_app.mkdir(parents=True)
    android_app = tmp_path / "build" / "demo.apk"
    android_app.write_bytes(b"apk")
    return RunOverrides(ios_app_path=str(ios_app), android_app_path=str(android_app))


@pytest.fixture
def make_runtime() -> Callable[..., DeviceRuntime]:
    def _factory(
        *,
        driver_fail_on: Iterable[str] = (),
        image_size: Tuple[int, int] = (1290, 2796),
        logs: str = "boot complete\n",
        ready: bool = True,
        missing: Iterable[str] = (),
        unreadable: Iterable[str] = (),
        automation_fail_on: Iterable[str] = (),
        on_session: Optional[Callable[[], None]] = None,
    ) -> DeviceRuntime:
        def _driver() -> FakeDeviceDriver:
            return FakeDeviceDriver(fail_on=driver_fail_on, image_size=image_size, logs=logs, ready=ready)

        return DeviceRuntime(
            drivers={Platform.ios: _driver(), Platform.android: _driver()},
            automation=FakeAutomation(
                missing=missing, unreadable=unreadable, fail_on=automation_fail_on, on_session=on_session
            ),
        )

    return _factory


@pytest.fixture
def config_payload() -> Callable[..., Dict[str, Any]]:
    return make_config_dict
