from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from shotmatrix.schemas import Platform, Selector


class DeviceDriver:
    """Boot, localize and capture from one family of devices (simulators or emulators)."""

    def boot(self, target: str) -> str:  # pragma: no cover - interface stub
        """Start the device named by ``target`` and return the id used for later calls."""
        raise NotImplementedError

    def is_ready(self, device_id: str) -> bool:  # pragma: no cover - interface stub
        raise NotImplementedError

    def shutdown(self, device_id: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def install_app(self, device_id: str, path: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def uninstall_app(self, device_id: str, bundle_id: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def set_locale(self, device_id: str, language: str, locale: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def set_status_bar(self, device_id: str, settings: Dict[str, Any]) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def reset_app_data(self, device_id: str, bundle_id: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def screenshot(self, device_id: str) -> bytes:  # pragma: no cover - interface stub
        raise NotImplementedError

    def device_logs(self, device_id: str) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError


class AutomationProvider:
    """UI automation server and session control (an Appium-compatible backend)."""

    def start_server(self, port: int) -> object:  # pragma: no cover - interface stub
        raise NotImplementedError

    def stop_server(self, port: int) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def create_session(self, server_url: str, capabilities: Dict[str, Any]) -> object:  # pragma: no cover - interface stub
        raise NotImplementedError

    def quit_session(self, session: object) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def find_element(self, session: object, selector: Selector) -> Optional[object]:  # pragma: no cover - interface stub
        """Return the element when present right now, otherwise ``None``."""
        raise NotImplementedError

    def click(self, session: object, element: object) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def set_orientation(self, session: object, orientation: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def page_source(self, session: object) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError


class BuildResolver:
    def resolve_artifact(self, platform: Platform, override_path: Optional[str] = None) -> Optional[str]:  # pragma: no cover - interface stub
        raise NotImplementedError


class ImageInspector:
    def dimensions(self, path: str) -> Tuple[int, int]:  # pragma: no cover - interface stub
        raise NotImplementedError


@dataclass
class DeviceRuntime:
    """Everything a job needs from the outside world."""

    drivers: Dict[Platform, DeviceDriver]
    automation: AutomationProvider
    inspector: Optional[ImageInspector] = None

    def driver_for(self, platform: Platform) -> DeviceDriver:
        driver = self.drivers.get(platform)
        if driver is None:
            raise KeyError(f"No device driver configured for {platform.value}")
        return driver
