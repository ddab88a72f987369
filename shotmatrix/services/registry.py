from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

from shotmatrix.constants import REGISTRY_DRAIN_TIMEOUT_SECONDS
from shotmatrix.schemas import Platform
from shotmatrix.services.interfaces import AutomationProvider, DeviceDriver

LOGGER = logging.getLogger("shotmatrix.registry")


class ManagedResource:
    """A long-lived external process that must be stopped before exit."""

    name: str = "resource"

    def stop(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class ManagedDevice(ManagedResource):
    def __init__(self, driver: DeviceDriver, device_id: str, platform: Platform) -> None:
        self._driver = driver
        self.device_id = device_id
        self.platform = platform
        self.name = f"{platform.value} device {device_id}"

    def stop(self) -> None:
        self._driver.shutdown(self.device_id)


class ManagedServer(ManagedResource):
    def __init__(self, provider: AutomationProvider, port: int) -> None:
        self._provider = provider
        self.port = port
        self.name = f"automation server :{port}"

    def stop(self) -> None:
        self._provider.stop_server(self.port)


class ProcessRegistry:
    """Thread-safe map of running external resources with a bounded global drain.

    ``unregister`` hands the resource back to the caller, so whoever removes an
    entry owns stopping it; a drain and a job teardown never stop the same
    resource twice.
    """

    def __init__(self) -> None:
        self._resources: Dict[str, ManagedResource] = {}
        self._lock = threading.Lock()

    def register(self, key: str, resource: ManagedResource) -> None:
        with self._lock:
            previous = self._resources.get(key)
            self._resources[key] = resource
        if previous is not None:
            LOGGER.warning("Resource key %s re-registered; replacing %s", key, previous.name)
        LOGGER.debug("Registered %s as %s", resource.name, key)

    def unregister(self, key: str) -> Optional[ManagedResource]:
        with self._lock:
            resource = self._resources.pop(key, None)
        if resource is not None:
            LOGGER.debug("Unregistered %s", key)
        return resource

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._resources)

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._resources

    def drain(self, timeout: float = REGISTRY_DRAIN_TIMEOUT_SECONDS) -> List[str]:
        """Stop every registered resource in parallel.

        Returns the keys that failed to stop or were still stopping when the
        timeout elapsed. The registry is empty afterwards either way.
        """
        with self._lock:
            items = list(self._resources.items())
            self._resources.clear()
        if not items:
            return []

        LOGGER.info("Draining %d registered resources", len(items))
        failures: List[str] = []
        failures_lock = threading.Lock()

        def _stop(key: str, resource: ManagedResource) -> None:
            try:
                resource.stop()
            except Exception as exc:
                LOGGER.warning("Failed to stop %s (%s): %s", resource.name, key, exc)
                with failures_lock:
                    failures.append(key)

        threads: List[tuple] = []
        for key, resource in items:
            thread = threading.Thread(target=_stop, args=(key, resource), daemon=True, name=f"drain-{key}")
            thread.start()
            threads.append((key, thread))

        deadline = time.monotonic() + max(0.0, timeout)
        for key, thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                LOGGER.warning("Timed out stopping %s after %.1fs", key, timeout)
                with failures_lock:
                    failures.append(key)
        return sorted(failures)
