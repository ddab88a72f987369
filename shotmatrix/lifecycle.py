"""Process exit hooks that drain the resource registry before the interpreter leaves."""

from __future__ import annotations

import atexit
import logging
import signal
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

from shotmatrix.constants import REGISTRY_DRAIN_TIMEOUT_SECONDS
from shotmatrix.schemas import RunConfig, RunOverrides, RunResult
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.interfaces import DeviceRuntime
from shotmatrix.services.manifest import ManifestWriter
from shotmatrix.services.orchestrator import Orchestrator
from shotmatrix.services.planning import RunPlan
from shotmatrix.services.registry import ProcessRegistry

LOGGER = logging.getLogger("shotmatrix.lifecycle")


class ExitHooks:
    """
    Own the three process exit points: normal exit, SIGINT/SIGTERM and an
    unhandled exception on the main thread.

    Each one trips the optional cancellation token and drains the registry
    synchronously, bounded by ``timeout``.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        token: Optional[CancellationToken] = None,
        *,
        timeout: float = REGISTRY_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._token = token
        self._timeout = timeout
        self._installed = False
        self._lock = threading.RLock()
        self._draining = False
        self._previous_signals: Dict[int, Any] = {}
        self._previous_excepthook: Optional[Callable[..., Any]] = None

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> "ExitHooks":
        if self._installed:
            return self
        atexit.register(self._on_exit)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_signals[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except ValueError:
                # signal handlers can only be installed from the main thread
                LOGGER.debug("Could not install handler for signal %s", sig)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._on_unhandled
        self._installed = True
        return self

    def uninstall(self) -> None:
        if not self._installed:
            return
        atexit.unregister(self._on_exit)
        for sig, handler in self._previous_signals.items():
            try:
                signal.signal(sig, handler)
            except ValueError:
                LOGGER.debug("Could not restore handler for signal %s", sig)
        self._previous_signals.clear()
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None
        self._installed = False

    def shutdown(self, reason: str, *, cancel: bool = True) -> List[str]:
        """Trip the token and drain the registry; returns keys that failed to stop."""
        with self._lock:
            if self._draining:
                # re-entered from a signal handler on the draining thread
                LOGGER.warning("Drain already in progress; ignoring %s", reason)
                return []
            if cancel and self._token is not None:
                self._token.cancel(reason)
            if len(self._registry) == 0:
                return []
            LOGGER.warning("Draining registered resources: %s", reason)
            self._draining = True
            try:
                return self._registry.drain(timeout=self._timeout)
            finally:
                self._draining = False

    def _on_exit(self) -> None:
        self.shutdown("process exit")

    def _on_signal(self, signum: int, frame: Any) -> None:
        if self._draining:
            # let the running drain finish within its timeout
            LOGGER.warning("Signal %s received while draining; waiting for the drain to finish", signum)
            return
        self.shutdown(f"received signal {signum}")
        previous = self._previous_signals.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif signum == signal.SIGINT:
            raise KeyboardInterrupt
        else:
            raise SystemExit(128 + signum)

    def _on_unhandled(self, exc_type, exc, tb) -> None:
        self.shutdown(f"unhandled {exc_type.__name__}")
        hook = self._previous_excepthook or sys.__excepthook__
        hook(exc_type, exc, tb)

    def __enter__(self) -> "ExitHooks":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.shutdown("leaving managed scope", cancel=exc_type is not None)
        finally:
            self.uninstall()


def run_with_cleanup(
    plan: RunPlan,
    config: RunConfig,
    runtime: DeviceRuntime,
    overrides: Optional[RunOverrides] = None,
    *,
    registry: Optional[ProcessRegistry] = None,
    token: Optional[CancellationToken] = None,
    write_manifest: bool = True,
    processor_count: Optional[int] = None,
) -> RunResult:
    """Execute a plan as the owner of the process lifecycle.

    Exit hooks stay installed for the duration of the run, so a signal or a
    crash drains every emulator and automation server the run registered.
    """
    if registry is None:
        registry = ProcessRegistry()
    token = token or CancellationToken()
    with ExitHooks(registry, token):
        result = Orchestrator(runtime, registry, processor_count=processor_count).execute(
            plan, config, overrides, token
        )
    if write_manifest:
        ManifestWriter().write(result)
    return result
