from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from shotmatrix.constants import (
    DEFAULT_BASE_PORT,
    DEFAULT_PORT_OFFSET,
    MAX_PORT_OFFSET,
    MAX_TCP_PORT,
    MIN_TCP_PORT,
    PORTS_PER_JOB,
)
from shotmatrix.errors import PortRangeError
from shotmatrix.schemas import Platform


@dataclass(frozen=True)
class PortAllocation:
    automation_port: int
    ios_aux_port: int
    android_aux_port: int

    def ports(self) -> Set[int]:
        return {self.automation_port, self.ios_aux_port, self.android_aux_port}

    def aux_port(self, platform: Platform) -> int:
        return self.ios_aux_port if platform == Platform.ios else self.android_aux_port


class PortAllocator:
    """Map job indices onto disjoint blocks of three ports.

    Block ``i`` starts at ``base_port + i * port_offset``. The allocator never
    probes the OS; a port that turns out to be taken fails the job at runtime.
    """

    def __init__(self, base_port: int = DEFAULT_BASE_PORT, port_offset: int = DEFAULT_PORT_OFFSET) -> None:
        if not MIN_TCP_PORT <= base_port <= MAX_TCP_PORT - (PORTS_PER_JOB - 1):
            raise PortRangeError(
                f"Base port {base_port} must be between {MIN_TCP_PORT} and {MAX_TCP_PORT - (PORTS_PER_JOB - 1)}",
                port=base_port,
            )
        if not PORTS_PER_JOB <= port_offset <= MAX_PORT_OFFSET:
            raise PortRangeError(
                f"Port offset {port_offset} must be between {PORTS_PER_JOB} and {MAX_PORT_OFFSET}"
            )
        self._base_port = base_port
        self._port_offset = port_offset

    @property
    def base_port(self) -> int:
        return self._base_port

    @property
    def port_offset(self) -> int:
        return self._port_offset

    def allocate(self, index: int) -> PortAllocation:
        if index < 0:
            raise PortRangeError(f"Job index must be non-negative, got {index}")
        automation_port = self._base_port + index * self._port_offset
        last_port = automation_port + PORTS_PER_JOB - 1
        if last_port > MAX_TCP_PORT:
            raise PortRangeError(
                f"Job {index} needs ports {automation_port}-{last_port}, beyond {MAX_TCP_PORT}",
                port=last_port,
            )
        return PortAllocation(
            automation_port=automation_port,
            ios_aux_port=automation_port + 1,
            android_aux_port=automation_port + 2,
        )

    def max_parallel_jobs(self) -> int:
        """Number of jobs whose blocks fit below the top of the TCP range."""
        return (MAX_TCP_PORT - (PORTS_PER_JOB - 1) - self._base_port) // self._port_offset + 1

    @staticmethod
    def validate_allocations(allocations: Iterable[PortAllocation]) -> List[str]:
        """Return human-readable conflicts between allocations; empty when disjoint."""
        owners: dict = {}
        conflicts: List[str] = []
        for position, allocation in enumerate(allocations):
            for port in sorted(allocation.ports()):
                previous: Optional[int] = owners.get(port)
                if previous is not None:
                    conflicts.append(f"Port {port} is allocated to both job {previous} and job {position}")
                else:
                    owners[port] = position
        return conflicts
