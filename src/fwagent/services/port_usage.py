"""Which local processes listen on a port.

The rule listings only say a port is open. To report whether it is
actually in use, the firewalld query asks a ``PortUsageProbe``. The
default probe reports nothing; ``SsPortUsageProbe`` reads ``ss``.
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from fwagent.core.exceptions import ExecutionError
from fwagent.core.executor import CommandExecutor


PROCESS_NAME = re.compile(r'\("([^"]+)"')


class PortUsageProbe(Protocol):
    """Reports the names of processes bound to a port."""

    def processes_using(self, port: str, protocol: str, family: str) -> list[str]:
        ...


class NullPortUsageProbe:
    """Probe for hosts where usage is not inspected."""

    def processes_using(self, port: str, protocol: str, family: str) -> list[str]:
        return []


@dataclass
class Listener:
    """One listening socket from ``ss``."""
    protocol: str
    address: str
    port: int
    processes: list[str]

    @property
    def family(self) -> Optional[str]:
        """ipv4, ipv6, or None for wildcard sockets that serve both."""
        if self.address in ("*", ""):
            return None
        return "ipv6" if self.address.startswith("[") or ":" in self.address else "ipv4"


def parse_ss_output(output: str) -> list[Listener]:
    """Parse ``ss -Hlntup`` output.

    Expected columns: Netid State Recv-Q Send-Q Local Peer [Process].
    """
    listeners = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5:
            continue
        protocol = parts[0].lower()
        local = parts[4]
        address, sep, port_text = local.rpartition(":")
        if not sep or not port_text.isdigit():
            continue
        # Interface-scoped addresses look like 0.0.0.0%eth0
        address = address.split("%", 1)[0]
        process_field = " ".join(parts[6:]) if len(parts) > 6 else ""
        names = sorted(set(PROCESS_NAME.findall(process_field)))
        listeners.append(Listener(protocol, address, int(port_text), names))
    return listeners


def _port_bounds(port: str) -> tuple[int, int]:
    start, _, end = port.replace(":", "-").partition("-")
    return int(start), int(end or start)


class SsPortUsageProbe:
    """Probe backed by one ``ss`` snapshot, taken lazily."""

    def __init__(self, executor: CommandExecutor, timeout: int = 10) -> None:
        self.executor = executor
        self.timeout = timeout
        self._listeners: Optional[list[Listener]] = None

    def _snapshot(self) -> list[Listener]:
        if self._listeners is None:
            try:
                result = self.executor.run(
                    ["ss", "-Hlntup"],
                    check=False,
                    read_only=True,
                    timeout=self.timeout,
                )
            except ExecutionError as e:
                self.executor.ctx.console.debug(f"Port usage unavailable: {e}")
                self._listeners = []
                return self._listeners
            self._listeners = parse_ss_output(result.stdout) if result.success else []
        return self._listeners

    def processes_using(self, port: str, protocol: str, family: str) -> list[str]:
        low, high = _port_bounds(port)
        names: set[str] = set()
        for listener in self._snapshot():
            if listener.protocol != protocol.lower():
                continue
            if listener.family not in (None, family):
                continue
            if low <= listener.port <= high:
                names.update(listener.processes)
        return sorted(names)
