"""
Port allocation by probing the host's socket tables.

Probing is advisory: nothing is reserved, so the process that finally binds
the port may still lose a race.
"""

import logging
import re
from typing import Callable, Iterable, List, Optional

from .errors import ToolError
from .runner import CommandRunner

logger = logging.getLogger(__name__)


def _listening(output: str, port: int) -> bool:
    return re.search(rf":{port}(?:\s|$)", output, re.MULTILINE) is not None


class PortAllocator:
    def __init__(self, runner: CommandRunner, timeout: float = 10.0):
        self.runner = runner
        self.timeout = timeout

    def _probes(self, port: int) -> List[Callable[[], bool]]:
        def ss() -> bool:
            result = self.runner.run(["ss", "-tuln"], timeout=self.timeout)
            return _listening(result.stdout, port)

        def netstat() -> bool:
            result = self.runner.run(["netstat", "-tuln"], timeout=self.timeout)
            return _listening(result.stdout, port)

        def lsof() -> bool:
            # lsof exits 1 when nothing matches
            result = self.runner.run(["lsof", "-i", f":{port}"], timeout=self.timeout, check=False)
            return result.ok and bool(result.stdout.strip())

        return [ss, netstat, lsof]

    def is_in_use(self, port: int) -> bool:
        """
        Check whether something listens on a port.

        Tries ss, then netstat, then lsof; a tool that is missing, fails or
        times out hands over to the next. If none can answer the port is
        reported free.
        """
        for probe in self._probes(port):
            try:
                return probe()
            except ToolError as e:
                logger.debug(f"Port probe {probe.__name__} unavailable: {e}")
                continue

        logger.warning(f"Could not probe port {port}; assuming it is free")
        return False

    def allocate(self, preferred: int, max_attempts: int = 10, exclude: Optional[Iterable[int]] = None) -> int:
        """
        Find a free port, scanning forward from the preferred one.

        Args:
            preferred: Port to try first
            max_attempts: Number of ports to probe
            exclude: Ports to treat as occupied (e.g. held by other projects)

        Returns:
            First free port, or `preferred` when every probed port is taken
        """
        taken = set(exclude or ())
        port = preferred
        for _ in range(max(max_attempts, 1)):
            if port not in taken and not self.is_in_use(port):
                if port != preferred:
                    logger.info(f"Port {preferred} is in use, using {port}")
                return port
            port += 1

        logger.warning(f"Ports {preferred}-{port - 1} are all in use; keeping {preferred}")
        return preferred
