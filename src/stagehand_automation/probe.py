from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from .errors import ConnectivityError
from .executors import Executor

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = ("1.1.1.1", "8.8.8.8")


class ConnectivityProbe:
    """Pre-flight reachability check: one ICMP echo per endpoint, first answer wins."""

    def __init__(
        self,
        executor: Executor,
        endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
        timeout: float = 2.0,
    ):
        self.executor = executor
        self.endpoints = tuple(endpoints)
        self.timeout = timeout

    def check(self, endpoints: Optional[Sequence[str]] = None, timeout: Optional[float] = None) -> bool:
        endpoints = tuple(endpoints) if endpoints is not None else self.endpoints
        timeout = self.timeout if timeout is None else timeout
        wait = str(max(1, math.ceil(timeout)))
        for endpoint in endpoints:
            result = self.executor.run(
                ["ping", "-c", "1", "-W", wait, endpoint],
                check=False,
                mutable=False,
                timeout=timeout + 1,
            )
            if result.returncode == 0:
                logger.debug("connectivity ok via %s", endpoint)
                return True
            logger.debug("no reply from %s (rc=%s)", endpoint, result.returncode)
        return False

    def require(self, endpoints: Optional[Sequence[str]] = None, timeout: Optional[float] = None) -> None:
        endpoints = tuple(endpoints) if endpoints is not None else self.endpoints
        if not self.check(endpoints, timeout):
            raise ConnectivityError(
                f"no network connectivity: none of {', '.join(endpoints) or '(no endpoints)'} answered"
            )
