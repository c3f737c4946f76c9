"""Post-convergence liveness checks.

A probe is any zero-argument callable returning a bool. Verification is
never fatal: a resource that is still warming up when the deadline passes
turns into a warning in the report.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

import requests

from .errors import VerificationTimeout
from .executors import Executor
from .providers.service import SystemCtl

logger = logging.getLogger(__name__)

Probe = Callable[[], bool]


class HttpClient(Protocol):
    def get_status(self, url: str, timeout: float) -> int:
        ...


class RequestsHttpClient:
    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def get_status(self, url: str, timeout: float) -> int:
        resp = self.session.get(url, timeout=timeout, allow_redirects=True)
        return resp.status_code


class HttpProbe:
    """Healthy once ``url`` answers with a status below 400."""

    def __init__(self, url: str, *, client: Optional[HttpClient] = None, timeout: float = 2.0):
        self.url = url
        self.client = client or RequestsHttpClient()
        self.timeout = timeout

    def __call__(self) -> bool:
        try:
            status = self.client.get_status(self.url, self.timeout)
        except requests.RequestException as exc:
            logger.debug("probe %s: %s", self.url, exc)
            return False
        return status < 400

    def __repr__(self) -> str:
        return f"HttpProbe({self.url})"


class ServiceActiveProbe:
    def __init__(self, executor: Executor, name: str, *, systemctl: Optional[SystemCtl] = None):
        self.executor = executor
        self.name = name
        self.systemctl = systemctl or SystemCtl()

    def __call__(self) -> bool:
        return self.systemctl.is_active(self.executor, self.name)

    def __repr__(self) -> str:
        return f"ServiceActiveProbe({self.name})"


class HealthVerifier:
    def __init__(
        self,
        timeout: float = 60.0,
        interval: float = 1.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.interval = interval
        self.sleep = sleep
        self.clock = clock

    def wait_until_healthy(
        self,
        probe: Probe,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> bool:
        """Poll ``probe`` every ``interval`` seconds; True on the first success.

        The probe always runs at least once, even with a zero timeout.
        """

        timeout = self.timeout if timeout is None else timeout
        interval = self.interval if interval is None else interval
        deadline = self.clock() + timeout
        while True:
            if probe():
                return True
            if self.clock() + interval > deadline:
                return False
            self.sleep(interval)

    def ensure_healthy(self, target: str, probe: Probe, timeout: Optional[float] = None) -> None:
        timeout = self.timeout if timeout is None else timeout
        if not self.wait_until_healthy(probe, timeout):
            raise VerificationTimeout(target, timeout)
