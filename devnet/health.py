"""HTTP health checks against a node's RPC status endpoint."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    healthy: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: Optional[float] = None


class HealthChecker:
    """Polls ``http://<host>:<rpc>/status``. Healthy means a 2xx JSON response."""

    def __init__(self, host: str = "127.0.0.1", path: str = "/status", request_timeout_s: float = 5.0) -> None:
        self.host = host
        self.path = path if path.startswith("/") else "/" + path
        self.request_timeout_s = request_timeout_s

    def url_for(self, rpc_port: int) -> str:
        return f"http://{self.host}:{rpc_port}{self.path}"

    def check(self, rpc_port: int) -> HealthStatus:
        url = self.url_for(rpc_port)
        start = time.time()
        try:
            with requests.Session() as session:
                # node RPC is local, never route it through an environment proxy
                session.trust_env = False
                response = session.get(url, timeout=self.request_timeout_s)
        except requests.exceptions.RequestException as e:
            return HealthStatus(healthy=False, error=str(e))
        elapsed_ms = (time.time() - start) * 1000

        if not 200 <= response.status_code < 300:
            return HealthStatus(
                healthy=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
                response_time_ms=elapsed_ms,
            )
        try:
            response.json()
        except ValueError:
            return HealthStatus(
                healthy=False,
                status_code=response.status_code,
                error="Invalid JSON response",
                response_time_ms=elapsed_ms,
            )
        return HealthStatus(healthy=True, status_code=response.status_code, response_time_ms=elapsed_ms)

    def wait_for_healthy(
        self,
        rpc_port: int,
        deadline: float,
        interval_s: float = 1.0,
        cancel: Optional[threading.Event] = None,
        is_alive: Optional[Callable[[], bool]] = None,
    ) -> HealthStatus:
        """
        Poll until the node answers healthy, the deadline passes, or the node dies.

        Args:
            rpc_port: Node RPC port
            deadline: time.monotonic() value to stop polling at
            interval_s: Delay between polls
            cancel: Optional event that stops polling early
            is_alive: Optional callback; polling stops once it returns False

        Returns:
            Last HealthStatus observed
        """
        last = HealthStatus(healthy=False, error="not checked")
        while True:
            last = self.check(rpc_port)
            if last.healthy:
                return last
            if is_alive is not None and not is_alive():
                return HealthStatus(healthy=False, error=f"process exited ({last.error})")
            if cancel is not None and cancel.is_set():
                return HealthStatus(healthy=False, error="cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return HealthStatus(healthy=False, error=f"not healthy before deadline ({last.error})")
            time.sleep(min(interval_s, remaining))
