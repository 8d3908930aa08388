"""
Prometheus ``/metrics`` HTTP endpoint.
"""

import logging

from prometheus_client import REGISTRY, CollectorRegistry, start_http_server

logger = logging.getLogger(__name__)


class MetricsPublisher:
    """
    Serves a registry over HTTP on a background thread.

    Used by ``table-mirror run|schedule --metrics-port N``; a scheduled
    process keeps the endpoint up between runs.
    """

    def __init__(
        self,
        port: int = 9108,
        addr: str = "0.0.0.0",
        registry: CollectorRegistry | None = None,
    ):
        """
        Initialize metrics publisher

        Args:
            port: Port for the /metrics endpoint
            addr: Address to bind
            registry: Registry to expose (default: the global registry)
        """
        self.port = port
        self.addr = addr
        self.registry = registry or REGISTRY
        self._server_started = False

    def start(self) -> None:
        """
        Start the HTTP server; a second call is a no-op.

        Raises:
            RuntimeError: If the port is already bound
        """
        if self._server_started:
            logger.warning(f"Metrics server already running on port {self.port}")
            return

        try:
            start_http_server(self.port, addr=self.addr, registry=self.registry)
        except OSError as e:
            raise RuntimeError(
                f"Metrics server cannot bind {self.addr}:{self.port}: {e}"
            ) from e

        self._server_started = True
        logger.info(f"Metrics server started on {self.addr}:{self.port}")
