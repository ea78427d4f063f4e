"""
Container runtime gateway contract.

A gateway performs single-container operations against one Docker endpoint.
Implementations:
- DockerGateway: Docker SDK against a local socket or TCP daemon
- PortainerGateway: Portainer's Docker API proxy over HTTP
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ContainerGateway(ABC):
    """
    Async contract used by the upgrade orchestrator and update checker.

    Every method reports the idempotency conditions uniformly through
    gateways.errors: GatewayNotFound, GatewayNotModified and GatewayConflict.
    Deciding whether such a condition means success is the caller's job.
    """

    @abstractmethod
    async def inspect(self, container_id: str) -> Dict[str, Any]:
        """Return the raw inspect payload for a container."""

    @abstractmethod
    async def inspect_image(self, image: str) -> Dict[str, Any]:
        """Return the raw inspect payload for a local image."""

    @abstractmethod
    async def stop(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container."""

    @abstractmethod
    async def remove(self, container_id: str, force: bool = True) -> None:
        """Remove a container."""

    @abstractmethod
    async def pull(self, repo: str, tag: str) -> None:
        """Pull repo:tag onto the endpoint."""

    @abstractmethod
    async def create(self, config: Dict[str, Any], name: str) -> str:
        """Create a container from an Engine API create body; returns the new ID."""

    @abstractmethod
    async def start(self, container_id: str) -> None:
        """Start a container."""

    @abstractmethod
    async def logs(self, container_id: str, tail: int = 50) -> str:
        """Return the last `tail` lines of combined stdout/stderr."""

    @abstractmethod
    async def list_all(self) -> List[Dict[str, Any]]:
        """List all containers (running and stopped) as summary dicts."""

    async def close(self) -> None:
        """Release any held connections."""
        return None


class GatewayPool:
    """
    Resolves (gateway_ref, endpoint_ref) pairs to gateway instances.

    Gateways are registered up front by whatever owns the credentials; the
    orchestrator only ever looks them up.
    """

    def __init__(self):
        self._gateways: Dict[tuple, ContainerGateway] = {}

    def register(self, gateway_ref: str, endpoint_ref: str, gateway: ContainerGateway) -> None:
        key = (gateway_ref, str(endpoint_ref))
        if key in self._gateways:
            logger.info(f"Replacing gateway registered for {gateway_ref} endpoint {endpoint_ref}")
        self._gateways[key] = gateway

    def get(self, gateway_ref: str, endpoint_ref: str) -> ContainerGateway:
        gateway = self._gateways.get((gateway_ref, str(endpoint_ref)))
        if gateway is None:
            raise KeyError(f"No gateway registered for {gateway_ref} endpoint {endpoint_ref}")
        return gateway

    def unregister(self, gateway_ref: str, endpoint_ref: str) -> Optional[ContainerGateway]:
        return self._gateways.pop((gateway_ref, str(endpoint_ref)), None)

    async def close_all(self) -> None:
        for (gateway_ref, endpoint_ref), gateway in list(self._gateways.items()):
            try:
                await gateway.close()
            except Exception as e:
                logger.warning(f"Error closing gateway {gateway_ref}/{endpoint_ref}: {e}")
        self._gateways.clear()
