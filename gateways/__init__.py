"""
Gateways Module

Container runtime gateways that perform single-container operations.

Architecture:
- ContainerGateway: async contract shared by all adapters
- DockerGateway: Docker SDK (local socket / TCP)
- PortainerGateway: Portainer Docker API proxy
- GatewayPool: (gateway_ref, endpoint_ref) -> gateway lookup
"""

from gateways.base import ContainerGateway, GatewayPool
from gateways.docker_gateway import DockerGateway
from gateways.portainer import PortainerGateway
from gateways.errors import (
    GatewayError,
    GatewayNotFound,
    GatewayNotModified,
    GatewayConflict,
    GatewayConfigRejected,
    GatewayTransportError,
)

__all__ = [
    'ContainerGateway',
    'GatewayPool',
    'DockerGateway',
    'PortainerGateway',
    'GatewayError',
    'GatewayNotFound',
    'GatewayNotModified',
    'GatewayConflict',
    'GatewayConfigRejected',
    'GatewayTransportError',
]
