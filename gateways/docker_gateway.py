"""
Docker SDK gateway.

Talks to a Docker daemon through docker-py's low-level APIClient so create
bodies can be passed through with minimal translation. All blocking SDK calls
run through async_docker_call.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import docker
import requests
from packaging import version

from gateways.base import ContainerGateway
from gateways.errors import GatewayError, GatewayTransportError, error_for_status
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

# Docker API version that accepts multiple EndpointsConfig entries at create time
MULTI_NETWORK_CREATE_API = "1.44"


def _translate(e: Exception, action: str, target: str) -> GatewayError:
    """Map a docker-py / requests exception to a gateway error."""
    if isinstance(e, docker.errors.APIError):
        status = e.status_code or 500
        detail = e.explanation or str(e)
        return error_for_status(status, f"{action} {target} failed: {detail}")
    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return GatewayTransportError(f"{action} {target} failed: {e}")
    return GatewayError(f"{action} {target} failed: {e}")


def _split_exposed_ports(exposed_ports: Optional[Dict[str, Any]]) -> Optional[list]:
    """
    Convert Engine API ExposedPorts keys ("80/tcp") to docker-py port tuples.

    docker-py appends the protocol itself, so passing "80/tcp" would produce
    "80/tcp/tcp".
    """
    if not exposed_ports:
        return None
    ports = []
    for key in exposed_ports:
        port, _, proto = key.partition('/')
        ports.append((port, proto or 'tcp'))
    return ports


class DockerGateway(ContainerGateway):
    """Gateway backed by a docker.DockerClient"""

    def __init__(self, client: docker.DockerClient, stop_timeout: int = 10):
        self.client = client
        self.stop_timeout = stop_timeout

    @classmethod
    def from_env(cls, **kwargs) -> 'DockerGateway':
        """Connect using DOCKER_HOST / DOCKER_TLS_VERIFY like the docker CLI"""
        return cls(docker.from_env(), **kwargs)

    async def inspect(self, container_id: str) -> Dict[str, Any]:
        try:
            return await async_docker_call(self.client.api.inspect_container, container_id)
        except Exception as e:
            raise _translate(e, "Inspect", container_id) from e

    async def inspect_image(self, image: str) -> Dict[str, Any]:
        try:
            return await async_docker_call(self.client.api.inspect_image, image)
        except Exception as e:
            raise _translate(e, "Inspect image", image) from e

    async def stop(self, container_id: str, timeout: Optional[int] = None) -> None:
        try:
            await async_docker_call(
                self.client.api.stop, container_id, timeout=timeout or self.stop_timeout
            )
        except Exception as e:
            raise _translate(e, "Stop", container_id) from e

    async def remove(self, container_id: str, force: bool = True) -> None:
        try:
            await async_docker_call(self.client.api.remove_container, container_id, force=force)
        except Exception as e:
            raise _translate(e, "Remove", container_id) from e

    async def pull(self, repo: str, tag: str) -> None:
        try:
            # Blocks until the pull finishes and returns the JSON-lines progress output
            output = await async_docker_call(self.client.api.pull, repo, tag=tag)
        except Exception as e:
            raise _translate(e, "Pull", f"{repo}:{tag}") from e

        for line in (output or '').splitlines():
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if isinstance(event, dict) and event.get('error'):
                raise GatewayError(f"Pull {repo}:{tag} failed: {event['error']}")
        logger.debug(f"Pulled {repo}:{tag}")

    async def create(self, config: Dict[str, Any], name: str) -> str:
        host_config = dict(config.get('HostConfig') or {})
        networking_config = config.get('NetworkingConfig')

        api_version = version.parse(self.client.api.api_version)
        connect_after_create = None
        if networking_config and api_version < version.parse(MULTI_NETWORK_CREATE_API):
            # Older daemons only honour one endpoint at create time
            connect_after_create = networking_config
            networking_config = None

        try:
            response = await async_docker_call(
                self.client.api.create_container,
                image=config['Image'],
                name=name,
                command=config.get('Cmd'),
                entrypoint=config.get('Entrypoint'),
                environment=config.get('Env'),
                working_dir=config.get('WorkingDir') or None,
                labels=config.get('Labels'),
                ports=_split_exposed_ports(config.get('ExposedPorts')),
                host_config=host_config,
                networking_config=networking_config,
                healthcheck=config.get('Healthcheck'),
                user=config.get('User') or None,
                hostname=config.get('Hostname'),
                tty=config.get('Tty', False),
                stdin_open=config.get('OpenStdin', False),
                stop_signal=config.get('StopSignal'),
            )
        except Exception as e:
            raise _translate(e, "Create", name) from e

        container_id = response['Id']

        if connect_after_create:
            await self._connect_networks(container_id, connect_after_create)

        return container_id

    async def _connect_networks(self, container_id: str, networking_config: Dict[str, Any]) -> None:
        """Attach endpoint settings one by one for daemons older than API 1.44."""
        endpoints = networking_config.get('EndpointsConfig') or {}
        for network_name, endpoint in endpoints.items():
            ipam = endpoint.get('IPAMConfig') or {}
            try:
                await async_docker_call(
                    self.client.api.connect_container_to_network,
                    container_id,
                    network_name,
                    aliases=endpoint.get('Aliases'),
                    links=endpoint.get('Links'),
                    ipv4_address=ipam.get('IPv4Address'),
                    ipv6_address=ipam.get('IPv6Address'),
                )
                logger.debug(f"Connected {container_id[:12]} to network {network_name}")
            except docker.errors.APIError as e:
                # Already attached through HostConfig.NetworkMode
                if e.status_code == 403 or 'already exists' in str(e).lower():
                    continue
                raise _translate(e, "Connect network", network_name) from e

    async def start(self, container_id: str) -> None:
        try:
            await async_docker_call(self.client.api.start, container_id)
        except Exception as e:
            raise _translate(e, "Start", container_id) from e

    async def logs(self, container_id: str, tail: int = 50) -> str:
        try:
            output = await async_docker_call(
                self.client.api.logs,
                container_id,
                stdout=True,
                stderr=True,
                tail=tail,
                timestamps=True,
            )
        except Exception as e:
            raise _translate(e, "Logs", container_id) from e
        if isinstance(output, bytes):
            return output.decode('utf-8', errors='replace')
        return output or ''

    async def list_all(self) -> List[Dict[str, Any]]:
        try:
            return await async_docker_call(self.client.api.containers, all=True)
        except Exception as e:
            raise _translate(e, "List", "containers") from e

    async def close(self) -> None:
        await async_docker_call(self.client.close)
