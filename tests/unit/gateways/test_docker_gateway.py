"""
Tests for DockerGateway.

The docker-py client is a MagicMock; these tests cover error translation
into gateway errors and create-body translation to create_container kwargs.
"""

import json

import docker
import pytest
import requests
from unittest.mock import MagicMock, Mock

from gateways.docker_gateway import DockerGateway, _split_exposed_ports
from gateways.errors import (
    GatewayConfigRejected,
    GatewayConflict,
    GatewayError,
    GatewayNotFound,
    GatewayNotModified,
    GatewayTransportError,
)


def api_error(status_code, explanation="error"):
    return docker.errors.APIError("docker error", response=Mock(status_code=status_code), explanation=explanation)


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.api.api_version = "1.45"
    return client


@pytest.fixture
def gateway(mock_client):
    return DockerGateway(mock_client)


@pytest.mark.unit
class TestErrorTranslation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_cls", [
        (404, GatewayNotFound),
        (304, GatewayNotModified),
        (409, GatewayConflict),
        (400, GatewayConfigRejected),
        (500, GatewayError),
    ])
    async def test_status_codes(self, gateway, mock_client, status, error_cls):
        mock_client.api.stop.side_effect = api_error(status, "something happened")

        with pytest.raises(error_cls) as exc_info:
            await gateway.stop("abc123def456")

        assert exc_info.value.status_code == status
        assert "something happened" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_errors(self, gateway, mock_client):
        mock_client.api.start.side_effect = requests.exceptions.ConnectionError("Connection aborted")

        with pytest.raises(GatewayTransportError):
            await gateway.start("abc123def456")

    @pytest.mark.asyncio
    async def test_docker_not_found_subclass(self, gateway, mock_client):
        mock_client.api.inspect_container.side_effect = docker.errors.NotFound(
            "No such container", response=Mock(status_code=404), explanation="No such container: missing"
        )

        with pytest.raises(GatewayNotFound):
            await gateway.inspect("missing")


@pytest.mark.unit
class TestOperations:

    @pytest.mark.asyncio
    async def test_inspect(self, gateway, mock_client):
        mock_client.api.inspect_container.return_value = {'Id': 'abc', 'Name': '/web'}

        assert await gateway.inspect("abc") == {'Id': 'abc', 'Name': '/web'}
        mock_client.api.inspect_container.assert_called_once_with("abc")

    @pytest.mark.asyncio
    async def test_stop_uses_default_timeout(self, mock_client):
        gateway = DockerGateway(mock_client, stop_timeout=30)

        await gateway.stop("abc")

        mock_client.api.stop.assert_called_once_with("abc", timeout=30)

    @pytest.mark.asyncio
    async def test_remove_forces(self, gateway, mock_client):
        await gateway.remove("abc")
        mock_client.api.remove_container.assert_called_once_with("abc", force=True)

    @pytest.mark.asyncio
    async def test_pull_error_in_stream(self, gateway, mock_client):
        mock_client.api.pull.return_value = "\n".join([
            json.dumps({"status": "Pulling from library/nginx"}),
            json.dumps({"error": "manifest for nginx:nope not found"}),
        ])

        with pytest.raises(GatewayError, match="manifest for nginx:nope not found"):
            await gateway.pull("nginx", "nope")

    @pytest.mark.asyncio
    async def test_pull_success(self, gateway, mock_client):
        mock_client.api.pull.return_value = json.dumps({"status": "Downloaded newer image for nginx:latest"})

        await gateway.pull("nginx", "latest")

        mock_client.api.pull.assert_called_once_with("nginx", tag="latest")

    @pytest.mark.asyncio
    async def test_logs_decoded(self, gateway, mock_client):
        mock_client.api.logs.return_value = b"2025-01-01T00:00:00Z starting\n"

        assert await gateway.logs("abc", tail=10) == "2025-01-01T00:00:00Z starting\n"
        assert mock_client.api.logs.call_args.kwargs["tail"] == 10

    @pytest.mark.asyncio
    async def test_list_all(self, gateway, mock_client):
        mock_client.api.containers.return_value = [{'Id': 'a'}, {'Id': 'b'}]

        assert len(await gateway.list_all()) == 2
        mock_client.api.containers.assert_called_once_with(all=True)


@pytest.mark.unit
class TestCreate:

    BODY = {
        'Image': 'nginx:1.25',
        'Env': ['TZ=UTC'],
        'Cmd': ['nginx', '-g', 'daemon off;'],
        'Labels': {'app': 'web'},
        'ExposedPorts': {'80/tcp': {}, '53/udp': {}},
        'HostConfig': {'NetworkMode': 'backend', 'Binds': ['/srv:/srv']},
        'NetworkingConfig': {
            'EndpointsConfig': {
                'backend': {'Aliases': ['web'], 'IPAMConfig': {'IPv4Address': '10.0.0.5'}},
            },
        },
    }

    @pytest.mark.asyncio
    async def test_create_passes_body(self, gateway, mock_client):
        mock_client.api.create_container.return_value = {'Id': 'new123'}

        assert await gateway.create(self.BODY, "web") == 'new123'

        kwargs = mock_client.api.create_container.call_args.kwargs
        assert kwargs['image'] == 'nginx:1.25'
        assert kwargs['name'] == 'web'
        assert kwargs['environment'] == ['TZ=UTC']
        assert kwargs['ports'] == [('80', 'tcp'), ('53', 'udp')]
        assert kwargs['host_config'] == {'NetworkMode': 'backend', 'Binds': ['/srv:/srv']}
        assert kwargs['networking_config'] == self.BODY['NetworkingConfig']
        mock_client.api.connect_container_to_network.assert_not_called()

    @pytest.mark.asyncio
    async def test_old_api_connects_networks_after_create(self, gateway, mock_client):
        mock_client.api.api_version = "1.41"
        mock_client.api.create_container.return_value = {'Id': 'new123'}

        await gateway.create(self.BODY, "web")

        assert mock_client.api.create_container.call_args.kwargs['networking_config'] is None
        mock_client.api.connect_container_to_network.assert_called_once_with(
            'new123',
            'backend',
            aliases=['web'],
            links=None,
            ipv4_address='10.0.0.5',
            ipv6_address=None,
        )

    @pytest.mark.asyncio
    async def test_rejected_config(self, gateway, mock_client):
        mock_client.api.create_container.side_effect = api_error(400, "invalid port specification")

        with pytest.raises(GatewayConfigRejected):
            await gateway.create(self.BODY, "web")

    def test_split_exposed_ports(self):
        assert _split_exposed_ports({'8080': {}}) == [('8080', 'tcp')]
        assert _split_exposed_ports(None) is None
