"""
Shared pytest fixtures for DockShift tests.

Fixtures provided:
- fake_clock: Monotonic clock whose sleep() advances time instantly
- container_factory: Builds Docker inspect payloads
- snapshot_factory: Builds ContainerSnapshot objects from the same payloads
- fake_gateway: In-memory ContainerGateway with error injection
- gateway_pool: GatewayPool with fake_gateway registered as ("local", "1")
- mock_registry_client: MagicMock standing in for RegistryClient

Note: FakeGateway behaves like a Docker daemon for the calls the orchestrator
makes: stopping a stopped container answers 304, creating over an existing
name answers 409, unknown references answer 404.
"""

import copy
import hashlib
import os
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from gateways.base import ContainerGateway, GatewayPool
from gateways.errors import GatewayConflict, GatewayNotFound, GatewayNotModified
from models.container_models import ContainerSnapshot


def make_container_id(seed: str) -> str:
    """Deterministic 64-hex container ID"""
    return hashlib.sha256(seed.encode()).hexdigest()


def inspect_attrs(
    name: str,
    container_id: Optional[str] = None,
    image: str = "nginx:latest",
    image_id: str = "sha256:" + "a" * 64,
    status: str = "running",
    health: Optional[str] = None,
    exit_code: int = 0,
    network_mode: str = "bridge",
    labels: Optional[Dict[str, str]] = None,
    stack: Optional[str] = None,
    env: Optional[List[str]] = None,
    healthcheck: Optional[Dict[str, Any]] = None,
    networks: Optional[Dict[str, Any]] = None,
    host_config: Optional[Dict[str, Any]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a Docker container inspect payload"""
    container_id = container_id or make_container_id(name)
    labels = dict(labels or {})
    if stack:
        labels['com.docker.compose.project'] = stack

    state = {
        'Status': status,
        'Running': status == 'running',
        'ExitCode': exit_code,
        'StartedAt': '2025-01-01T00:00:00Z',
    }
    if health:
        state['Health'] = {'Status': health}

    container_config = {
        'Image': image,
        'Env': list(env or ['PATH=/usr/bin']),
        'Labels': labels,
        'Hostname': container_id[:12],
    }
    if healthcheck:
        container_config['Healthcheck'] = healthcheck
    container_config.update(config or {})

    container_host_config = {
        'NetworkMode': network_mode,
        'RestartPolicy': {'Name': 'unless-stopped'},
    }
    container_host_config.update(host_config or {})

    return {
        'Id': container_id,
        'Name': f'/{name}',
        'Image': image_id,
        'State': state,
        'Config': container_config,
        'HostConfig': container_host_config,
        'NetworkSettings': {'Networks': copy.deepcopy(networks) if networks else {}},
    }


class FakeClock:
    """Fake monotonic clock; sleep() advances it without waiting"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGateway(ContainerGateway):
    """
    In-memory gateway.

    Attributes:
        containers: container ID -> inspect payload
        calls: (operation, container name or reference) in call order
        created: (name, new ID, create body) per successful create
        health_on_start: name -> health status set when the container starts
        exit_on_start: names whose containers exit (code 1) as soon as they start
        state_scripts: name -> list of State dicts applied on successive inspects
    """

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.created: List[tuple] = []
        self.pulled: List[str] = []
        self.health_on_start: Dict[str, str] = {}
        self.exit_on_start = set()
        self.state_scripts: Dict[str, List[Dict[str, Any]]] = {}
        self.log_output = "line 1\nline 2\nfatal: config missing"
        self._errors: Dict[tuple, List[Exception]] = {}
        self._counter = 0

    # Setup helpers

    def add(self, attrs: Dict[str, Any]) -> str:
        self.containers[attrs['Id']] = copy.deepcopy(attrs)
        return attrs['Id']

    def fail_next(self, operation: str, ref: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of operation on ref (name or ID) raise error"""
        self._errors.setdefault((operation, ref), []).extend([error] * times)

    def by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for attrs in self.containers.values():
            if attrs['Name'].lstrip('/') == name:
                return attrs
        return None

    def names(self) -> List[str]:
        return sorted(attrs['Name'].lstrip('/') for attrs in self.containers.values())

    def operations(self, operation: str) -> List[str]:
        return [ref for op, ref in self.calls if op == operation]

    # Internals

    def _resolve(self, ref: str) -> Optional[Dict[str, Any]]:
        if ref in self.containers:
            return self.containers[ref]
        found = self.by_name(ref.lstrip('/'))
        if found is not None:
            return found
        if len(ref) >= 12:
            for container_id, attrs in self.containers.items():
                if container_id.startswith(ref):
                    return attrs
        return None

    def _label(self, ref: str) -> str:
        attrs = self._resolve(ref)
        return attrs['Name'].lstrip('/') if attrs else ref

    def _maybe_fail(self, operation: str, ref: str) -> None:
        keys = [(operation, ref)]
        attrs = self._resolve(ref)
        if attrs is not None:
            keys.append((operation, attrs['Name'].lstrip('/')))
            keys.append((operation, attrs['Id']))
        for key in keys:
            pending = self._errors.get(key)
            if pending:
                raise pending.pop(0)

    def _get(self, ref: str) -> Dict[str, Any]:
        attrs = self._resolve(ref)
        if attrs is None:
            raise GatewayNotFound(f"No such container: {ref}", 404)
        return attrs

    # ContainerGateway

    async def inspect(self, container_id: str) -> Dict[str, Any]:
        self.calls.append(('inspect', self._label(container_id)))
        self._maybe_fail('inspect', container_id)
        attrs = self._get(container_id)
        script = self.state_scripts.get(attrs['Name'].lstrip('/'))
        if script:
            attrs['State'] = copy.deepcopy(script.pop(0))
        return copy.deepcopy(attrs)

    async def inspect_image(self, image: str) -> Dict[str, Any]:
        self.calls.append(('inspect_image', image))
        if image not in self.images:
            raise GatewayNotFound(f"No such image: {image}", 404)
        return copy.deepcopy(self.images[image])

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        self.calls.append(('stop', self._label(container_id)))
        self._maybe_fail('stop', container_id)
        attrs = self._get(container_id)
        if not attrs['State'].get('Running'):
            raise GatewayNotModified(f"Container {container_id} is not running", 304)
        attrs['State'].update({'Status': 'exited', 'Running': False, 'ExitCode': 0})
        attrs['State'].pop('Health', None)

    async def remove(self, container_id: str, force: bool = True) -> None:
        self.calls.append(('remove', self._label(container_id)))
        self._maybe_fail('remove', container_id)
        attrs = self._get(container_id)
        del self.containers[attrs['Id']]

    async def pull(self, repo: str, tag: str) -> None:
        self.calls.append(('pull', f"{repo}:{tag}"))
        self._maybe_fail('pull', f"{repo}:{tag}")
        self.pulled.append(f"{repo}:{tag}")

    async def create(self, config: Dict[str, Any], name: str) -> str:
        self.calls.append(('create', name))
        self._maybe_fail('create', name)
        if self.by_name(name) is not None:
            raise GatewayConflict(f'Conflict. The container name "/{name}" is already in use', 409)

        self._counter += 1
        new_id = make_container_id(f"{name}-{self._counter}")
        container_config = {k: copy.deepcopy(v) for k, v in config.items() if k not in ('HostConfig', 'NetworkingConfig')}
        host_config = copy.deepcopy(config.get('HostConfig') or {})
        host_config.setdefault('NetworkMode', 'default')
        image = config['Image']
        self.containers[new_id] = {
            'Id': new_id,
            'Name': f'/{name}',
            'Image': image if image.startswith('sha256:') else 'sha256:' + make_container_id(image),
            'State': {'Status': 'created', 'Running': False, 'ExitCode': 0},
            'Config': container_config,
            'HostConfig': host_config,
            'NetworkSettings': {
                'Networks': copy.deepcopy((config.get('NetworkingConfig') or {}).get('EndpointsConfig') or {})
            },
        }
        self.created.append((name, new_id, copy.deepcopy(config)))
        return new_id

    async def start(self, container_id: str) -> None:
        self.calls.append(('start', self._label(container_id)))
        self._maybe_fail('start', container_id)
        attrs = self._get(container_id)
        if attrs['State'].get('Running'):
            raise GatewayNotModified(f"Container {container_id} already started", 304)

        name = attrs['Name'].lstrip('/')
        if name in self.exit_on_start:
            attrs['State'] = {'Status': 'exited', 'Running': False, 'ExitCode': 1}
            return

        attrs['State'] = {'Status': 'running', 'Running': True, 'ExitCode': 0}
        if name in self.health_on_start:
            attrs['State']['Health'] = {'Status': self.health_on_start[name]}

    async def logs(self, container_id: str, tail: int = 50) -> str:
        self.calls.append(('logs', self._label(container_id)))
        return self.log_output

    async def list_all(self) -> List[Dict[str, Any]]:
        self.calls.append(('list_all', ''))
        return [
            {'Id': container_id, 'Names': [attrs['Name']], 'State': attrs['State'].get('Status')}
            for container_id, attrs in self.containers.items()
        ]


@pytest.fixture
def fake_clock():
    """Clock + instant sleep for readiness and polling loops"""
    return FakeClock()


@pytest.fixture
def container_factory():
    """Factory for Docker inspect payloads"""
    return inspect_attrs


@pytest.fixture
def snapshot_factory():
    """Factory for ContainerSnapshot objects: snapshot_factory("web", stack="media")"""
    def _make(name: str, repo_digests: Optional[List[str]] = None, **kwargs) -> ContainerSnapshot:
        return ContainerSnapshot.from_inspect(inspect_attrs(name, **kwargs), repo_digests=repo_digests)
    return _make


@pytest.fixture
def fake_gateway():
    """Empty in-memory gateway"""
    return FakeGateway()


@pytest.fixture
def gateway_pool(fake_gateway):
    """GatewayPool with fake_gateway registered as ("local", "1")"""
    pool = GatewayPool()
    pool.register("local", "1", fake_gateway)
    return pool


@pytest.fixture
def mock_registry_client():
    """
    Mock RegistryClient.

    get_latest_digest / get_tag_publish_date are AsyncMocks returning None;
    clear_cache is a plain MagicMock.
    """
    client = MagicMock()
    client.get_latest_digest = AsyncMock(return_value=None)
    client.get_tag_publish_date = AsyncMock(return_value=None)
    client.clear_cache = MagicMock()
    return client
