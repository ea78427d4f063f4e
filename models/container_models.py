"""
Container Models for DockShift
Pydantic models for inspected container state used by detection and upgrades
"""

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 12

STACK_LABELS = (
    'com.docker.compose.project',
    'com.docker.stack.namespace',
)


class LiveState(str, Enum):
    """Coarse container run state"""
    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    """Docker HEALTHCHECK status ("none" when no healthcheck is configured)"""
    NONE = "none"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


def derive_stack_name(labels: Optional[dict[str, str]]) -> Optional[str]:
    """
    Derive the stack/compose project a container belongs to.

    Example:
        >>> derive_stack_name({'com.docker.compose.project': 'media'})
        'media'
    """
    if not labels:
        return None
    for label in STACK_LABELS:
        value = (labels.get(label) or '').strip()
        if value:
            return value
    return None


def _map_live_state(state: dict[str, Any]) -> LiveState:
    if state.get('Running'):
        return LiveState.RUNNING
    status = (state.get('Status') or '').lower()
    if status == 'running':
        return LiveState.RUNNING
    if status in ('exited', 'dead', 'created'):
        return LiveState.EXITED
    return LiveState.UNKNOWN


def _map_health(state: dict[str, Any]) -> HealthStatus:
    health = state.get('Health') or {}
    status = (health.get('Status') or '').lower()
    try:
        return HealthStatus(status) if status else HealthStatus.NONE
    except ValueError:
        logger.debug(f"Unrecognized health status '{status}', treating as none")
        return HealthStatus.NONE


class ContainerSnapshot(BaseModel):
    """
    Point-in-time view of one container, built from an inspect response.

    Snapshots are never reused across orchestration steps: anything that
    needs the live state inspects again and builds a new snapshot.
    """
    id: str
    name: str
    image: str  # Image reference the container was created from (Config.Image)
    image_id: Optional[str] = None  # Local image ID (sha256:...)
    repo_digests: list[str] = Field(default_factory=list)  # e.g. ["nginx@sha256:..."]
    state: LiveState = LiveState.UNKNOWN
    health: HealthStatus = HealthStatus.NONE
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    network_mode: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    stack_name: Optional[str] = None

    # Raw inspect sections needed to recreate the container
    config: dict[str, Any] = Field(default_factory=dict)
    host_config: dict[str, Any] = Field(default_factory=dict)
    network_settings: dict[str, Any] = Field(default_factory=dict)

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @property
    def identity_keys(self) -> tuple[str, str, str]:
        """All three ways other containers may refer to this one"""
        return (self.name, self.id, self.short_id)

    @property
    def is_running(self) -> bool:
        return self.state == LiveState.RUNNING

    @property
    def has_healthcheck(self) -> bool:
        return self.health != HealthStatus.NONE

    @classmethod
    def from_inspect(cls, attrs: dict[str, Any], repo_digests: Optional[list[str]] = None) -> 'ContainerSnapshot':
        """
        Build a snapshot from a Docker inspect payload.

        Args:
            attrs: Container inspect JSON (docker `container.attrs` or API response)
            repo_digests: RepoDigests of the container's image, when the caller
                          inspected the image as well

        Returns:
            ContainerSnapshot
        """
        config = attrs.get('Config') or {}
        host_config = attrs.get('HostConfig') or {}
        state = attrs.get('State') or {}
        labels = config.get('Labels') or {}

        name = (attrs.get('Name') or '').lstrip('/')
        image = config.get('Image') or attrs.get('Image') or ''

        return cls(
            id=attrs.get('Id', ''),
            name=name,
            image=image,
            image_id=attrs.get('Image'),
            repo_digests=list(repo_digests or []),
            state=_map_live_state(state),
            health=_map_health(state),
            exit_code=state.get('ExitCode'),
            started_at=state.get('StartedAt'),
            network_mode=host_config.get('NetworkMode') or 'default',
            labels=labels,
            stack_name=derive_stack_name(labels),
            config=config,
            host_config=host_config,
            network_settings=attrs.get('NetworkSettings') or {},
        )
