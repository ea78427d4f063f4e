"""
Shared types for update detection and container upgrades.

This module contains the enums and dataclasses passed between the update
checker, the dependency analyzer and the upgrade orchestrator.
"""

from dataclasses import dataclass, field
from typing import Optional, Callable, Awaitable, FrozenSet, Tuple
from enum import Enum


class UpgradeState(Enum):
    """States of one upgrade run, in execution order."""
    IDLE = "idle"
    STOP_DEPENDENTS = "stop_dependents"
    STOP_TARGET = "stop_target"
    AWAIT_STOPPED = "await_stopped"
    PULL_IMAGE = "pull_image"
    REMOVE_OLD = "remove_old"
    CREATE_NEW = "create_new"
    START_NEW = "start_new"
    AWAIT_READY = "await_ready"
    REPAIR_DEPENDENTS = "repair_dependents"
    DONE = "done"
    FAILED = "failed"


# Progress percentage reported when a state is entered
STATE_PROGRESS = {
    UpgradeState.IDLE: 0,
    UpgradeState.STOP_DEPENDENTS: 5,
    UpgradeState.STOP_TARGET: 10,
    UpgradeState.AWAIT_STOPPED: 15,
    UpgradeState.PULL_IMAGE: 25,
    UpgradeState.REMOVE_OLD: 45,
    UpgradeState.CREATE_NEW: 55,
    UpgradeState.START_NEW: 65,
    UpgradeState.AWAIT_READY: 75,
    UpgradeState.REPAIR_DEPENDENTS: 90,
    UpgradeState.DONE: 100,
    UpgradeState.FAILED: 100,
}


class RegistryProviderKind(Enum):
    """Where a "latest" answer came from."""
    DOCKERHUB = "dockerhub"
    GHCR = "ghcr"
    GITLAB = "gitlab"
    GCR = "gcr"
    GITHUB_RELEASES = "github-releases"

    @property
    def is_version_tracking(self) -> bool:
        """Release-based providers only know version strings, never digests."""
        return self is RegistryProviderKind.GITHUB_RELEASES


class DependencyReason(Enum):
    """Why a container has to be handled when its provider is replaced."""
    NETWORK_MODE = "network_mode"
    STACK_GROUP = "stack_group"


@dataclass(frozen=True)
class ContainerIdentity:
    """Name plus full ID; the short ID is derived."""
    name: str
    id: str

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def keys(self) -> Tuple[str, str, str]:
        return (self.name, self.id, self.short_id)


@dataclass(frozen=True)
class Dependent:
    """One container that depends on a provider."""
    identity: ContainerIdentity
    reason: DependencyReason


@dataclass
class DependencyEdge:
    """
    Provider -> dependents edge.

    Only one hop is modeled: dependents of dependents are not followed.
    """
    provider: ContainerIdentity
    dependents: list = field(default_factory=list)  # list[Dependent]

    def dependents_for(self, reason: DependencyReason) -> list:
        return [d for d in self.dependents if d.reason == reason]


@dataclass
class CurrentImageInfo:
    """What the running container has."""
    tag: str
    digest: Optional[str] = None
    # Digests the current manifest list resolves to across platforms
    repo_digests: FrozenSet[str] = frozenset()


@dataclass
class LatestImageInfo:
    """What the registry (or release feed) says is newest for a tag."""
    tag: str
    provider: RegistryProviderKind
    digest: Optional[str] = None
    publish_date: Optional[str] = None
    is_fallback: bool = False


@dataclass(frozen=True)
class UpdateInfo:
    """
    Result of comparing a container's image with the latest available.

    has_update is only True when a mismatch was positively established;
    any uncertainty resolves to False.
    """
    current_tag: str
    latest_tag: str
    has_update: bool
    provider: Optional[RegistryProviderKind] = None
    current_digest: Optional[str] = None
    latest_digest: Optional[str] = None
    is_fallback: bool = False
    publish_date: Optional[str] = None


@dataclass(frozen=True)
class UpgradeRequest:
    """One container to upgrade, as submitted by a caller."""
    gateway_ref: str
    endpoint_ref: str
    container_id: str
    image_reference: str


@dataclass(frozen=True)
class UpgradeOutcome:
    """
    Result of one upgrade run. Produced once, never mutated.
    """
    success: bool
    container_id: str
    container_name: str
    new_container_id: Optional[str]
    old_image: str
    new_image: str
    repaired_dependents: Tuple[str, ...] = ()
    failed_dependents: Tuple[str, ...] = ()

    @classmethod
    def success_result(
        cls,
        container_id: str,
        container_name: str,
        new_container_id: str,
        old_image: str,
        new_image: str,
        repaired_dependents=(),
        failed_dependents=(),
    ) -> 'UpgradeOutcome':
        """Create a successful outcome."""
        return cls(
            success=True,
            container_id=container_id,
            container_name=container_name,
            new_container_id=new_container_id,
            old_image=old_image,
            new_image=new_image,
            repaired_dependents=tuple(repaired_dependents),
            failed_dependents=tuple(failed_dependents),
        )


# Type alias for progress callback
# Signature: async def callback(stage: str, percent: int, message: str) -> None
ProgressCallback = Callable[[str, int, str], Awaitable[None]]
