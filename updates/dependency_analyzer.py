"""
Container Network Dependency Analysis

Works out which containers must be handled when a container is replaced:

- network-mode dependents (network_mode: service:X / container:X) share the
  provider's network namespace and are bound to its runtime ID, so they
  have to be recreated once the provider has a new ID
- stack dependents (same compose project / stack label) are restarted

Also detects update batches that would replace a provider and one of its
network-mode dependents at the same time.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from models.container_models import SHORT_ID_LENGTH, ContainerSnapshot, LiveState
from updates.types import ContainerIdentity, DependencyEdge, DependencyReason, Dependent

logger = logging.getLogger(__name__)

SHARED_NETWORK_PREFIXES = ('service:', 'container:')


def parse_network_mode_ref(network_mode: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a shared network mode into (prefix, reference).

    Examples:
        >>> parse_network_mode_ref("service:tunnel")
        ('service:', 'tunnel')
        >>> parse_network_mode_ref("bridge") is None
        True
    """
    if not network_mode:
        return None
    for prefix in SHARED_NETWORK_PREFIXES:
        if network_mode.startswith(prefix):
            ref = network_mode[len(prefix):].strip()
            return (prefix, ref) if ref else None
    return None


def uses_network_mode(snapshot: ContainerSnapshot) -> bool:
    """True if the container shares another container's network namespace"""
    return parse_network_mode_ref(snapshot.network_mode) is not None


def identity_of(snapshot: ContainerSnapshot) -> ContainerIdentity:
    return ContainerIdentity(name=snapshot.name, id=snapshot.id)


class IdentityIndex:
    """
    Multi-key lookup over a set of snapshots.

    Every snapshot is reachable by name, full ID and short ID. A full ID
    reference is also matched through its 12-char prefix, since network
    modes may carry either form.
    """

    def __init__(self, snapshots: Iterable[ContainerSnapshot] = ()):
        self._by_key: Dict[str, ContainerSnapshot] = {}
        self._snapshots: List[ContainerSnapshot] = []
        for snapshot in snapshots:
            self.add(snapshot)

    def add(self, snapshot: ContainerSnapshot) -> None:
        self._snapshots.append(snapshot)
        for key in snapshot.identity_keys:
            if key:
                self._by_key[key] = snapshot

    def resolve(self, ref: Optional[str]) -> Optional[ContainerSnapshot]:
        if not ref:
            return None
        ref = ref.lstrip('/')
        found = self._by_key.get(ref)
        if found is None and len(ref) > SHORT_ID_LENGTH:
            found = self._by_key.get(ref[:SHORT_ID_LENGTH])
            # Guard against a name that happens to equal a 12-char prefix
            if found is not None and not found.id.startswith(ref):
                found = None
        return found

    def __contains__(self, ref: str) -> bool:
        return self.resolve(ref) is not None

    def __iter__(self) -> Iterator[ContainerSnapshot]:
        return iter(self._snapshots)

    def __len__(self) -> int:
        return len(self._snapshots)


class DependencyGraph:
    """
    Provider -> dependents edges, reachable by any provider identity key.

    Only direct (one-hop) edges are modeled.
    """

    def __init__(self):
        self._edges: Dict[str, DependencyEdge] = {}  # provider full ID -> edge
        self._by_key: Dict[str, DependencyEdge] = {}

    def add_dependent(self, provider: ContainerSnapshot, dependent: Dependent) -> None:
        edge = self._edges.get(provider.id)
        if edge is None:
            edge = DependencyEdge(provider=identity_of(provider))
            self._edges[provider.id] = edge
            # Register under all three keys so name/ID/short-ID lookups share one list
            for key in provider.identity_keys:
                if key:
                    self._by_key[key] = edge
        if dependent not in edge.dependents:
            edge.dependents.append(dependent)

    def edge_for(self, key: str) -> Optional[DependencyEdge]:
        return self._by_key.get(key)

    def dependents_of(self, key: str) -> List[Dependent]:
        edge = self._by_key.get(key)
        return list(edge.dependents) if edge else []

    @property
    def edges(self) -> List[DependencyEdge]:
        return list(self._edges.values())

    def __iter__(self) -> Iterator[DependencyEdge]:
        return iter(self._edges.values())

    def __len__(self) -> int:
        return len(self._edges)


def build_graph(snapshots: Iterable[ContainerSnapshot]) -> DependencyGraph:
    """
    Build network-mode dependency edges for a host's containers.

    A dependent is attached to a provider only when its network mode refers
    to the provider by name, full ID or short ID.
    """
    index = IdentityIndex(snapshots)
    graph = DependencyGraph()

    for snapshot in index:
        parsed = parse_network_mode_ref(snapshot.network_mode)
        if not parsed:
            continue

        _, ref = parsed
        provider = index.resolve(ref)
        if provider is None:
            logger.debug(f"Container {snapshot.name} uses network of unknown container '{ref}'")
            continue
        if provider.id == snapshot.id:
            continue

        graph.add_dependent(provider, Dependent(identity=identity_of(snapshot), reason=DependencyReason.NETWORK_MODE))
        logger.debug(f"Network dependency: {snapshot.name} -> {provider.name} ({snapshot.network_mode})")

    return graph


def provides_network(snapshot: ContainerSnapshot, graph: DependencyGraph) -> bool:
    """True if any of the container's identity keys has dependents"""
    return any(graph.dependents_of(key) for key in snapshot.identity_keys)


def find_network_dependents(target: ContainerSnapshot, graph: DependencyGraph) -> List[Dependent]:
    for key in target.identity_keys:
        dependents = graph.dependents_of(key)
        if dependents:
            return dependents
    return []


def find_stack_dependents(
    target: ContainerSnapshot,
    snapshots: Iterable[ContainerSnapshot],
    exclude: Iterable[str] = (),
) -> List[Dependent]:
    """
    Same-stack containers (running or stopped) other than the target.

    Args:
        target: Container being replaced
        snapshots: All containers on the host
        exclude: Container IDs already handled another way (network-mode dependents)
    """
    if not target.stack_name:
        return []

    excluded = set(exclude)
    dependents = []
    for snapshot in snapshots:
        if snapshot.id == target.id or snapshot.id in excluded:
            continue
        if snapshot.stack_name != target.stack_name:
            continue
        if snapshot.state not in (LiveState.RUNNING, LiveState.EXITED):
            continue
        dependents.append(Dependent(identity=identity_of(snapshot), reason=DependencyReason.STACK_GROUP))
    return dependents


class DependencyConflictDetector:
    """
    Detects container dependency conflicts in update batches.

    When a container uses network_mode: container:X, it shares the network
    namespace with container X (the "provider"). If both containers are
    updated simultaneously:

    1. Provider updates, gets new container ID
    2. Provider tries to recreate dependent (points to new ID)
    3. Dependent's own update is running in parallel
    4. Both try to recreate the same container → catastrophic collision

    This detector prevents that scenario by failing fast with a clear error.
    """

    def check_batch(self, snapshots: List[ContainerSnapshot]) -> Optional[str]:
        """
        Check if an update batch contains a network provider and one of its dependents.

        Args:
            snapshots: Containers in the batch (all on the same endpoint)

        Returns:
            Error message if conflict detected, None otherwise
        """
        if len(snapshots) < 2:
            return None

        index = IdentityIndex(snapshots)
        for snapshot in snapshots:
            parsed = parse_network_mode_ref(snapshot.network_mode)
            if not parsed:
                continue

            provider = index.resolve(parsed[1])
            if provider is not None and provider.id != snapshot.id:
                conflict_msg = (
                    f"Cannot update containers with network dependencies simultaneously. "
                    f"Container '{snapshot.name}' depends on '{provider.name}' for networking. "
                    f"Please update '{provider.name}' first - '{snapshot.name}' will be "
                    f"automatically recreated with the new network connection."
                )
                logger.error(f"DEPENDENCY CONFLICT DETECTED: {conflict_msg}")
                return conflict_msg

        return None
