"""
Updates Module

Update detection and in-place container upgrades.

Architecture:
- update_checker: evaluate() and UpdateChecker (is a newer image published?)
- registry_adapter / registry_providers: RegistryClient and per-registry lookups
- dependency_analyzer: network-mode / stack dependency graph
- update_executor: UpgradeOrchestrator (stop -> pull -> remove -> create -> start -> probe -> repair)

Only the shared types and errors are re-exported here; the services import
utils/gateways modules that themselves depend on updates.errors.
"""

from updates.types import (
    UpgradeState,
    RegistryProviderKind,
    DependencyReason,
    CurrentImageInfo,
    LatestImageInfo,
    UpdateInfo,
    UpgradeRequest,
    UpgradeOutcome,
)
from updates.errors import (
    UpgradeError,
    ContainerNotFoundError,
    ConfigRejectedError,
    ReadinessError,
    ContainerExitedError,
    ContainerUnhealthyError,
    ReadinessTimeoutError,
    DependentRepairError,
    UpgradeInProgressError,
    DependencyConflictError,
    RateLimitExceeded,
)

__all__ = [
    'UpgradeState',
    'RegistryProviderKind',
    'DependencyReason',
    'CurrentImageInfo',
    'LatestImageInfo',
    'UpdateInfo',
    'UpgradeRequest',
    'UpgradeOutcome',
    'UpgradeError',
    'ContainerNotFoundError',
    'ConfigRejectedError',
    'ReadinessError',
    'ContainerExitedError',
    'ContainerUnhealthyError',
    'ReadinessTimeoutError',
    'DependentRepairError',
    'UpgradeInProgressError',
    'DependencyConflictError',
    'RateLimitExceeded',
]
