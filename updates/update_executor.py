"""
Upgrade Orchestrator

Replaces a running container with one created from a freshly pulled image
of the same tag, keeping its configuration and re-wiring containers that
depend on it:

1. Stop network-mode dependents (they reference the target's runtime ID)
2. Stop the target and wait for it to be stopped
3. Pull the same tag the container runs
4. Remove the old container
5. Create the replacement from the old configuration
6. Start it and wait until it is ready
7. Recreate network-mode dependents, restart stack dependents
8. Invalidate the cached "latest" digest for the repository/tag

Remove happens before create, so a rejected configuration leaves the host
without the container; a best-effort rollback recreates the old one from
its captured configuration and old image ID.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Tuple

from config.settings import AppConfig
from gateways.base import ContainerGateway, GatewayPool
from gateways.errors import GatewayConfigRejected, GatewayError, GatewayNotFound
from models.container_models import ContainerSnapshot
from updates.container_config import build_container_config
from updates.container_ops import ensure_removed, ensure_started, ensure_stopped
from updates.dependency_analyzer import (
    DependencyConflictDetector,
    IdentityIndex,
    build_graph,
    find_network_dependents,
    find_stack_dependents,
)
from updates.dependent_repair import DependentRepairer
from updates.errors import (
    ConfigRejectedError,
    ContainerNotFoundError,
    DependencyConflictError,
    UpgradeError,
)
from updates.image_ref import split_repo_tag
from updates.registry_adapter import RegistryClient, get_registry_client
from updates.state_machine import UpgradeStateMachine
from updates.types import ProgressCallback, UpgradeOutcome, UpgradeRequest, UpgradeState
from updates.upgrade_lock import UpgradeLockManager, get_upgrade_lock_manager
from utils.container_health import ReadinessProber, Sleep, wait_for_stopped
from utils.keys import make_composite_key

logger = logging.getLogger(__name__)

# Parallel inspects during dependency discovery
SCAN_CONCURRENCY = 10


class UpgradeOrchestrator:
    """
    Runs container upgrades through the UpgradeStateMachine.

    Each run owns its target and dependent set; concurrent runs on the same
    container are refused through the UpgradeLockManager.
    """

    def __init__(
        self,
        gateways: GatewayPool,
        registry_client: Optional[RegistryClient] = None,
        lock_manager: Optional[UpgradeLockManager] = None,
        max_concurrent: Optional[int] = None,
        sleep: Sleep = asyncio.sleep,
        prober_factory=None,
        repairer_factory=None,
        rollback_on_config_rejected: bool = True,
        dependents_settle: float = 3,
        stop_poll_attempts: int = 20,
        stop_poll_interval: float = 0.5,
    ):
        self.gateways = gateways
        self.registry = registry_client if registry_client is not None else get_registry_client()
        self.locks = lock_manager if lock_manager is not None else get_upgrade_lock_manager()
        self.max_concurrent = max_concurrent or AppConfig.MAX_CONCURRENT_UPGRADES
        self.sleep = sleep
        self.prober_factory = prober_factory or (lambda gateway: ReadinessProber(gateway, sleep=sleep))
        self.repairer_factory = repairer_factory or (lambda gateway: DependentRepairer(gateway, sleep=sleep))
        self.rollback_on_config_rejected = rollback_on_config_rejected
        self.dependents_settle = dependents_settle
        self.stop_poll_attempts = stop_poll_attempts
        self.stop_poll_interval = stop_poll_interval

    def _gateway(self, gateway_ref: str, endpoint_ref: str) -> ContainerGateway:
        try:
            return self.gateways.get(gateway_ref, endpoint_ref)
        except KeyError as e:
            raise UpgradeError(str(e)) from e

    def is_container_upgrading(self, gateway_ref: str, endpoint_ref: str, container_id: str) -> bool:
        """Check if a container is currently being upgraded"""
        return self.locks.is_locked(make_composite_key(gateway_ref, endpoint_ref, container_id))

    async def upgrade(
        self,
        gateway_ref: str,
        endpoint_ref: str,
        container_id: str,
        image_reference: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> UpgradeOutcome:
        """
        Upgrade one container in place.

        Args:
            gateway_ref: Gateway the container lives behind
            endpoint_ref: Endpoint within the gateway
            container_id: Container ID (full or short) or name
            image_reference: Image the container runs; defaults to its Config.Image.
                             The tag of this reference is re-pulled.
            progress_callback: Optional async callback(stage, percent, message)

        Returns:
            UpgradeOutcome

        Raises:
            UpgradeInProgressError: another run holds this container
            ContainerNotFoundError, ConfigRejectedError, ReadinessError, UpgradeError
        """
        gateway = self._gateway(gateway_ref, endpoint_ref)

        try:
            attrs = await gateway.inspect(container_id)
        except GatewayNotFound as e:
            raise ContainerNotFoundError(
                f"Container {container_id} not found. Refresh the container list and try again.",
                stage=UpgradeState.IDLE.value,
            ) from e
        except GatewayError as e:
            raise UpgradeError(f"Could not inspect container {container_id}: {e}", stage=UpgradeState.IDLE.value) from e

        target = ContainerSnapshot.from_inspect(attrs)
        image_reference = image_reference or target.image
        try:
            split_repo_tag(image_reference)
        except ValueError as e:
            raise UpgradeError(
                f"Cannot upgrade {target.name}: {e}",
                container_name=target.name,
                stage=UpgradeState.IDLE.value,
            ) from e

        lock_key = make_composite_key(gateway_ref, endpoint_ref, target.id)
        async with self.locks.locked(lock_key, owner="upgrade", container_name=target.name):
            return await self._run(gateway_ref, endpoint_ref, gateway, target, image_reference, progress_callback)

    async def _advance(self, sm: UpgradeStateMachine, state: UpgradeState, message: str) -> None:
        if not await sm.transition(state, message):
            raise UpgradeError(
                f"Invalid upgrade state transition {sm.state.value} -> {state.value}",
                container_name=sm.container_name,
                stage=sm.state.value,
            )

    async def _run(
        self,
        gateway_ref: str,
        endpoint_ref: str,
        gateway: ContainerGateway,
        target: ContainerSnapshot,
        image_reference: str,
        progress_callback: Optional[ProgressCallback],
    ) -> UpgradeOutcome:
        sm = UpgradeStateMachine(target.name, progress_callback)
        repo, tag = split_repo_tag(image_reference)
        new_image = f"{repo}:{tag}"

        logger.info(f"Starting upgrade of {target.name} ({target.short_id}): {image_reference} -> {new_image}")

        async with AsyncExitStack() as held_locks:
            try:
                # Dependency discovery is read-only and may run in parallel
                await self._advance(sm, UpgradeState.STOP_DEPENDENTS, "Checking for dependent containers")
                host_snapshots = await self._scan(gateway, include=target)
                graph = build_graph(host_snapshots)
                index = IdentityIndex(host_snapshots)
                network_dependents = [
                    index.resolve(d.identity.id) for d in find_network_dependents(target, graph)
                ]
                network_dependents = [d for d in network_dependents if d is not None]
                # Dependents are removed and recreated below; no other run may touch them meanwhile
                await self.locks.lock_all(
                    held_locks,
                    {make_composite_key(gateway_ref, endpoint_ref, d.id): d.name for d in network_dependents},
                    owner=f"upgrade of {target.name}",
                )
                await self._stop_dependents(gateway, network_dependents)

                await self._advance(sm, UpgradeState.STOP_TARGET, f"Stopping {target.name}")
                try:
                    await ensure_stopped(gateway, target.id, target.name)
                except GatewayNotFound as e:
                    raise ContainerNotFoundError(
                        f"Container {target.name} disappeared before it could be stopped",
                        container_name=target.name,
                        stage=sm.state.value,
                    ) from e

                await self._advance(sm, UpgradeState.AWAIT_STOPPED, f"Waiting for {target.name} to stop")
                stopped = await wait_for_stopped(
                    gateway,
                    target.id,
                    attempts=self.stop_poll_attempts,
                    interval=self.stop_poll_interval,
                    sleep=self.sleep,
                )
                if not stopped:
                    logger.warning(f"Container {target.name} did not confirm stop, proceeding anyway")

                await self._advance(sm, UpgradeState.PULL_IMAGE, f"Pulling {new_image}")
                await gateway.pull(repo, tag)

                await self._advance(sm, UpgradeState.REMOVE_OLD, f"Removing old container {target.short_id}")
                await ensure_removed(gateway, target.id, target.name)

                await self._advance(sm, UpgradeState.CREATE_NEW, f"Creating new {target.name}")
                new_id = await self._create_replacement(gateway, target, new_image, sm)

                await self._advance(sm, UpgradeState.START_NEW, f"Starting new {target.name}")
                await ensure_started(gateway, new_id, target.name)

                await self._advance(sm, UpgradeState.AWAIT_READY, f"Waiting for {target.name} to be ready")
                ready = await self.prober_factory(gateway).wait_until_ready(new_id, target.name, new_image)

                await self._advance(sm, UpgradeState.REPAIR_DEPENDENTS, "Repairing dependent containers")
                repaired, failed = await self._repair_dependents(gateway, target, ready, new_id, network_dependents)

                await self._advance(sm, UpgradeState.DONE, f"{target.name} upgraded")

            except UpgradeError as e:
                if e.stage is None:
                    e.stage = sm.state.value
                if e.container_name is None:
                    e.container_name = target.name
                logger.error(f"Upgrade of {target.name} failed at {sm.state.value}: {e.message}")
                await sm.fail(e.message)
                raise
            except GatewayError as e:
                stage = sm.state.value
                logger.error(f"Upgrade of {target.name} failed at {stage}: {e}")
                await sm.fail(str(e))
                raise UpgradeError(
                    f"Upgrade of {target.name} failed at {stage}: {e}",
                    container_name=target.name,
                    stage=stage,
                ) from e

        # Next update check must see the newly pulled digest
        self.registry.clear_cache(repo, tag)

        logger.info(f"Upgrade of {target.name} complete: {target.short_id} -> {new_id[:12]}")
        return UpgradeOutcome.success_result(
            container_id=target.id,
            container_name=target.name,
            new_container_id=new_id,
            old_image=image_reference,
            new_image=new_image,
            repaired_dependents=repaired,
            failed_dependents=failed,
        )

    async def _scan(self, gateway: ContainerGateway, include: ContainerSnapshot) -> List[ContainerSnapshot]:
        """Inspect every container on the endpoint; uninspectable ones are skipped"""
        try:
            summaries = await gateway.list_all()
        except GatewayError as e:
            logger.warning(f"Could not list containers, proceeding without dependency information: {e}")
            return [include]

        semaphore = asyncio.Semaphore(SCAN_CONCURRENCY)

        async def inspect_one(summary: Dict[str, Any]) -> Optional[ContainerSnapshot]:
            container_id = summary.get('Id')
            if not container_id or container_id == include.id:
                return None
            async with semaphore:
                try:
                    return ContainerSnapshot.from_inspect(await gateway.inspect(container_id))
                except GatewayError as e:
                    logger.debug(f"Could not inspect container {container_id[:12]}: {e}")
                    return None

        results = await asyncio.gather(*(inspect_one(s) for s in summaries))
        return [include] + [s for s in results if s is not None]

    async def _stop_dependents(self, gateway: ContainerGateway, dependents: List[ContainerSnapshot]) -> None:
        running = [d for d in dependents if d.is_running]
        if not running:
            return

        logger.info(f"Stopping {len(running)} network-mode dependent(s) before replacing their provider")
        for dependent in running:
            try:
                await ensure_stopped(gateway, dependent.id, dependent.name)
            except GatewayError as e:
                logger.warning(f"Failed to stop dependent {dependent.name}: {e}")

        await self.sleep(self.dependents_settle)

    async def _create_replacement(
        self,
        gateway: ContainerGateway,
        target: ContainerSnapshot,
        new_image: str,
        sm: UpgradeStateMachine,
    ) -> str:
        config = build_container_config(target, new_image)
        try:
            return await gateway.create(config, target.name)
        except GatewayConfigRejected as e:
            logger.error(f"Runtime rejected configuration for {target.name}: {e.message}")
            attempted, succeeded = False, False
            if self.rollback_on_config_rejected:
                attempted = True
                succeeded = await self._rollback(gateway, target)
            raise ConfigRejectedError(
                f"Failed to create container {target.name}: {e.message}. "
                f"This may be due to invalid network configuration, port conflicts, or other "
                f"container settings. The old container was removed"
                + (" and has been restored." if succeeded else " and could not be restored."),
                container_name=target.name,
                stage=sm.state.value,
                rollback_attempted=attempted,
                rollback_succeeded=succeeded,
            ) from e

    async def _rollback(self, gateway: ContainerGateway, target: ContainerSnapshot) -> bool:
        """Recreate the old container from its captured configuration and old image"""
        old_image = target.image_id or target.image
        logger.warning(f"Rolling back {target.name} to image {old_image[:19]}")
        try:
            restored_id = await gateway.create(build_container_config(target, old_image), target.name)
            await ensure_started(gateway, restored_id, target.name)
        except Exception as e:
            logger.error(f"Rollback of {target.name} failed: {e}", exc_info=True)
            return False
        logger.info(f"Rollback of {target.name} succeeded ({restored_id[:12]})")
        return True

    async def _repair_dependents(
        self,
        gateway: ContainerGateway,
        old_target: ContainerSnapshot,
        new_target: ContainerSnapshot,
        new_id: str,
        network_dependents: List[ContainerSnapshot],
    ) -> Tuple[List[str], List[str]]:
        stack_dependents: List[ContainerSnapshot] = []
        if new_target.stack_name:
            fresh = await self._scan(gateway, include=new_target)
            index = IdentityIndex(fresh)
            for dependent in find_stack_dependents(
                new_target,
                fresh,
                exclude=[old_target.id] + [d.id for d in network_dependents],
            ):
                snapshot = index.resolve(dependent.identity.id)
                if snapshot is not None:
                    stack_dependents.append(snapshot)

        try:
            return await self.repairer_factory(gateway).repair(
                new_id, new_target.name, network_dependents, stack_dependents
            )
        except GatewayError as e:
            # Target is already replaced; dependents are best-effort
            logger.error(f"Error repairing dependents of {new_target.name}: {e}")
            return [], [d.name for d in network_dependents + stack_dependents]

    async def upgrade_many(
        self,
        requests: List[UpgradeRequest],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Upgrade several containers with bounded parallelism.

        Containers of the same stack run one after another; unrelated ones
        run concurrently (up to max_concurrent).

        Returns:
            Dict with keys: total, successful, failed, results
            (results maps composite key -> UpgradeOutcome or the exception)

        Raises:
            DependencyConflictError: batch contains a provider and one of its dependents
        """
        stats: Dict[str, Any] = {
            "total": len(requests),
            "successful": 0,
            "failed": 0,
            "results": {},
        }
        if not requests:
            return stats

        lanes = await self._plan_lanes(requests)
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def run_lane(lane: List[UpgradeRequest]) -> List[Tuple[UpgradeRequest, Any]]:
            """Execute one lane with semaphore to limit concurrency"""
            async with semaphore:
                lane_results = []
                for request in lane:
                    try:
                        outcome = await self.upgrade(
                            request.gateway_ref,
                            request.endpoint_ref,
                            request.container_id,
                            request.image_reference,
                            progress_callback,
                        )
                        lane_results.append((request, outcome))
                    except Exception as e:
                        logger.error(f"Error upgrading container {request.container_id}: {e}")
                        lane_results.append((request, e))
                return lane_results

        lane_results = await asyncio.gather(*(run_lane(lane) for lane in lanes), return_exceptions=True)

        for lane, result in zip(lanes, lane_results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected exception during batch upgrade: {result}", exc_info=result)
                for request in lane:
                    stats["results"][self._request_key(request)] = result
                    stats["failed"] += 1
                continue
            for request, outcome in result:
                stats["results"][self._request_key(request)] = outcome
                if isinstance(outcome, UpgradeOutcome) and outcome.success:
                    stats["successful"] += 1
                else:
                    stats["failed"] += 1

        logger.info(
            f"Batch upgrade complete (max={self.max_concurrent}): total={stats['total']} "
            f"successful={stats['successful']} failed={stats['failed']}"
        )
        return stats

    @staticmethod
    def _request_key(request: UpgradeRequest) -> str:
        return f"{request.gateway_ref}:{request.endpoint_ref}:{request.container_id[:12]}"

    async def _plan_lanes(self, requests: List[UpgradeRequest]) -> List[List[UpgradeRequest]]:
        """
        Check the batch for dependency conflicts and group it into lanes.

        Requests whose containers cannot be inspected still get their own
        lane; their upgrade reports the failure.
        """
        by_endpoint: Dict[Tuple[str, str], List[Tuple[UpgradeRequest, Optional[ContainerSnapshot]]]] = {}
        for request in requests:
            snapshot = None
            try:
                gateway = self._gateway(request.gateway_ref, request.endpoint_ref)
                snapshot = ContainerSnapshot.from_inspect(await gateway.inspect(request.container_id))
            except (UpgradeError, GatewayError) as e:
                logger.warning(f"Could not inspect {request.container_id} for batch planning: {e}")
            by_endpoint.setdefault((request.gateway_ref, str(request.endpoint_ref)), []).append((request, snapshot))

        detector = DependencyConflictDetector()
        lanes: List[List[UpgradeRequest]] = []
        for (gateway_ref, endpoint_ref), entries in by_endpoint.items():
            conflict = detector.check_batch([s for _, s in entries if s is not None])
            if conflict:
                raise DependencyConflictError(conflict)

            stack_lanes: Dict[str, List[UpgradeRequest]] = {}
            for request, snapshot in entries:
                if snapshot is not None and snapshot.stack_name:
                    stack_lanes.setdefault(snapshot.stack_name, []).append(request)
                else:
                    lanes.append([request])
            lanes.extend(stack_lanes.values())

        return lanes


_upgrade_orchestrator = None


def get_upgrade_orchestrator(gateways: Optional[GatewayPool] = None) -> UpgradeOrchestrator:
    """Get or create global UpgradeOrchestrator instance"""
    global _upgrade_orchestrator
    if _upgrade_orchestrator is None:
        _upgrade_orchestrator = UpgradeOrchestrator(gateways or GatewayPool())
    elif gateways is not None and _upgrade_orchestrator.gateways is not gateways:
        _upgrade_orchestrator.gateways = gateways
    return _upgrade_orchestrator
