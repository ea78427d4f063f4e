"""
Dependent container repair after a provider has been replaced.

Network-mode dependents (network_mode: service:X / container:X) are bound to
the provider's old runtime ID; restarting them does not rebind the namespace,
so they are removed and recreated pointing at the new ID. Same-stack
dependents are simply restarted.

Every dependent is handled independently: one failure is logged and does
not stop the others, nor fail the upgrade.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from gateways.base import ContainerGateway
from gateways.errors import GatewayError, GatewayNotFound
from models.container_models import ContainerSnapshot
from updates.container_config import build_container_config
from updates.container_ops import ensure_removed, ensure_started, ensure_stopped
from updates.dependency_analyzer import parse_network_mode_ref
from updates.errors import DependentRepairError
from utils.container_health import Sleep, wait_for_provider_health

logger = logging.getLogger(__name__)


class DependentRepairer:
    """Recreates network-mode dependents and restarts stack dependents."""

    def __init__(
        self,
        gateway: ContainerGateway,
        sleep: Sleep = asyncio.sleep,
        health_attempts: int = 15,
        health_interval: float = 2,
        health_settle: float = 2,
        verify_retry_delay: float = 3,
        remove_settle: float = 5,
        restart_delay: float = 1,
    ):
        self.gateway = gateway
        self.sleep = sleep
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.health_settle = health_settle
        self.verify_retry_delay = verify_retry_delay
        self.remove_settle = remove_settle
        self.restart_delay = restart_delay

    async def repair(
        self,
        provider_id: str,
        provider_name: str,
        network_dependents: List[ContainerSnapshot],
        stack_dependents: List[ContainerSnapshot],
    ) -> Tuple[List[str], List[str]]:
        """
        Repair all dependents of a replaced provider.

        Args:
            provider_id: Runtime ID of the new provider container
            provider_name: Provider name (for messages)
            network_dependents: Snapshots of network-mode dependents, captured before the upgrade
            stack_dependents: Fresh snapshots of same-stack containers

        Returns:
            (repaired names, failed names)
        """
        repaired: List[str] = []
        failed: List[str] = []

        if not network_dependents and not stack_dependents:
            logger.info(f"No dependent containers for {provider_name}")
            return repaired, failed

        logger.info(
            f"Repairing {len(network_dependents)} network-mode and {len(stack_dependents)} "
            f"stack dependent(s) of {provider_name}"
        )

        await wait_for_provider_health(
            self.gateway,
            provider_id,
            attempts=self.health_attempts,
            interval=self.health_interval,
            settle=self.health_settle,
            sleep=self.sleep,
        )

        if network_dependents:
            if await self._verify_provider_running(provider_id, provider_name):
                ok, bad = await self._recreate_network_dependents(provider_id, network_dependents)
                repaired.extend(ok)
                failed.extend(bad)
            else:
                logger.error(
                    f"Provider {provider_name} is not running, skipping recreation of "
                    f"{len(network_dependents)} network-mode dependent(s)"
                )
                failed.extend(d.name for d in network_dependents)

        for dependent in stack_dependents:
            try:
                await self._restart_stack_dependent(dependent)
                repaired.append(dependent.name)
            except Exception as e:
                logger.error(f"Failed to restart {dependent.name}: {e}")
                failed.append(dependent.name)

        logger.info(f"Dependent repair for {provider_name} complete: {len(repaired)} ok, {len(failed)} failed")
        return repaired, failed

    async def _verify_provider_running(self, provider_id: str, provider_name: str) -> bool:
        for attempt in range(2):
            try:
                attrs = await self.gateway.inspect(provider_id)
                if ContainerSnapshot.from_inspect(attrs).is_running:
                    return True
            except GatewayError as e:
                logger.warning(f"Could not verify provider {provider_name}: {e}")
            if attempt == 0:
                await self.sleep(self.verify_retry_delay)
        return False

    async def _refresh(self, snapshot: ContainerSnapshot) -> ContainerSnapshot:
        """Re-inspect a dependent; keep the captured snapshot if that fails"""
        try:
            return ContainerSnapshot.from_inspect(await self.gateway.inspect(snapshot.id))
        except GatewayError as e:
            logger.debug(f"Using captured configuration for {snapshot.name}: {e}")
            return snapshot

    async def _recreate_network_dependents(
        self,
        provider_id: str,
        dependents: List[ContainerSnapshot],
    ) -> Tuple[List[str], List[str]]:
        repaired: List[str] = []
        failed: List[str] = []

        # Capture configs before anything is removed
        configs: Dict[str, ContainerSnapshot] = {}
        for dependent in dependents:
            configs[dependent.id] = await self._refresh(dependent)

        # Remove all first so none of them still references the old provider ID
        for dependent in dependents:
            try:
                await ensure_stopped(self.gateway, dependent.id, dependent.name)
            except GatewayError as e:
                logger.debug(f"{dependent.name} may already be stopped: {e}")
            try:
                await ensure_removed(self.gateway, dependent.id, dependent.name)
            except GatewayError as e:
                logger.warning(f"Could not remove {dependent.name}: {e}")

        await self.sleep(self.remove_settle)

        for dependent in dependents:
            try:
                new_id = await self.recreate_network_dependent(configs[dependent.id], provider_id)
                logger.info(f"Recreated {dependent.name} as {new_id[:12]}")
                repaired.append(dependent.name)
            except Exception as e:
                logger.error(f"Failed to recreate {dependent.name}: {e}", exc_info=True)
                failed.append(dependent.name)

        return repaired, failed

    async def recreate_network_dependent(self, snapshot: ContainerSnapshot, provider_id: str) -> str:
        """
        Recreate one network-mode dependent pointing at `provider_id`, and start it.

        Returns:
            New container ID

        Raises:
            DependentRepairError: NetworkMode could not be set correctly
            GatewayError: create/start failed
        """
        parsed = parse_network_mode_ref(snapshot.network_mode)
        prefix = parsed[0] if parsed else 'container:'
        expected_mode = f"{prefix}{provider_id}"

        config = build_container_config(snapshot, snapshot.image, network_mode_override=expected_mode)

        await self._remove_by_name(snapshot.name)
        new_id = await self.gateway.create(config, snapshot.name)

        actual_mode = await self._network_mode_of(new_id)
        if actual_mode != expected_mode:
            logger.warning(
                f"Created {snapshot.name} has NetworkMode={actual_mode!r}, expected {expected_mode!r}; retrying"
            )
            await ensure_removed(self.gateway, new_id, snapshot.name)
            config.setdefault('HostConfig', {})['NetworkMode'] = expected_mode
            new_id = await self.gateway.create(config, snapshot.name)

            actual_mode = await self._network_mode_of(new_id)
            if actual_mode != expected_mode:
                raise DependentRepairError(
                    f"Failed to create {snapshot.name} with NetworkMode {expected_mode!r} (got {actual_mode!r})",
                    dependent_name=snapshot.name,
                    stage="repair_dependents",
                )

        await ensure_started(self.gateway, new_id, snapshot.name)
        return new_id

    async def _network_mode_of(self, container_id: str) -> Optional[str]:
        attrs = await self.gateway.inspect(container_id)
        return (attrs.get('HostConfig') or {}).get('NetworkMode')

    async def _remove_by_name(self, name: str) -> None:
        """Remove a leftover container holding the dependent's name"""
        try:
            await self.gateway.remove(name, force=True)
            logger.info(f"Removed existing container named {name}")
            await self.sleep(self.restart_delay)
        except GatewayNotFound:
            pass

    async def _restart_stack_dependent(self, dependent: ContainerSnapshot) -> None:
        if dependent.is_running:
            logger.info(f"Restarting {dependent.name} (stack dependency)")
            await ensure_stopped(self.gateway, dependent.id, dependent.name)
            await self.sleep(self.restart_delay)
            await ensure_started(self.gateway, dependent.id, dependent.name)
            return

        logger.info(f"Starting {dependent.name} (was stopped, stack dependency)")
        try:
            await ensure_started(self.gateway, dependent.id, dependent.name)
        except GatewayNotFound:
            raise
        except GatewayError as e:
            logger.info(f"Start of {dependent.name} failed ({e}), attempting full restart")
            try:
                await ensure_stopped(self.gateway, dependent.id, dependent.name)
            except GatewayError as stop_error:
                logger.debug(f"Stop of {dependent.name} failed: {stop_error}")
            await self.sleep(self.restart_delay)
            await ensure_started(self.gateway, dependent.id, dependent.name)
