"""
Shared container readiness and state polling.

Used by the upgrade orchestrator for:
- AwaitStopped: confirm a stop took effect
- AwaitReady: decide whether a freshly started container is ready
- dependent repair: wait for a replaced provider before touching dependents

All loops are bounded and take an injectable sleep/clock so tests can run
them without real time passing.
"""

import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from config.settings import ReadinessConfig
from gateways.base import ContainerGateway
from gateways.errors import GatewayError, GatewayNotFound
from models.container_models import ContainerSnapshot, HealthStatus
from updates.errors import (
    ContainerExitedError,
    ContainerNotFoundError,
    ContainerUnhealthyError,
    ReadinessTimeoutError,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

EXITED_STATUSES = ('exited', 'dead')


def looks_like_database(image: str, patterns: Iterable[str]) -> bool:
    """
    Heuristic: does the image name match a database engine pattern?

    Example:
        >>> looks_like_database("postgres:16-alpine", ["postgres", "redis"])
        True
    """
    image = (image or '').lower()
    return any(p and p in image for p in patterns)


def _state_status(attrs: Dict[str, Any]) -> str:
    state = attrs.get('State') or {}
    if state.get('Status'):
        return state['Status'].lower()
    return 'running' if state.get('Running') else 'unknown'


def _healthcheck_configured(attrs: Dict[str, Any]) -> bool:
    if (attrs.get('State') or {}).get('Health'):
        return True
    test = ((attrs.get('Config') or {}).get('Healthcheck') or {}).get('Test') or []
    return bool(test) and test[0] != 'NONE'


class ReadinessProber:
    """
    Polls one container until it is judged ready or the wait runs out.

    Readiness rules:
    1. Exited -> ContainerExitedError (with log tail)
    2. Healthcheck configured: "healthy" is ready, "unhealthy" fails;
       still "starting" after health_grace seconds and health_grace_checks
       consecutive running polls is accepted
    3. No healthcheck: min_running seconds (database_min_running for
       database-like images) and stable_checks consecutive running polls
    4. Timeout: one last inspect; running is accepted, anything else is
       ReadinessTimeoutError
    """

    def __init__(
        self,
        gateway: ContainerGateway,
        max_wait: Optional[float] = None,
        interval: Optional[float] = None,
        stable_checks: Optional[int] = None,
        health_grace: Optional[float] = None,
        health_grace_checks: Optional[int] = None,
        min_running: Optional[float] = None,
        database_min_running: Optional[float] = None,
        log_tail: Optional[int] = None,
        database_patterns: Optional[Iterable[str]] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.gateway = gateway
        self.max_wait = max_wait if max_wait is not None else ReadinessConfig.MAX_WAIT_SECONDS
        self.interval = interval if interval is not None else ReadinessConfig.POLL_INTERVAL_SECONDS
        self.stable_checks = stable_checks if stable_checks is not None else ReadinessConfig.REQUIRED_STABLE_CHECKS
        self.health_grace = health_grace if health_grace is not None else ReadinessConfig.HEALTH_GRACE_SECONDS
        self.health_grace_checks = (
            health_grace_checks if health_grace_checks is not None else ReadinessConfig.HEALTH_GRACE_CHECKS
        )
        self.min_running = min_running if min_running is not None else ReadinessConfig.MIN_RUNNING_SECONDS
        self.database_min_running = (
            database_min_running if database_min_running is not None
            else ReadinessConfig.DATABASE_MIN_RUNNING_SECONDS
        )
        self.log_tail = log_tail if log_tail is not None else ReadinessConfig.LOG_TAIL_LINES
        self.database_patterns = list(
            database_patterns if database_patterns is not None else ReadinessConfig.DATABASE_IMAGE_PATTERNS
        )
        self.sleep = sleep
        self.clock = clock

    async def _tail_logs(self, container_id: str) -> str:
        try:
            return await self.gateway.logs(container_id, tail=self.log_tail)
        except GatewayError as e:
            logger.warning(f"Could not retrieve logs for {container_id[:12]}: {e}")
            return ""

    def _with_logs(self, message: str, logs: str) -> str:
        if logs:
            return f"{message}. Last {self.log_tail} lines of logs:\n{logs}"
        return f"{message}. Could not retrieve logs."

    async def wait_until_ready(self, container_id: str, container_name: str, image: str = "") -> ContainerSnapshot:
        """
        Wait for a started container to become ready.

        Args:
            container_id: Container to watch
            container_name: For messages
            image: Image reference, used for the database warm-up heuristic

        Returns:
            Snapshot from the poll that judged the container ready

        Raises:
            ContainerExitedError, ContainerUnhealthyError, ReadinessTimeoutError,
            ContainerNotFoundError
        """
        is_database = looks_like_database(image, self.database_patterns)
        min_running = self.database_min_running if is_database else self.min_running

        logger.info(
            f"Waiting for {container_name} ({container_id[:12]}) to be ready "
            f"(max {self.max_wait}s{', database warm-up' if is_database else ''})"
        )

        start = self.clock()
        consecutive_running = 0
        last_state = "unknown"

        while self.clock() - start < self.max_wait:
            await self.sleep(self.interval)

            try:
                attrs = await self.gateway.inspect(container_id)
            except GatewayNotFound as e:
                raise ContainerNotFoundError(
                    f"Container {container_name} disappeared while waiting for it to start",
                    container_name=container_name,
                    stage="await_ready",
                ) from e
            except GatewayError as e:
                # Gateway hiccup; stability has to be re-established
                logger.debug(f"Inspect failed while waiting for {container_name}: {e}")
                consecutive_running = 0
                continue

            snapshot = ContainerSnapshot.from_inspect(attrs)
            last_state = _state_status(attrs)
            elapsed = self.clock() - start

            if not snapshot.is_running:
                consecutive_running = 0
                if last_state in EXITED_STATUSES:
                    logs = await self._tail_logs(container_id)
                    raise ContainerExitedError(
                        self._with_logs(f"Container {container_name} exited with code {snapshot.exit_code or 0}", logs),
                        exit_code=snapshot.exit_code,
                        container_name=container_name,
                        stage="await_ready",
                        logs=logs,
                    )
                continue

            consecutive_running += 1

            if _healthcheck_configured(attrs):
                if snapshot.health == HealthStatus.HEALTHY:
                    logger.info(f"Container {container_name} health check passed after {elapsed:.0f}s")
                    return snapshot
                if snapshot.health == HealthStatus.UNHEALTHY:
                    logs = await self._tail_logs(container_id)
                    raise ContainerUnhealthyError(
                        self._with_logs(f"Container {container_name} health check failed", logs),
                        container_name=container_name,
                        stage="await_ready",
                        logs=logs,
                    )
                if elapsed >= self.health_grace and consecutive_running >= self.health_grace_checks:
                    logger.info(
                        f"Health check of {container_name} still '{snapshot.health.value}' but container "
                        f"is running stably ({consecutive_running} checks), considering ready"
                    )
                    return snapshot
            elif elapsed >= min_running and consecutive_running >= self.stable_checks:
                logger.info(f"Container {container_name} is running and stable after {elapsed:.0f}s")
                return snapshot

        return await self._final_check(container_id, container_name, last_state)

    async def _final_check(self, container_id: str, container_name: str, last_state: str) -> ContainerSnapshot:
        try:
            attrs = await self.gateway.inspect(container_id)
        except GatewayError as e:
            raise ReadinessTimeoutError(
                f"Container {container_name} did not become ready within {self.max_wait}s. "
                f"Container may have failed to start.",
                last_state=last_state,
                container_name=container_name,
                stage="await_ready",
            ) from e

        snapshot = ContainerSnapshot.from_inspect(attrs)
        if snapshot.is_running:
            logger.warning(f"Timeout reached but {container_name} is running, considering it ready")
            return snapshot

        last_state = _state_status(attrs)
        logs = await self._tail_logs(container_id)
        raise ReadinessTimeoutError(
            self._with_logs(
                f"Container {container_name} did not become ready within {self.max_wait}s. "
                f"Current state: {last_state}",
                logs,
            ),
            last_state=last_state,
            container_name=container_name,
            stage="await_ready",
            logs=logs,
        )


async def wait_for_stopped(
    gateway: ContainerGateway,
    container_id: str,
    attempts: int = 20,
    interval: float = 0.5,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Poll until a container reports exited, or is gone.

    Returns:
        True if stopped was confirmed, False after `attempts` polls
    """
    for _ in range(attempts):
        await sleep(interval)
        try:
            attrs = await gateway.inspect(container_id)
        except GatewayNotFound:
            return True
        except GatewayError as e:
            logger.debug(f"Inspect failed while waiting for {container_id[:12]} to stop: {e}")
            continue
        if _state_status(attrs) in ('exited', 'stopped', 'dead', 'created'):
            return True
    return False


async def wait_for_provider_health(
    gateway: ContainerGateway,
    container_id: str,
    attempts: int = 15,
    interval: float = 2,
    settle: float = 2,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Bounded wait for a replaced provider to report healthy.

    Containers without a healthcheck only get a short settle delay.

    Returns:
        True if healthy (or settled without healthcheck), False otherwise
    """
    try:
        attrs = await gateway.inspect(container_id)
    except GatewayError as e:
        logger.warning(f"Could not inspect {container_id[:12]} before repairing dependents: {e}")
        await sleep(settle)
        return False

    if not _healthcheck_configured(attrs):
        await sleep(settle)
        return True

    for _ in range(attempts):
        if ContainerSnapshot.from_inspect(attrs).health == HealthStatus.HEALTHY:
            return True
        await sleep(interval)
        try:
            attrs = await gateway.inspect(container_id)
        except GatewayError as e:
            logger.debug(f"Inspect failed while waiting for {container_id[:12]} health: {e}")

    healthy = ContainerSnapshot.from_inspect(attrs).health == HealthStatus.HEALTHY
    if not healthy:
        logger.warning(f"Container {container_id[:12]} not healthy after {attempts * interval}s, continuing anyway")
    return healthy
