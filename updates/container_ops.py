"""
Idempotent container operations on top of a ContainerGateway.

Gateways report "already in this state" inconsistently (304, 409, or a
connection reset when the management gateway itself is restarting). These
helpers fold those answers into success, checking live state via inspect
whenever the answer is ambiguous.
"""

import logging

from gateways.base import ContainerGateway
from gateways.errors import (
    GatewayConflict,
    GatewayError,
    GatewayNotFound,
    GatewayNotModified,
    GatewayTransportError,
)
from models.container_models import ContainerSnapshot

logger = logging.getLogger(__name__)


async def _is_running(gateway: ContainerGateway, container_id: str) -> bool:
    attrs = await gateway.inspect(container_id)
    return ContainerSnapshot.from_inspect(attrs).is_running


async def ensure_stopped(gateway: ContainerGateway, container_id: str, name: str = "") -> bool:
    """
    Stop a container, treating "already stopped" as success.

    Returns:
        True if the container is known to be stopped, False if the stop was
        sent but could not be confirmed yet

    Raises:
        GatewayNotFound: container does not exist
        GatewayError: any other failure
    """
    label = name or container_id[:12]
    try:
        await gateway.stop(container_id)
        logger.info(f"Stopped {label}")
        return True
    except GatewayNotModified:
        logger.debug(f"{label} was already stopped")
        return True
    except (GatewayConflict, GatewayTransportError) as e:
        logger.warning(f"Ambiguous response stopping {label} ({e}), verifying state")
        try:
            running = await _is_running(gateway, container_id)
        except GatewayNotFound:
            raise
        except GatewayError as verify_error:
            # Gateway still unreachable; the stop may have been accepted
            logger.warning(f"Could not verify state of {label}: {verify_error}")
            return False
        if not running:
            logger.info(f"{label} is stopped")
        return not running


async def ensure_started(gateway: ContainerGateway, container_id: str, name: str = "") -> None:
    """
    Start a container, treating "already running" as success.

    Raises:
        GatewayNotFound: container does not exist
        GatewayError: start failed and the container is not running
    """
    label = name or container_id[:12]
    try:
        await gateway.start(container_id)
        logger.info(f"Started {label}")
    except GatewayNotModified:
        logger.debug(f"{label} was already running")
    except (GatewayConflict, GatewayTransportError) as e:
        logger.warning(f"Ambiguous response starting {label} ({e}), verifying state")
        if not await _is_running(gateway, container_id):
            raise
        logger.info(f"{label} is running")


async def ensure_removed(gateway: ContainerGateway, container_id: str, name: str = "") -> None:
    """
    Force-remove a container; "not found" and "not modified" count as success.
    """
    label = name or container_id[:12]
    try:
        await gateway.remove(container_id, force=True)
        logger.info(f"Removed {label}")
    except (GatewayNotFound, GatewayNotModified):
        logger.debug(f"{label} was already removed")
