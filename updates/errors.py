"""
Error taxonomy for update detection and container upgrades.

Readiness errors carry a log excerpt from the failed container so the
caller can show why the new container did not come up.
"""

from typing import Optional


class UpgradeError(Exception):
    """Base error for an orchestration run that could not complete."""

    def __init__(
        self,
        message: str,
        container_name: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.container_name = container_name
        self.stage = stage


class ContainerNotFoundError(UpgradeError):
    """Target container vanished. Refreshing the container list resolves it."""
    pass


class ConfigRejectedError(UpgradeError):
    """
    The runtime rejected the configuration derived for the new container.

    The old container was already removed when this is raised; the rollback
    flags record whether it could be recreated.
    """

    def __init__(
        self,
        message: str,
        container_name: Optional[str] = None,
        stage: Optional[str] = None,
        rollback_attempted: bool = False,
        rollback_succeeded: bool = False,
    ):
        super().__init__(message, container_name, stage)
        self.rollback_attempted = rollback_attempted
        self.rollback_succeeded = rollback_succeeded


class ReadinessError(UpgradeError):
    """New container did not become ready."""

    def __init__(
        self,
        message: str,
        container_name: Optional[str] = None,
        stage: Optional[str] = None,
        logs: str = "",
    ):
        super().__init__(message, container_name, stage)
        self.logs = logs


class ContainerExitedError(ReadinessError):
    """Container exited while waiting for it to become ready."""

    def __init__(self, message: str, exit_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class ContainerUnhealthyError(ReadinessError):
    """Docker HEALTHCHECK reported unhealthy."""
    pass


class ReadinessTimeoutError(ReadinessError):
    """Container was not running when the readiness wait ran out."""

    def __init__(self, message: str, last_state: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.last_state = last_state


class DependentRepairError(UpgradeError):
    """A dependent could not be recreated or restarted. Logged, never fatal."""

    def __init__(self, message: str, dependent_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.dependent_name = dependent_name


class UpgradeInProgressError(UpgradeError):
    """Another upgrade already holds the lock for this container."""
    pass


class DependencyConflictError(UpgradeError):
    """A batch contains a network provider together with one of its dependents."""
    pass


class RateLimitExceeded(Exception):
    """
    Registry refused the lookup with HTTP 429.

    Never downgraded to "no update": batch evaluation stops and the caller
    decides when to retry.
    """

    def __init__(self, message: str, provider: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retry_after = retry_after
