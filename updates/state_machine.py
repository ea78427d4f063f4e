"""
Upgrade state machine.

One instance per orchestration run. States are strictly sequential; any
state before the success path may fall to FAILED, and both DONE and FAILED
are terminal.

State Flow:
    idle -> stop_dependents -> stop_target -> await_stopped -> pull_image
         -> remove_old -> create_new -> start_new -> await_ready
         -> repair_dependents -> done
    (any non-terminal state up to await_ready) -> failed

Dependent repair problems never move the run to FAILED: by then the
target has been replaced and the run is on its success path.

Usage:
    sm = UpgradeStateMachine("tunnel", progress_callback=callback)
    await sm.transition(UpgradeState.STOP_DEPENDENTS, "Stopping dependents")
    ...
    await sm.fail("Pull failed")
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from updates.types import STATE_PROGRESS, ProgressCallback, UpgradeState

logger = logging.getLogger(__name__)


class UpgradeStateMachine:
    """
    Tracks the state of one upgrade run and reports progress.

    Enforces valid transitions; an invalid transition is refused and logged.
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        UpgradeState.IDLE: [UpgradeState.STOP_DEPENDENTS, UpgradeState.FAILED],
        UpgradeState.STOP_DEPENDENTS: [UpgradeState.STOP_TARGET, UpgradeState.FAILED],
        UpgradeState.STOP_TARGET: [UpgradeState.AWAIT_STOPPED, UpgradeState.FAILED],
        UpgradeState.AWAIT_STOPPED: [UpgradeState.PULL_IMAGE, UpgradeState.FAILED],
        UpgradeState.PULL_IMAGE: [UpgradeState.REMOVE_OLD, UpgradeState.FAILED],
        UpgradeState.REMOVE_OLD: [UpgradeState.CREATE_NEW, UpgradeState.FAILED],
        UpgradeState.CREATE_NEW: [UpgradeState.START_NEW, UpgradeState.FAILED],
        UpgradeState.START_NEW: [UpgradeState.AWAIT_READY, UpgradeState.FAILED],
        UpgradeState.AWAIT_READY: [UpgradeState.REPAIR_DEPENDENTS, UpgradeState.FAILED],
        UpgradeState.REPAIR_DEPENDENTS: [UpgradeState.DONE],
        UpgradeState.DONE: [],  # Terminal state
        UpgradeState.FAILED: [],  # Terminal state
    }

    TERMINAL_STATES = {UpgradeState.DONE, UpgradeState.FAILED}

    def __init__(self, container_name: str, progress_callback: Optional[ProgressCallback] = None):
        self.container_name = container_name
        self.progress_callback = progress_callback
        self.state = UpgradeState.IDLE
        self.history: List[Tuple[UpgradeState, datetime]] = [(UpgradeState.IDLE, datetime.now(timezone.utc))]
        self.failed_from: Optional[UpgradeState] = None

    @classmethod
    def can_transition(cls, from_state: UpgradeState, to_state: UpgradeState) -> bool:
        """
        Check if a state transition is valid.

        Examples:
            >>> UpgradeStateMachine.can_transition(UpgradeState.IDLE, UpgradeState.STOP_DEPENDENTS)
            True
            >>> UpgradeStateMachine.can_transition(UpgradeState.PULL_IMAGE, UpgradeState.STOP_TARGET)
            False
            >>> UpgradeStateMachine.can_transition(UpgradeState.REPAIR_DEPENDENTS, UpgradeState.FAILED)
            False
        """
        return to_state in cls.VALID_TRANSITIONS.get(from_state, [])

    @property
    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL_STATES

    async def transition(self, to_state: UpgradeState, message: str = "") -> bool:
        """
        Move to `to_state` and report progress.

        Returns:
            True if transition succeeded, False if invalid
        """
        from_state = self.state
        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid upgrade state transition for {self.container_name}: "
                f"{from_state.value} -> {to_state.value}"
            )
            return False

        if to_state == UpgradeState.FAILED:
            self.failed_from = from_state

        self.state = to_state
        self.history.append((to_state, datetime.now(timezone.utc)))
        logger.info(f"Upgrade {self.container_name}: {from_state.value} -> {to_state.value}")

        await self._report(to_state, message)
        return True

    async def fail(self, message: str) -> bool:
        """Transition to FAILED from any state that allows it"""
        return await self.transition(UpgradeState.FAILED, message)

    async def _report(self, state: UpgradeState, message: str) -> None:
        if not self.progress_callback:
            return
        try:
            await self.progress_callback(state.value, STATE_PROGRESS[state], message)
        except Exception as e:
            # Progress reporting must never break an upgrade
            logger.error(f"Error reporting upgrade progress for {self.container_name}: {e}", exc_info=True)

    @property
    def visited(self) -> List[UpgradeState]:
        return [state for state, _ in self.history]
