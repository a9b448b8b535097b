"""
StateMachine - Manages pipeline run state transitions.

States:
- PENDING: Run created but not started
- RUNNING: Steps are executing
- COMPLETED: Every non-skipped step completed
- FAILED: A step failed, or scheduling was stopped early

Transitions:
- start() -> RUNNING
- transition_to_completed() -> COMPLETED
- transition_to_failed(reason) -> FAILED
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class StateMachine:
    """
    Manages run state transitions.

    Ensures valid state flow: PENDING → RUNNING → COMPLETED/FAILED
    """

    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'

    VALID_STATES = {PENDING, RUNNING, COMPLETED, FAILED}
    ALLOWED = {
        PENDING: {RUNNING, FAILED},
        RUNNING: {COMPLETED, FAILED},
        COMPLETED: set(),
        FAILED: set(),
    }

    def __init__(self, pipeline_name: str = ''):
        """
        Initialize state machine.

        Args:
            pipeline_name: Pipeline name (for logging)
        """
        self.pipeline_name = pipeline_name
        self.current_state: str = self.PENDING
        self.failure_reason: Optional[str] = None
        self.state_history: list = []

    def start(self) -> None:
        """Transition from PENDING to RUNNING."""
        self._transition(self.RUNNING)

    def transition_to_completed(self) -> None:
        """Mark run as successfully completed."""
        self._transition(self.COMPLETED)

    def transition_to_failed(self, reason: str) -> None:
        """
        Mark run as failed.

        Args:
            reason: Failure reason
        """
        self.failure_reason = reason
        self._transition(self.FAILED)

    def _transition(self, new_state: str) -> None:
        """
        Execute state transition.

        Args:
            new_state: Target state

        Raises:
            ValueError: Unknown state or transition not allowed
        """
        if new_state not in self.VALID_STATES:
            raise ValueError(f"Invalid state: {new_state}")

        old_state = self.current_state
        if new_state not in self.ALLOWED[old_state]:
            raise ValueError(f"Cannot transition from {old_state} to {new_state}")

        self.current_state = new_state

        self.state_history.append({
            'from': old_state,
            'to': new_state,
            'reason': self.failure_reason if new_state == self.FAILED else None
        })

        logger.debug(f"[{self.pipeline_name}] State transition: {old_state} -> {new_state}")

    def is_running(self) -> bool:
        """Check if run is currently executing."""
        return self.current_state == self.RUNNING

    def is_completed(self) -> bool:
        """Check if run completed successfully."""
        return self.current_state == self.COMPLETED

    def is_failed(self) -> bool:
        """Check if run failed."""
        return self.current_state == self.FAILED

    def get_state_summary(self) -> dict:
        """
        Get state summary for logging.

        Returns:
            Dict with current state and history
        """
        return {
            'current_state': self.current_state,
            'failure_reason': self.failure_reason,
            'state_history': self.state_history
        }
