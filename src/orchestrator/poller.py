"""Provisioning poller for asynchronous service provisioning.

Provisioning a service manager in a region returns immediately; the
provision then moves through PROVISION_INITIATED to a terminal status on
the backend. The poller confirms that transition with a bounded number of
re-fetches.

STATE MACHINE:
    REQUESTED -> POLLING -> PROVISIONED
                         -> FAILED      (backend reported a failure state)
                         -> TIMED_OUT   (attempt ceiling reached)

There is no cancellation; the attempt ceiling is the only bound. The
poller blocks the calling thread for the poll interval between attempts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from azure.core.exceptions import AzureError

from .config import DEFAULT_MAX_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL_SECONDS
from .mutator import ConfirmationError

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    """States of a provisioning session."""

    REQUESTED = "requested"
    POLLING = "polling"
    PROVISIONED = "provisioned"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({PollState.PROVISIONED, PollState.FAILED, PollState.TIMED_OUT})

ALLOWED_TRANSITIONS: dict[PollState, frozenset[PollState]] = {
    PollState.REQUESTED: frozenset({PollState.POLLING}),
    PollState.POLLING: TERMINAL_STATES,
}


class InvalidTransition(Exception):
    """Raised on a state change the machine does not allow."""

    pass


class ProvisioningFailed(ConfirmationError):
    """Raised when the backend reports a failure state."""

    def __init__(self, session: ProvisioningSession) -> None:
        self.session = session
        super().__init__(
            f"Provisioning of '{session.target_identifier}' failed with state "
            f"{session.current_state} after {session.attempt_count} attempt(s)"
        )


class ProvisioningTimedOut(ConfirmationError):
    """Raised when the attempt ceiling is reached without a terminal state."""

    def __init__(self, session: ProvisioningSession) -> None:
        self.session = session
        super().__init__(
            f"Provisioning of '{session.target_identifier}' did not complete after "
            f"{session.attempt_count} attempt(s); last state {session.current_state}"
        )


@dataclass
class ProvisioningSession:
    """Mutable poller state for one target.

    Created when the triggering mutation has returned success, discarded
    once a terminal state is reached.
    """

    target_identifier: str
    success_states: frozenset[str]
    failure_states: frozenset[str] = field(default_factory=frozenset)
    max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    attempt_count: int = 0
    current_state: str | None = None
    state: PollState = PollState.REQUESTED

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.success_states & self.failure_states:
            raise ValueError("success and failure states must not overlap")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: PollState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {new_state.value}")
        logger.debug(
            "Provisioning state change",
            extra={
                "target": self.target_identifier,
                "from_state": self.state.value,
                "to_state": new_state.value,
            },
        )
        self.state = new_state


class ProvisioningPoller:
    """Re-fetches a single target's state until a terminal condition.

    Args:
        fetch_state: Returns the target's current backend state, or None
            when the target is not visible yet.
        on_provisioned: Invoked once, on the PROVISIONED transition only.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        fetch_state: Callable[[], str | None],
        *,
        on_provisioned: Callable[[ProvisioningSession], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._fetch_state = fetch_state
        self._on_provisioned = on_provisioned
        self._sleep = sleep

    def wait(self, session: ProvisioningSession) -> ProvisioningSession:
        """Poll until the session reaches a terminal state.

        Returns:
            The session in PROVISIONED state.

        Raises:
            ProvisioningFailed: If the backend reports a failure state.
            ProvisioningTimedOut: If max_attempts re-fetches pass without a
                terminal state.
        """
        session.transition(PollState.POLLING)

        while session.attempt_count < session.max_attempts:
            try:
                current = self._fetch_state()
            except AzureError as e:
                # Transient failures count as an attempt but do not end polling
                logger.warning(
                    f"Error polling '{session.target_identifier}': {e}",
                    extra={
                        "target": session.target_identifier,
                        "error_type": type(e).__name__,
                    },
                )
                current = None

            session.attempt_count += 1
            session.current_state = current

            if current in session.success_states:
                session.transition(PollState.PROVISIONED)
                logger.info(
                    f"'{session.target_identifier}' provisioned after "
                    f"{session.attempt_count} attempt(s)"
                )
                if self._on_provisioned is not None:
                    self._on_provisioned(session)
                return session

            if current in session.failure_states:
                session.transition(PollState.FAILED)
                raise ProvisioningFailed(session)

            logger.debug(
                f"'{session.target_identifier}' not provisioned yet, waiting...",
                extra={"attempt": session.attempt_count, "state": current},
            )
            if session.attempt_count < session.max_attempts:
                self._sleep(session.poll_interval_seconds)

        session.transition(PollState.TIMED_OUT)
        logger.error(
            f"Timeout waiting for '{session.target_identifier}' after "
            f"{session.attempt_count} attempt(s)"
        )
        raise ProvisioningTimedOut(session)
