"""State machine for a logical call.

A call moves through ``DISPATCH -> EVALUATE`` for every attempt and then
either waits and dispatches again or ends in a terminal state.
"""

from enum import Enum

import structlog


logger = structlog.get_logger()


class CallState(str, Enum):
    """State of a logical call.

    - DISPATCH: An attempt is being sent
    - EVALUATE: The attempt completed and is being inspected
    - RETRY_WAIT: Waiting out the backoff before the next attempt
    - SUCCEEDED: Terminal; the last outcome is final
    - RETRIES_EXHAUSTED: Terminal; the last outcome was retryable but the budget ran out
    """

    DISPATCH = "DISPATCH"
    EVALUATE = "EVALUATE"
    RETRY_WAIT = "RETRY_WAIT"
    SUCCEEDED = "SUCCEEDED"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"


_VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.DISPATCH: {CallState.EVALUATE},
    CallState.EVALUATE: {
        CallState.RETRY_WAIT,
        CallState.SUCCEEDED,
        CallState.RETRIES_EXHAUSTED,
    },
    # A cancellation during the wait ends the call without another dispatch
    CallState.RETRY_WAIT: {CallState.DISPATCH, CallState.SUCCEEDED},
    CallState.SUCCEEDED: set(),  # Terminal state
    CallState.RETRIES_EXHAUSTED: set(),  # Terminal state
}


class CallStateTransitionError(Exception):
    """Raised when an illegal state transition is attempted."""

    def __init__(self, call_id: str, from_state: CallState, to_state: CallState) -> None:
        """Initialize the transition error.

        Args:
            call_id: Identifier of the logical call.
            from_state: Current state.
            to_state: Attempted target state.
        """
        self.call_id = call_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal state transition for call '{call_id}': "
            f"{from_state.value} -> {to_state.value}"
        )


class CallStateMachine:
    """Tracks the state of one logical call and enforces valid transitions."""

    def __init__(self, call_id: str) -> None:
        self._call_id = call_id
        self._state = CallState.DISPATCH
        self._attempts = 1
        self._log = logger.bind(component="api_client", call_id=call_id)

    @property
    def state(self) -> CallState:
        """Get the current state."""
        return self._state

    @property
    def attempts(self) -> int:
        """Number of attempts dispatched so far."""
        return self._attempts

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in (CallState.SUCCEEDED, CallState.RETRIES_EXHAUSTED)

    def can_transition_to(self, target: CallState) -> bool:
        """Check if a transition to the target state is valid."""
        return target in _VALID_TRANSITIONS.get(self._state, set())

    def transition_to(self, target: CallState) -> None:
        """Transition to a new state.

        Args:
            target: The target state.

        Raises:
            CallStateTransitionError: If the transition is invalid.
        """
        if not self.can_transition_to(target):
            self._log.error(
                "illegal_state_transition",
                from_state=self._state.value,
                to_state=target.value,
            )
            raise CallStateTransitionError(self._call_id, self._state, target)

        old_state = self._state
        self._state = target
        if target == CallState.DISPATCH:
            self._attempts += 1

        self._log.debug(
            "state_transition",
            from_state=old_state.value,
            to_state=target.value,
            attempts=self._attempts,
        )

    def to_evaluate(self) -> None:
        """Transition to EVALUATE state."""
        self.transition_to(CallState.EVALUATE)

    def to_retry_wait(self) -> None:
        """Transition to RETRY_WAIT state."""
        self.transition_to(CallState.RETRY_WAIT)

    def to_dispatch(self) -> None:
        """Transition to DISPATCH state."""
        self.transition_to(CallState.DISPATCH)

    def to_succeeded(self) -> None:
        """Transition to SUCCEEDED state."""
        self.transition_to(CallState.SUCCEEDED)

    def to_retries_exhausted(self) -> None:
        """Transition to RETRIES_EXHAUSTED state."""
        self.transition_to(CallState.RETRIES_EXHAUSTED)
