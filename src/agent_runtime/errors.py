# errors.py
# Error taxonomy for the agent runtime.
#
# Components convert their own failures into records. Only FatalRuntimeError
# is allowed to change agent state.


class AgentRuntimeError(Exception):
    """Base class for every error raised by the runtime."""


class TriggerError(AgentRuntimeError):
    """A trigger misfired. Logged in place, never propagated to the agent."""


class PlanningFailed(AgentRuntimeError):
    """The reasoning capability failed or returned nothing usable."""


class ActionExecutionError(AgentRuntimeError):
    """
    Raised by capability handlers.

    retryable=False tells the executor to stop retrying this action. Any other
    exception type is treated as transient.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class HandlerNotFound(AgentRuntimeError):
    """No capability handler is registered for an action type."""


class PersistenceError(AgentRuntimeError):
    """The persistence backend failed; memory continues volatile-only."""


class FatalRuntimeError(AgentRuntimeError):
    """Unrecoverable fault in the cycle guard or memory. Moves the agent to Errored."""


class MemoryCorruption(FatalRuntimeError):
    """Memory no longer satisfies its own invariants."""


class AgentStateError(AgentRuntimeError):
    """A lifecycle call is not valid in the agent's current state."""


class PolicyDenied(AgentRuntimeError):
    """The operational policy refused an action or a signal sender."""
