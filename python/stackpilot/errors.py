"""
stackpilot/errors.py

Exception types raised by the stack lifecycle machinery. Process failures keep
their own CommandError (utils/async_command_runner.py) and aborts their own
OperationAborted (utils/abort_signal.py).
"""


class StackpilotError(Exception):
    """Base exception for all stackpilot errors."""


class StackDefinitionError(StackpilotError):
    """The synthesized definition is missing or cannot be parsed."""


class BackendNotInitializedError(StackpilotError):
    """A backend operation was called before init() completed."""


class PlanArtifactError(StackpilotError):
    """A plan artifact was consumed twice or was not produced by this backend."""


class RemoteApiError(StackpilotError):
    """The remote workspace API answered with an unexpected status.

    Attributes:
        status (int): HTTP status code of the failed request.
    """

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class RemoteRunError(StackpilotError):
    """A remote run ended in an errored, canceled or discarded state."""


class OperationInFlightError(StackpilotError):
    """An entry operation was started while another one is still running."""
