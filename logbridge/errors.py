"""Error taxonomy shared by the log pipeline and the control bridge.

Parse and validation errors are recovered where they happen and only show
up in counters. Control-side errors carry an ``error_type`` tag that the
bridge copies into its failure results.
"""


class LogBridgeError(Exception):
    """Base class for all logbridge errors."""

    error_type = "execution"


class ParseError(LogBridgeError):
    """A log record that is not valid JSON (or is truncated)."""

    error_type = "parse"


class RecordValidationError(LogBridgeError):
    """Well-formed JSON that is missing required LogEntry fields."""

    error_type = "validation"


class InvalidRequestError(LogBridgeError):
    """A control request with missing or malformed parameters."""

    error_type = "invalid_request"


class SelectorError(LogBridgeError):
    """No element matches the selector, or the selector is not valid CSS."""

    error_type = "selector"


class ActionTimeoutError(LogBridgeError):
    """A bounded wait ran past its limit."""

    error_type = "timeout"


class ExecutionError(LogBridgeError):
    """The target threw while running a script or rejected an operation."""

    error_type = "execution"


class ProtocolCommandError(ExecutionError):
    """The protocol answered a command with an ``error`` object."""

    def __init__(self, method: str, message: str, code: int | None = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class SessionConnectionError(LogBridgeError):
    """The protocol session is closed or the transport failed."""

    error_type = "connection"


class ResourceNotFoundError(LogBridgeError):
    """A read-only resource URI or log file name that does not exist."""

    error_type = "not_found"
