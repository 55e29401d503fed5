"""Custom exceptions for flow loading, composition and execution."""

from typing import Any, List, Optional


class FlowError(Exception):
    """Base exception for all flowrunner errors."""

    pass


class LoadError(FlowError):
    """Raised when a flow document has an unsupported shape or invalid YAML.

    Attributes:
        source: Optional file identity the document was loaded from
    """

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class FlowNotFoundError(FlowError):
    """Raised when a referenced flow file cannot be found.

    Attributes:
        reference: The 'flow' reference that failed to resolve
        searched_paths: List of candidate identities that were tried
    """

    def __init__(
        self,
        reference: str,
        searched_paths: Optional[List[str]] = None,
    ):
        self.reference = reference
        self.searched_paths = searched_paths or []
        super().__init__(f"File '{reference}' not found.")


class CyclicFlowReferenceError(FlowError):
    """Raised when a flow references itself directly or transitively.

    Attributes:
        chain: The reference chain that forms the cycle
    """

    def __init__(self, message: str, chain: Optional[List[str]] = None):
        self.chain = chain or []
        super().__init__(message)


class MaxDepthExceededError(FlowError):
    """Raised when flow nesting exceeds the maximum depth.

    Attributes:
        depth: The depth at which the error occurred
        max_depth: The maximum allowed depth
    """

    def __init__(
        self,
        message: str,
        depth: Optional[int] = None,
        max_depth: Optional[int] = None,
    ):
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(message)


class StepExecutionError(FlowError):
    """Base class for errors that fail a single step."""

    pass


class VerificationFailure(StepExecutionError):
    """Raised when a verify assertion does not hold.

    Attributes:
        path: The verify key that failed (status, responseTime, body.<path>)
        expected: The expected value after resolution
        actual: The value observed in the response
    """

    def __init__(
        self,
        path: str,
        expected: Any,
        actual: Any,
        message: Optional[str] = None,
    ):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            message
            or f"Verification failed for {path}: expected {expected}, got {actual}"
        )


class StepNetworkError(StepExecutionError):
    """Raised when the transport fails before a response is received."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Network error: {detail}")


class StepTimeoutError(StepExecutionError):
    """Raised when a request does not complete within its timeout.

    Attributes:
        timeout_ms: The timeout that elapsed, in milliseconds
    """

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms}ms")


class RunCancelledError(FlowError):
    """Raised when a run is aborted through its cancel signal."""

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)


class PathResolutionAmbiguous(FlowError):
    """Diagnostic for an event path that matched no known file.

    The reconciler records these instead of raising them.

    Attributes:
        reported_path: The path carried by the event
        fallback: The identity used in its place
    """

    def __init__(self, reported_path: str, fallback: str):
        self.reported_path = reported_path
        self.fallback = fallback
        super().__init__(
            f"Could not resolve flow path '{reported_path}', using '{fallback}'"
        )


class RunInProgressError(FlowError):
    """Raised when a second run is started on a busy runner."""

    pass


class BridgeError(FlowError):
    """Raised when the external backend cannot be started or fails."""

    pass
