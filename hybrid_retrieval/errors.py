"""
Engine Exceptions
Error taxonomy shared by retrievers, stages and the pipeline orchestrator
"""
from typing import Any, Optional


class RetrievalEngineError(Exception):
    """Base class for all engine errors"""


class BackendUnavailable(RetrievalEngineError):
    """
    Backend could not be reached in time

    Raised for timeouts, connection failures and rate limiting. Recoverable:
    the orchestrator may retry the call or proceed without this source.
    """

    def __init__(self, backend: str, message: str = "backend unavailable"):
        self.backend = backend
        super().__init__(f"{backend}: {message}")


class BackendError(RetrievalEngineError):
    """Backend answered with a malformed or unusable response"""

    def __init__(self, backend: str, message: str = "malformed response"):
        self.backend = backend
        super().__init__(f"{backend}: {message}")


class RetrievalFailedError(RetrievalEngineError):
    """
    No retriever succeeded for any query variant

    This is the only failure surfaced to callers of ``search()``; the
    pipeline trace is attached so the caller can see every failed call.
    """

    def __init__(self, message: str, trace: Optional[Any] = None):
        self.trace = trace
        super().__init__(message)


class SearchDeadlineExceeded(RetrievalEngineError):
    """Overall search deadline elapsed; in-flight backend calls were cancelled"""

    def __init__(self, deadline_seconds: float):
        self.deadline_seconds = deadline_seconds
        super().__init__(f"search exceeded deadline of {deadline_seconds:.3f}s")
