"""Application-level exception types for agentorchestrator."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for agentorchestrator."""


class LaunchError(OrchestratorError):
    """Raised when the agent executable cannot be found or started."""


class ClosedTransportError(OrchestratorError):
    """Raised when writing to an agent whose input is closed or disposed."""


class AlreadyConsumedError(OrchestratorError):
    """Raised when a Query's message stream is iterated a second time."""


class SessionNotFoundError(OrchestratorError):
    """Raised when an operation names a session the service does not know."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class NotResumableError(OrchestratorError):
    """Raised when a session has no agent session id to resume from."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has no agent session id to resume")
        self.session_id = session_id
