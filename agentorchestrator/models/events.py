"""Lifecycle events raised by the session service for the host."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from agentorchestrator.models.messages import AgentMessage
from agentorchestrator.models.session import Session, SessionState


@dataclass(frozen=True)
class SessionCreated:
    session: Session


@dataclass(frozen=True)
class MessageReceived:
    session_id: str
    message: AgentMessage


@dataclass(frozen=True)
class SessionStateChanged:
    session: Session
    previous_state: SessionState


@dataclass(frozen=True)
class SessionEnded:
    session_id: str
    final_state: SessionState
    ended_at: datetime


@dataclass(frozen=True)
class AgentSessionIdLearned:
    """Raised as soon as the init message names the agent's session id."""

    session_id: str
    worktree_id: str
    agent_session_id: str


SessionEvent = Union[
    SessionCreated, MessageReceived, SessionStateChanged, SessionEnded, AgentSessionIdLearned
]
