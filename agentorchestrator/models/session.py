"""Session domain model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from agentorchestrator.models.messages import AgentMessage

TITLE_MAX_LENGTH = 50


class SessionState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    WAITING_FOR_INPUT = "waiting_for_input"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionState.COMPLETED,
            SessionState.ERROR,
            SessionState.CANCELLED,
        )


@dataclass(frozen=True)
class WorktreeRef:
    """The working directory a session runs in. Owned by the caller."""

    id: str
    path: str
    task_description: str = ""


@dataclass(frozen=True)
class Session:
    """A conversation with one agent, possibly spanning several processes.

    Instances are immutable snapshots; the service replaces the record on
    every change, so a host may hold on to one without locking.
    """

    id: str
    worktree_id: str
    worktree_path: str
    state: SessionState = SessionState.STARTING
    agent_session_id: str = ""
    initial_prompt: str | None = None
    generated_title: str = ""
    task_description: str = ""
    total_cost_usd: float = 0.0
    messages: tuple[AgentMessage, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Session must have an id")
        if self.state.is_terminal != (self.ended_at is not None):
            raise ValueError("ended_at must be set exactly when the state is terminal")

    @property
    def title(self) -> str:
        if self.generated_title:
            return self.generated_title
        text = self.initial_prompt or self.task_description
        if not text:
            return "Session"
        if len(text) > TITLE_MAX_LENGTH:
            return text[: TITLE_MAX_LENGTH - 3] + "..."
        return text

    @property
    def is_resumable(self) -> bool:
        return bool(self.agent_session_id)

    def with_state(self, state: SessionState) -> Session:
        """Return a copy in ``state``, keeping ended_at in step with it."""
        if state.is_terminal:
            ended_at = self.ended_at if self.state.is_terminal else datetime.now(timezone.utc)
        else:
            ended_at = None
        return replace(self, state=state, ended_at=ended_at)

    def with_message(self, message: AgentMessage) -> Session:
        return replace(self, messages=(*self.messages, message))

    def with_agent_session_id(self, agent_session_id: str) -> Session:
        return replace(self, agent_session_id=agent_session_id)

    def with_added_cost(self, cost_usd: float) -> Session:
        return replace(self, total_cost_usd=self.total_cost_usd + max(cost_usd, 0.0))

    def to_doc(self) -> dict:
        """Summary without message bodies, for persistence or display."""
        return {
            "id": self.id,
            "worktree_id": self.worktree_id,
            "worktree_path": self.worktree_path,
            "state": self.state.value,
            "agent_session_id": self.agent_session_id,
            "title": self.title,
            "initial_prompt": self.initial_prompt,
            "total_cost_usd": self.total_cost_usd,
            "message_count": len(self.messages),
            "created_at": self.created_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }
