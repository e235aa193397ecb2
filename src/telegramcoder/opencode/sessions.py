from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .models import Agent

DEFAULT_AGENT = "build"
INTERNAL_AGENTS = frozenset({"compaction", "title", "summary"})
SELECTABLE_MODES = frozenset({"primary", "all"})


@dataclass(slots=True)
class Session:
    user_id: int
    session_id: str
    chat_id: int
    agent: str = DEFAULT_AGENT
    title: str | None = None
    last_message_id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class AgentCycleResult:
    success: bool
    agent: str | None = None
    previous: str | None = None
    available: tuple[str, ...] = ()


class SessionRegistry:
    """In-memory map of user id to their single active session."""

    def __init__(self) -> None:
        self._sessions: dict[int, Session] = {}

    def get(self, user_id: int) -> Session | None:
        return self._sessions.get(user_id)

    def has(self, user_id: int) -> bool:
        return user_id in self._sessions

    def add(self, session: Session) -> None:
        if session.user_id in self._sessions:
            raise ValueError(f"user {session.user_id} already has a session")
        self._sessions[session.user_id] = session

    def remove(self, user_id: int) -> Session | None:
        return self._sessions.pop(user_id, None)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)


def is_selectable_agent(agent: Agent) -> bool:
    if agent.hidden is True:
        return False
    if agent.mode == "subagent":
        return False
    if agent.name in INTERNAL_AGENTS:
        return False
    return agent.mode in SELECTABLE_MODES


def filter_selectable_agents(agents: Iterable[Agent]) -> list[Agent]:
    return [agent for agent in agents if is_selectable_agent(agent)]


def next_agent(current: str | None, agents: list[Agent]) -> str | None:
    """Name of the agent after ``current``, wrapping around.

    An unknown ``current`` counts as position -1, so the first agent is next.
    """
    if not agents:
        return None
    names = [agent.name for agent in agents]
    try:
        index = names.index(current) if current is not None else -1
    except ValueError:
        index = -1
    return names[(index + 1) % len(names)]
