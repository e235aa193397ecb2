import pytest

from telegramcoder.opencode.models import Agent
from telegramcoder.opencode.sessions import (
    Session,
    SessionRegistry,
    filter_selectable_agents,
    is_selectable_agent,
    next_agent,
)

AGENTS = [Agent(name="build", mode="primary"), Agent(name="plan", mode="primary")]


def test_next_agent_wraps_around() -> None:
    assert next_agent("build", AGENTS) == "plan"
    assert next_agent("plan", AGENTS) == "build"


def test_next_agent_with_stale_or_missing_current() -> None:
    assert next_agent("retired", AGENTS) == "build"
    assert next_agent(None, AGENTS) == "build"
    assert next_agent("build", []) is None


@pytest.mark.parametrize(
    ("agent", "expected"),
    [
        (Agent(name="build", mode="primary"), True),
        (Agent(name="docs", mode="all"), True),
        (Agent(name="general", mode="subagent"), False),
        (Agent(name="secret", mode="primary", hidden=True), False),
        (Agent(name="title", mode="primary"), False),
        (Agent(name="mystery"), False),
    ],
)
def test_selectable_agents(agent: Agent, expected: bool) -> None:
    assert is_selectable_agent(agent) is expected


def test_filter_keeps_order() -> None:
    agents = [
        Agent(name="plan", mode="primary"),
        Agent(name="compaction", mode="primary"),
        Agent(name="build", mode="all"),
    ]

    assert [a.name for a in filter_selectable_agents(agents)] == ["plan", "build"]


def test_registry_holds_one_session_per_user() -> None:
    registry = SessionRegistry()
    session = Session(user_id=1, session_id="ses_a", chat_id=1)
    registry.add(session)

    with pytest.raises(ValueError):
        registry.add(Session(user_id=1, session_id="ses_b", chat_id=1))

    assert registry.get(1) is session
    assert len(registry) == 1
    assert registry.remove(1) is session
    assert not registry.has(1)
    assert registry.remove(1) is None
