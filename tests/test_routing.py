from __future__ import annotations

import pytest

from agentdesk.core.routing import keyword_route


@pytest.mark.parametrize(
    "message,intent,agent,query",
    [
        ("research llama migration", "research", "research", "llama migration"),
        ("Look into flaky CI", "research", "research", "flaky CI"),
        ("fix: the login bug", "code", "coder", "the login bug"),
        ("remember to buy milk", "save", "save", "to buy milk"),
        ("find my notes on llamas", "search", "search", "my notes on llamas"),
        ("hello there", "general", None, "hello there"),
        ("researcher names", "general", None, "researcher names"),
    ],
)
def test_keyword_route(message, intent, agent, query) -> None:
    route = keyword_route(message)
    assert route.intent == intent
    assert route.agent == agent
    assert route.query == query


def test_bare_keyword_keeps_message_as_query() -> None:
    route = keyword_route("research")
    assert route.agent == "research"
    assert route.query == "research"
