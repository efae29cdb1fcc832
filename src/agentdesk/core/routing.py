from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# (intent, agent, leading keywords)
_ROUTES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("research", "research", ("research", "look into", "investigate")),
    ("code", "coder", ("code", "fix", "implement", "refactor")),
    ("save", "save", ("save", "remember", "note")),
    ("search", "search", ("search", "find", "recall")),
)

WORKER_AGENTS = tuple(agent for _, agent, _ in _ROUTES)


@dataclass(frozen=True)
class Route:
    intent: str                 # general | research | code | save | search
    agent: Optional[str]        # None for general intents handled by the dispatcher itself
    summary: str
    query: str
    response: str


def keyword_route(message: str) -> Route:
    """Pick a worker agent from the message's leading keyword."""
    text = message.strip()
    lowered = text.lower()
    for intent, agent, keywords in _ROUTES:
        for keyword in keywords:
            if lowered == keyword or lowered.startswith(keyword + " ") or lowered.startswith(keyword + ":"):
                query = text[len(keyword):].strip(" :,") or text
                return Route(
                    intent=intent,
                    agent=agent,
                    summary=f"{intent}: {query[:80]}",
                    query=query,
                    response=f"On it. The {agent} agent is working on: {query[:200]}",
                )
    return Route(
        intent="general",
        agent=None,
        summary=text[:80],
        query=text,
        response=f"Noted: {text[:200]}",
    )
