"""Functions exposed to generated code inside the sandbox.

Every helper reads from the ``context`` dict handed to the sandbox (the
store's ``to_python_dict`` export), never from the live ContextStore.
"""

from __future__ import annotations

import re
from functools import partial
from typing import Any

SEARCH_FIELDS = ("summary", "keyPoints", "actionItems", "transcript")
EXCERPT_RADIUS = 50


def partition(text: str, chunk_size: int = 1000) -> list[str]:
    """Split text into word-aligned chunks of roughly chunk_size characters."""
    if not text:
        return []

    chunks: list[str] = []
    current: list[str] = []
    length = 0
    for word in text.split():
        word_length = len(word) + 1
        if length + word_length > chunk_size and current:
            chunks.append(" ".join(current))
            current = [word]
            length = word_length
        else:
            current.append(word)
            length += word_length

    if current:
        chunks.append(" ".join(current))
    return chunks


def grep(pattern: str, text: str, flags: int = 0) -> list[dict]:
    """Lines matching a regex, each with one line of context either side."""
    if not text:
        return []
    try:
        compiled = re.compile(pattern, flags)
    except re.error as e:
        return [{"error": str(e)}]

    lines = text.split("\n")
    matches = []
    for index, line in enumerate(lines):
        if compiled.search(line):
            start = max(0, index - 1)
            end = min(len(lines), index + 2)
            matches.append({
                "line_number": index + 1,
                "line": line,
                "context": "\n".join(lines[start:end]),
            })
    return matches


def _agents(context: dict) -> list[dict]:
    return context.get("agents", [])


def _name(agent: dict) -> str:
    return agent.get("displayName") or "Unknown"


def search_agents(context: dict, keyword: str, agents: list[dict] | None = None) -> list[dict]:
    """Agents mentioning a keyword, with an excerpt per matching field."""
    if agents is None:
        agents = _agents(context)

    needle = keyword.lower()
    results = []
    for agent in agents:
        matches = []
        for field in SEARCH_FIELDS:
            content = agent.get(field) or ""
            position = content.lower().find(needle)
            if not content or position < 0:
                continue
            start = max(0, position - EXCERPT_RADIUS)
            end = min(len(content), position + len(keyword) + EXCERPT_RADIUS)
            excerpt = content[start:end]
            if start > 0:
                excerpt = "..." + excerpt
            if end < len(content):
                excerpt = excerpt + "..."
            matches.append({"field": field, "excerpt": excerpt})

        if matches:
            results.append({
                "agent_id": agent.get("id"),
                "agent_name": _name(agent),
                "matches": matches,
            })
    return results


def get_agent(context: dict, agent_id: str) -> dict | None:
    for agent in _agents(context):
        if agent.get("id") == agent_id:
            return agent
    return None


def list_agents(context: dict) -> list[dict]:
    return [
        {
            "id": a.get("id"),
            "name": _name(a),
            "date": a.get("date"),
            "enabled": a.get("enabled", True),
        }
        for a in _agents(context)
    ]


def get_all_action_items(context: dict) -> list[dict]:
    return [
        {"agent": _name(a), "items": a["actionItems"]}
        for a in _agents(context)
        if a.get("enabled", True) and a.get("actionItems")
    ]


def get_all_summaries(context: dict) -> list[dict]:
    return [
        {"agent": _name(a), "date": a.get("date"), "summary": a.get("summary", "")}
        for a in _agents(context)
        if a.get("enabled", True)
    ]


def bind_helpers(context: dict) -> dict[str, Any]:
    """The helper namespace for one sandbox run, bound to its context."""
    return {
        "context": context,
        "partition": partition,
        "grep": grep,
        "search_agents": partial(search_agents, context),
        "get_agent": partial(get_agent, context),
        "list_agents": partial(list_agents, context),
        "get_all_action_items": partial(get_all_action_items, context),
        "get_all_summaries": partial(get_all_summaries, context),
    }
