"""
Analytical perspective roles.

Map sub-queries can be given a stance (analyst, critic, ...) so the reduce
phase receives deliberately different readings of the documents, and so the
debate phase has opposing positions to compare.
"""

from __future__ import annotations

from ..context.models import AgentDocument
from .models import Perspective, QueryClassification, QueryIntent

ANALYST = Perspective(
    id="analyst",
    label="Analyst",
    description="Examines data critically and objectively",
    prompt_prefix="As an objective analyst, examine the facts and data:",
    traits=("factual", "data-driven", "precise"),
    weight=1.0,
)
ADVOCATE = Perspective(
    id="advocate",
    label="Advocate",
    description="Identifies supporting evidence and positive aspects",
    prompt_prefix="As an advocate, identify what supports and strengthens this:",
    traits=("supportive", "constructive", "opportunity-focused"),
    weight=0.8,
)
CRITIC = Perspective(
    id="critic",
    label="Critic",
    description="Identifies weaknesses, risks, and counterarguments",
    prompt_prefix="As a critical reviewer, identify potential issues, risks, or contradictions:",
    traits=("skeptical", "risk-aware", "thorough"),
    weight=0.9,
)
SYNTHESIZER = Perspective(
    id="synthesizer",
    label="Synthesizer",
    description="Connects ideas and finds patterns across sources",
    prompt_prefix="As a synthesizer, identify connections, patterns, and broader implications:",
    traits=("holistic", "integrative", "pattern-finding"),
    weight=0.85,
)
HISTORIAN = Perspective(
    id="historian",
    label="Historian",
    description="Focuses on temporal context and evolution",
    prompt_prefix="From a historical perspective, trace how this evolved over time:",
    traits=("temporal", "contextual", "evolutionary"),
    weight=0.7,
    triggers=("over time", "evolution", "history", "progress", "changed"),
)
STAKEHOLDER = Perspective(
    id="stakeholder",
    label="Stakeholder",
    description="Considers impact on different parties",
    prompt_prefix="From a stakeholder perspective, consider impacts on different parties:",
    traits=("empathetic", "multi-viewpoint", "impact-focused"),
    weight=0.75,
    triggers=("impact", "stakeholder", "team", "customer", "user"),
)
PRAGMATIST = Perspective(
    id="pragmatist",
    label="Pragmatist",
    description="Focuses on actionable outcomes and feasibility",
    prompt_prefix="As a pragmatist, focus on what is actionable and feasible:",
    traits=("practical", "action-oriented", "realistic"),
    weight=0.8,
    triggers=("action", "do", "implement", "next steps", "practical"),
)

ROLES: dict[str, Perspective] = {
    role.id: role
    for role in (ANALYST, ADVOCATE, CRITIC, SYNTHESIZER, HISTORIAN, STAKEHOLDER, PRAGMATIST)
}

PRIMARY_ROLES: tuple[Perspective, ...] = (ANALYST, ADVOCATE, CRITIC, SYNTHESIZER)

ASSIGNMENT_STRATEGIES = ("uniform", "rotating", "adaptive", "primary-only")

_ROLES_BY_INTENT: dict[QueryIntent, tuple[Perspective, ...]] = {
    QueryIntent.COMPARATIVE: (CRITIC, SYNTHESIZER),
    QueryIntent.AGGREGATIVE: (ADVOCATE, SYNTHESIZER),
    QueryIntent.ANALYTICAL: (CRITIC, ADVOCATE, SYNTHESIZER),
    QueryIntent.TEMPORAL: (HISTORIAN, SYNTHESIZER),
    QueryIntent.FACTUAL: (ADVOCATE, CRITIC),
}


def get_role(role_id: str | None) -> Perspective | None:
    if not role_id:
        return None
    return ROLES.get(role_id.lower())


def is_primary_role(role: Perspective | str) -> bool:
    role_id = role if isinstance(role, str) else role.id
    return any(r.id == role_id for r in PRIMARY_ROLES)


def select_roles_for_query(classification: QueryClassification, count: int) -> list[Perspective]:
    """
    Pick ``count`` roles suited to the query's intent.

    The analyst always comes first; when more roles are needed than the
    intent provides, the first four chosen roles are cycled.
    """
    roles = [ANALYST, *_ROLES_BY_INTENT.get(classification.intent, (ADVOCATE, CRITIC))]
    while len(roles) < count:
        roles.append(roles[len(roles) % 4])
    return roles[:count]


def perspective_from_agent(agent: AgentDocument) -> Perspective | None:
    """The role an agent document suggests for itself, if any."""
    return get_role(agent.suggested_perspective)


def assign_roles(
    agents: list[AgentDocument],
    roles: list[Perspective],
    strategy: str = "rotating",
) -> list[tuple[AgentDocument, Perspective]]:
    """
    Pair each agent with a role.

    Args:
        agents: Agents in sub-query order
        roles: Candidate roles (from select_roles_for_query)
        strategy: uniform, rotating, adaptive or primary-only; unknown
            values behave like rotating

    Returns:
        (agent, role) pairs in agent order
    """
    if not agents:
        return []
    if not roles:
        roles = list(PRIMARY_ROLES)

    if strategy == "uniform":
        return [(agent, roles[0]) for agent in agents]

    if strategy == "primary-only":
        return [(agent, PRIMARY_ROLES[i % len(PRIMARY_ROLES)]) for i, agent in enumerate(agents)]

    if strategy == "adaptive":
        return [
            (agent, perspective_from_agent(agent) or roles[i % len(roles)])
            for i, agent in enumerate(agents)
        ]

    return [(agent, roles[i % len(roles)]) for i, agent in enumerate(agents)]
