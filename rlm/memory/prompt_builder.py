"""Assemble memory-augmented prompts from labelled sections."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..context.store import estimate_tokens
from .models import MemorySlice

DEFAULT_SYSTEM_INSTRUCTIONS = """You are a helpful meeting assistant.
Use the provided context slices to answer the user query accurately."""

MEMORY_SECTIONS = ("State Block", "Working Window", "Retrieved Slices")


@dataclass
class PromptSection:
    label: str
    content: str

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content)


def render_sections(sections: list[PromptSection]) -> str:
    return "\n\n".join(f"### {s.label}\n{s.content}" for s in sections)


@dataclass
class BuiltPrompt:
    """A rendered prompt plus its per-section token breakdown."""

    prompt: str
    sections: list[PromptSection] = field(default_factory=list)
    retrieved_count: int = 0

    @property
    def token_estimate(self) -> int:
        return sum(s.tokens for s in self.sections)

    @property
    def token_breakdown(self) -> dict[str, int]:
        return {s.label: s.tokens for s in self.sections}

    @property
    def memory_context(self) -> str:
        """Only the memory sections, for prepending to another prompt; empty if none."""
        return render_sections([s for s in self.sections if s.label in MEMORY_SECTIONS])


def format_retrieved_slices(slices: list[tuple[MemorySlice, float]]) -> str:
    return "\n".join(
        f"{index}. [{entry.type.value}] (score: {score:.2f}) {entry.text}"
        for index, (entry, score) in enumerate(slices, 1)
    )


def build_prompt(
    query: str,
    state_block: str = "",
    working_window: str = "",
    retrieved_slices: list[tuple[MemorySlice, float]] | None = None,
    local_context: str = "",
    system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS,
) -> BuiltPrompt:
    """
    Build a prompt from System, Task, State Block, Working Window,
    Retrieved Slices and Local Context sections, skipping empty ones.

    Args:
        query: The user query
        state_block: Rendered state block (MemoryStore.render_state_block)
        working_window: Rendered working window
        retrieved_slices: (slice, score) pairs from MemoryStore.retrieve_slices
        local_context: Document context for this turn
        system_instructions: System section text

    Returns:
        BuiltPrompt with the joined prompt and section metadata
    """
    sections: list[PromptSection] = []

    if system_instructions.strip():
        sections.append(PromptSection("System", system_instructions.strip()))

    sections.append(PromptSection("Task", f"Task: Answer the user query.\nUser Query: {query}"))

    if state_block:
        sections.append(PromptSection("State Block", state_block))
    if working_window:
        sections.append(PromptSection("Working Window", working_window))
    if retrieved_slices:
        sections.append(PromptSection("Retrieved Slices", format_retrieved_slices(retrieved_slices)))
    if local_context:
        sections.append(PromptSection("Local Context", local_context))

    return BuiltPrompt(
        prompt=render_sections(sections),
        sections=sections,
        retrieved_count=len(retrieved_slices or []),
    )
