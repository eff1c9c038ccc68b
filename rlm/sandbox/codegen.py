"""
Prompting the completion call for sandbox code, and parsing what comes back.

The query is classified into a code-query type so the prompt can carry a
matching few-shot example; a failed generation is retried with the
previous error appended to the prompt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config.loader import SandboxConfig
from ..exceptions import CodeGenerationError, CodeValidationError
from .validator import CodeValidator, ValidationResult

if TYPE_CHECKING:
    from ..llm.protocols import CompletionCall

logger = logging.getLogger(__name__)


class CodeQueryType(str, Enum):
    """Shape of the code a query calls for."""

    FACTUAL = "factual"
    AGGREGATIVE = "aggregative"
    COMPARATIVE = "comparative"
    SEARCH = "search"
    RECURSIVE = "recursive"


QUERY_PATTERNS: dict[CodeQueryType, list[re.Pattern]] = {
    CodeQueryType.COMPARATIVE: [
        re.compile(r"compare|contrast|differ|versus|vs\.?|between", re.IGNORECASE),
        re.compile(r"how does .+ differ from", re.IGNORECASE),
        re.compile(r"what('s| is) the difference", re.IGNORECASE),
        re.compile(r"similarities and differences", re.IGNORECASE),
    ],
    CodeQueryType.AGGREGATIVE: [
        re.compile(r"all|every|across|summarize|summary|overall", re.IGNORECASE),
        re.compile(r"total|combined|aggregate|consolidate", re.IGNORECASE),
        re.compile(r"what (are|were) the .+ from (all|every)", re.IGNORECASE),
        re.compile(r"gather|collect|compile", re.IGNORECASE),
    ],
    CodeQueryType.SEARCH: [
        re.compile(r"search|find|look for|locate|where", re.IGNORECASE),
        re.compile(r"who (said|mentioned|discussed)", re.IGNORECASE),
        re.compile(r"when (was|did|were)", re.IGNORECASE),
        re.compile(r"any mention of", re.IGNORECASE),
        re.compile(r"grep|filter|extract", re.IGNORECASE),
    ],
    CodeQueryType.RECURSIVE: [
        re.compile(r"analyze|interpret|explain|why|how come", re.IGNORECASE),
        re.compile(r"pattern|trend|theme|insight", re.IGNORECASE),
        re.compile(r"what does .+ mean", re.IGNORECASE),
        re.compile(r"implications|conclusions|takeaways", re.IGNORECASE),
    ],
}

STRATEGY_HINTS: dict[CodeQueryType, str] = {
    CodeQueryType.COMPARATIVE: "This is a comparative query - compare data across multiple meetings.",
    CodeQueryType.AGGREGATIVE: "This is an aggregative query - gather and combine information from all meetings.",
    CodeQueryType.SEARCH: "This is a search query - use search_agents() to find relevant content.",
    CodeQueryType.RECURSIVE: "This query requires analysis - consider using sub_lm() for deeper interpretation.",
    CodeQueryType.FACTUAL: "Answer the question directly using the available data.",
}

CODE_GENERATION_SYSTEM_PROMPT = '''You are an AI assistant that generates Python code to analyze meeting data.

## Available Context

The meeting data is stored in a variable called `context` which is a dictionary with:
- `context['agents']`: List of meeting agent objects
- `context['metadata']`: Metadata about the loaded meetings

Each agent in `context['agents']` has:
- `id`: Unique identifier
- `displayName`: Meeting name
- `date`: Meeting date
- `enabled`: Whether the agent is active
- `summary`: Executive summary
- `keyPoints`: Key discussion points
- `actionItems`: Action items from the meeting
- `sentiment`: Sentiment analysis
- `transcript`: Full transcript (if available)

## Available Functions

```python
# Text manipulation
partition(text, chunk_size=1000)  # Split text into chunks
grep(pattern, text)               # Regex search with context

# Agent queries
list_agents()                     # List all agents with IDs
get_agent(agent_id)               # Get specific agent by ID
search_agents(keyword)            # Search all agents for keyword
get_all_action_items()            # Get all action items
get_all_summaries()               # Get all summaries

# Recursive LLM calls (for complex queries)
sub_lm(query, context_slice)      # Ask a sub-LLM; returns its answer as a string

# Final answer
FINAL(answer)                     # Return final answer directly
FINAL_VAR(var_name)               # Return variable as final answer
```

## Output Format

Write Python code that:
1. Analyzes the context to answer the user's question
2. Stores intermediate results in variables
3. Calls FINAL(answer) or FINAL_VAR(var_name) with the final answer

## Examples

### Example 1: List all action items
```python
items = get_all_action_items()
result = "Action Items by Meeting:\\n"
for meeting in items:
    result += f"\\n## {meeting['agent']}\\n{meeting['items']}\\n"
FINAL(result)
```

### Example 2: Search for a topic
```python
results = search_agents("budget")
if results:
    answer = f"Found {len(results)} meetings mentioning 'budget':\\n"
    for r in results:
        answer += f"\\n- {r['agent_name']}: {r['matches'][0]['excerpt']}"
else:
    answer = "No meetings found mentioning 'budget'"
FINAL(answer)
```

### Example 3: Analyze patterns with sub-LLM
```python
summaries = get_all_summaries()
combined = "\\n---\\n".join([f"{s['agent']}: {s['summary']}" for s in summaries])
themes = sub_lm("What patterns or themes emerge across these meetings?", combined)
FINAL_VAR("themes")
```

## Important Rules

1. Always call FINAL() or FINAL_VAR() at the end
2. Handle edge cases (empty lists, missing data)
3. Keep code concise and efficient
4. Use print() for debugging if needed
5. Don't modify the context variable
6. Return human-readable answers
7. Only import from: re, json, math, collections, itertools, functools, statistics, datetime, string, textwrap, operator'''

CODE_EXAMPLES: dict[CodeQueryType, str] = {
    CodeQueryType.FACTUAL: """# Answer a factual question about the meetings
agents = [a for a in context['agents'] if a.get('enabled', True)]
relevant = []
for agent in agents:
    if 'keyword' in agent.get('summary', '').lower():
        relevant.append(agent)

if relevant:
    answer = f"Found in {len(relevant)} meetings: " + ", ".join([a['displayName'] for a in relevant])
else:
    answer = "Information not found in the meetings"
FINAL(answer)""",
    CodeQueryType.AGGREGATIVE: """# Aggregate information across all meetings
items = get_all_action_items()
if not items:
    FINAL("No action items found in any meetings.")
else:
    result = f"## Action Items from {len(items)} meetings:\\n"
    for item in items:
        result += f"\\n### {item['agent']}\\n{item['items']}\\n"
    FINAL(result)""",
    CodeQueryType.COMPARATIVE: """# Compare information across meetings
agents = [a for a in context['agents'] if a.get('enabled', True)]
if len(agents) < 2:
    FINAL("Need at least 2 meetings to compare")
else:
    comparison = "# Meeting Comparison\\n"
    for agent in agents[:3]:
        comparison += f"\\n## {agent['displayName']}\\n"
        comparison += f"**Summary:** {agent.get('summary', 'N/A')[:300]}...\\n"
        comparison += f"**Key Points:** {agent.get('keyPoints', 'N/A')[:200]}...\\n"
    FINAL(comparison)""",
    CodeQueryType.SEARCH: """# Search for specific content
keyword = "target_keyword"
results = search_agents(keyword)

if results:
    answer = f"Found '{keyword}' in {len(results)} meetings:\\n"
    for r in results:
        answer += f"\\n- **{r['agent_name']}**: {r['matches'][0]['excerpt']}"
    FINAL(answer)
else:
    FINAL(f"No mentions of '{keyword}' found in the meetings")""",
    CodeQueryType.RECURSIVE: """# Analyze patterns using recursive LLM calls
summaries = get_all_summaries()
if not summaries:
    FINAL("No meeting summaries available for analysis.")
else:
    combined = "\\n---\\n".join([f"**{s['agent']}** ({s['date']}): {s['summary']}" for s in summaries])
    analysis = sub_lm("Identify the key themes, patterns, and recurring topics across these meeting summaries. What insights emerge?", combined)
    result = f"# Pattern Analysis Across {len(summaries)} Meetings\\n\\n{analysis}"
    FINAL(result)""",
}

_PYTHON_BLOCK = re.compile(r"```python\s*(.*?)```", re.DOTALL)
_PLAIN_BLOCK = re.compile(r"```\s*(.*?)```", re.DOTALL)
_CODE_HINTS = ("def ", "import ", "FINAL", "context")


@dataclass
class CodeQueryClassification:
    type: CodeQueryType
    confidence: float
    scores: dict[str, int] = field(default_factory=dict)

    @property
    def suggest_sub_lm(self) -> bool:
        return self.type == CodeQueryType.RECURSIVE and self.confidence > 0.6


@dataclass
class CodePrompt:
    system_prompt: str
    user_prompt: str
    classification: CodeQueryClassification


@dataclass
class ParsedCode:
    has_code: bool
    code: str | None
    raw_output: str
    explanation: str | None = None


@dataclass
class GeneratedCode:
    """Code that passed validation, and how many attempts it took."""

    code: str
    attempts: int
    classification: CodeQueryClassification
    validation: ValidationResult
    explanation: str | None = None


def classify_code_query(query: str) -> CodeQueryClassification:
    """Score each code-query type by matching patterns; factual on no match."""
    scores = {
        query_type.value: sum(1 for pattern in patterns if pattern.search(query))
        for query_type, patterns in QUERY_PATTERNS.items()
    }

    best_type = CodeQueryType.FACTUAL
    best_score = 0
    for query_type in QUERY_PATTERNS:
        if scores[query_type.value] > best_score:
            best_score = scores[query_type.value]
            best_type = query_type

    confidence = min(best_score / 3, 1.0) if best_score > 0 else 0.5
    return CodeQueryClassification(type=best_type, confidence=confidence, scores=scores)


def build_code_prompt(
    query: str,
    agent_names: list[str] | None = None,
    active_agents: int | None = None,
) -> CodePrompt:
    agent_names = agent_names or []
    count = active_agents if active_agents is not None else len(agent_names)
    classification = classify_code_query(query)
    example = CODE_EXAMPLES.get(classification.type, CODE_EXAMPLES[CodeQueryType.FACTUAL])

    summary = f"You have access to {count} meeting agents"
    if agent_names:
        summary += f": {', '.join(agent_names[:5])}"
        if len(agent_names) > 5:
            summary += f", and {len(agent_names) - 5} more"

    user_prompt = f"""{summary}.

{STRATEGY_HINTS[classification.type]}

User's question: {query}

Here's an example of similar code:
```python
{example}
```

Now generate Python code to answer the user's question. Use the available context and functions.
Remember to call FINAL(answer) or FINAL_VAR(var_name) at the end.

```python"""

    return CodePrompt(
        system_prompt=CODE_GENERATION_SYSTEM_PROMPT,
        user_prompt=user_prompt,
        classification=classification,
    )


def parse_code_output(output: str) -> ParsedCode:
    """
    Pull code out of a completion.

    Tries a ```python block, then a plain ``` block that looks like
    Python, then the raw text if it calls FINAL or FINAL_VAR.
    """
    match = _PYTHON_BLOCK.search(output)
    if match:
        before = output[: match.start()].strip()
        return ParsedCode(
            has_code=True,
            code=match.group(1).strip(),
            raw_output=output,
            explanation=before or None,
        )

    match = _PLAIN_BLOCK.search(output)
    if match:
        code = match.group(1).strip()
        if any(hint in code for hint in _CODE_HINTS):
            return ParsedCode(has_code=True, code=code, raw_output=output)

    # The prompt ends inside an open ```python fence, so replies often
    # carry only a closing fence.
    if "FINAL(" in output or "FINAL_VAR(" in output:
        code = output.split("```")[0].strip() if output.lstrip().find("```") > 0 else output.strip()
        return ParsedCode(has_code=True, code=code, raw_output=output)

    return ParsedCode(has_code=False, code=None, raw_output=output)


class CodeGenerator:
    """
    Generate validated sandbox code with retries.

    Example:
        generator = CodeGenerator(config.sandbox)
        generated = await generator.generate_with_retry(query, call, ctx, agent_names)
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        validator: CodeValidator | None = None,
    ):
        self.config = config or SandboxConfig()
        self.validator = validator or CodeValidator(max_code_length=self.config.max_code_length)

    def parse_and_validate(self, output: str) -> tuple[ParsedCode, ValidationResult]:
        """
        Raises:
            CodeGenerationError: If the output contains no code
            CodeValidationError: If the code uses a disallowed capability
        """
        parsed = parse_code_output(output)
        if not parsed.has_code:
            raise CodeGenerationError("No code found in LLM output")
        validation = self.validator.validate_or_raise(parsed.code)
        return parsed, validation

    async def generate_with_retry(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any] | None = None,
        agent_names: list[str] | None = None,
        active_agents: int | None = None,
    ) -> GeneratedCode:
        """
        Ask for code until one attempt validates.

        Args:
            query: User query
            call: Completion call
            context: Caller context passed to the call
            agent_names: Active agent names for the prompt summary
            active_agents: Active agent count (defaults to len(agent_names))

        Returns:
            GeneratedCode

        Raises:
            CodeGenerationError: After 1 + max_retries failed attempts
        """
        context = context or {}
        last_error: str | None = None
        attempts = 0

        while attempts <= self.config.max_retries:
            attempts += 1
            prompt = build_code_prompt(query, agent_names, active_agents)
            user_prompt = prompt.user_prompt
            if last_error:
                user_prompt += (
                    f'\n\nIMPORTANT: Previous attempt failed with error: "{last_error}"\n'
                    "Please fix this issue in your code generation."
                )

            try:
                output = await call(prompt.system_prompt, user_prompt, context)
                parsed, validation = self.parse_and_validate(output or "")
            except (CodeGenerationError, CodeValidationError) as e:
                last_error = e.message
                logger.warning(f"Code generation attempt {attempts} failed: {last_error}")
                continue
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Code generation attempt {attempts} raised: {last_error}")
                continue

            logger.info(f"Generated {prompt.classification.type.value} code in {attempts} attempt(s)")
            return GeneratedCode(
                code=parsed.code,
                attempts=attempts,
                classification=prompt.classification,
                validation=validation,
                explanation=parsed.explanation,
            )

        raise CodeGenerationError(
            f"Failed after {attempts} attempts. Last error: {last_error}",
            attempts=attempts,
        )
