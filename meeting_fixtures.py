"""
Shared test data: sample meeting records and a scripted completion call.

Imported by the test_*.py modules next to it.
"""

from datetime import datetime, timedelta


def days_ago(days: int) -> str:
    return (datetime.now() - timedelta(days=days)).date().isoformat()


def sample_agents() -> list[dict]:
    """Four meeting records in the camelCase shape the ingestion layer sends."""
    return [
        {
            "id": "m1",
            "displayName": "Q1 Planning",
            "date": "2025-01-10",
            "enabled": True,
            "summary": "The team agreed on the Q1 roadmap and a budget of 40k for the pricing experiment.",
            "keyPoints": "- Roadmap locked for Q1\n- Pricing experiment approved\n- Hiring freeze continues",
            "actionItems": "- Alice drafts the pricing page\n- Bob books the vendor review",
            "sentiment": "positive",
            "transcript": "Alice: Let's lock the roadmap. Bob: Agreed, the budget is 40k.",
        },
        {
            "id": "m2",
            "displayName": "Design Review",
            "date": "2025-01-20",
            "enabled": True,
            "summary": "Designers presented the onboarding flow; accessibility concerns were raised.",
            "keyPoints": "- New onboarding flow\n- Accessibility audit needed",
            "actionItems": "- Carol schedules the accessibility audit",
            "sentiment": "mixed",
            "transcript": "Carol: The contrast ratio fails. Dan: We can fix it before launch.",
        },
        {
            "id": "m3",
            "displayName": "Vendor Sync",
            "date": "2025-01-30",
            "enabled": True,
            "summary": "The hosting vendor proposed a three-year contract with a discount.",
            "keyPoints": "- Three-year contract offered\n- Discount of 15 percent",
            "actionItems": "- Bob compares vendor quotes",
            "sentiment": "neutral",
            "transcript": "Vendor: We can offer 15 percent off. Bob: We need legal review first.",
        },
        {
            "id": "m4",
            "displayName": "Retro",
            "date": "2025-02-07",
            "enabled": True,
            "summary": "The sprint retro covered release delays and testing gaps.",
            "keyPoints": "- Release slipped a week\n- Flaky tests block merges",
            "actionItems": "- Dan fixes the flaky tests\n- Alice writes the release checklist",
            "sentiment": "negative",
            "transcript": "Dan: Flaky tests cost us two days. Alice: We need a checklist.",
        },
    ]


class ScriptedCall:
    """
    Completion call double.

    ``responder(system_prompt, user_prompt, context)`` returns the reply or
    raises; without one every call returns ``default``. All calls are
    recorded in ``calls``.
    """

    def __init__(self, responder=None, default: str = "Scripted answer."):
        self.responder = responder
        self.default = default
        self.calls: list[dict] = []

    async def __call__(self, system_prompt: str, user_prompt: str, context: dict) -> str:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "context": dict(context),
        })
        if self.responder is None:
            return self.default
        return self.responder(system_prompt, user_prompt, context)

    @property
    def count(self) -> int:
        return len(self.calls)


async def no_sleep(delay: float) -> None:
    """Backoff stand-in so retry tests run instantly."""
    return None
