"""
Helpers shared by the test modules.
"""

from agentflow.models import LLMResponse, Usage


def reply(content: str, cost: float = 0.0, prompt_tokens: int = 0, completion_tokens: int = 0) -> LLMResponse:
    """Build a canned model reply."""
    return LLMResponse(
        content=content,
        finish_reason="stop",
        usage=Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
        cost=cost,
    )
