"""Pydantic-AI agents exposed as skills."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

from pydantic_ai import Agent
from pydantic_core import to_json

from ..errors import ValidationError
from ..registry import ExecutionContext, Skill, SkillCategory, SkillDescriptor

logger = logging.getLogger(__name__)

PromptBuilder = Union[str, Callable[[Any], str], None]


class AgentSkill(Skill):
    """Run a ``pydantic_ai.Agent`` for each invocation.

    The prompt is built from the skill input: a ``str.format`` template filled
    from a mapping input, a callable receiving the input, or, by default, the
    input itself (strings verbatim, anything else as JSON). Token usage of the
    agent run is reported to the execution context.
    """

    def __init__(
        self,
        agent: Agent,
        prompt: PromptBuilder = None,
        deps: Any = None,
        cost_per_1k_tokens: float = 0.0,
    ) -> None:
        self.agent = agent
        self.prompt = prompt
        self.deps = deps
        self.cost_per_1k_tokens = cost_per_1k_tokens

    def build_prompt(self, input: Any) -> str:
        if callable(self.prompt):
            return self.prompt(input)
        if isinstance(self.prompt, str):
            if not isinstance(input, Mapping):
                raise ValidationError("Prompt templates need a mapping input")
            try:
                return self.prompt.format(**input)
            except KeyError as e:
                raise ValidationError(f"Prompt template field missing from input: {e}") from e
        if isinstance(input, str):
            return input
        return to_json(input, fallback=repr).decode()

    async def invoke(self, input: Any, context: ExecutionContext) -> Any:
        context.raise_if_cancelled()
        prompt = self.build_prompt(input)
        logger.debug(
            f"Running agent for skill {context.skill_id} attempt {context.attempt} "
            f"correlation_id={context.correlation_id}"
        )
        result = await self.agent.run(prompt, deps=self.deps)

        tokens = getattr(result.usage(), "total_tokens", None) or 0
        context.report_usage(
            tokens=tokens, cost_usd=tokens / 1000 * self.cost_per_1k_tokens
        )
        return result.output


def agent_skill(
    skill_id: str,
    agent: Agent,
    prompt: PromptBuilder = None,
    *,
    deps: Any = None,
    cost_per_1k_tokens: float = 0.0,
    **fields: Any,
) -> SkillDescriptor:
    """Build a descriptor for an agent-backed content generation skill."""
    fields.setdefault("category", SkillCategory.GENERATE)
    fields.setdefault("provider", "pydantic-ai")
    fields.setdefault("name", getattr(agent, "name", None))
    return SkillDescriptor(
        id=skill_id,
        handler=AgentSkill(
            agent, prompt, deps=deps, cost_per_1k_tokens=cost_per_1k_tokens
        ),
        **fields,
    )
