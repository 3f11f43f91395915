"""Skill registry: build once at startup, read concurrently afterwards."""

from __future__ import annotations

import inspect
import logging
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from ..constants import DEFAULT_CALL_COST_USD, DEFAULT_PROVIDER, PROVIDER_COST_USD
from ..errors import ConfigurationError, NotFound
from .models import (
    ExecutionContext,
    FunctionSkill,
    Skill,
    SkillCategory,
    SkillDescriptor,
    skill,
)

logger = logging.getLogger(__name__)


class SkillRegistry:
    """Holds skill descriptors keyed by id.

    Registration happens during startup; ``freeze()`` ends that phase and
    from then on the registry is read-only, so resolution needs no locking.
    """

    def __init__(self, descriptors: Optional[List[SkillDescriptor]] = None) -> None:
        self._skills: Dict[str, SkillDescriptor] = {}
        self._lock = threading.Lock()
        self._frozen = False
        for descriptor in descriptors or []:
            self.register(descriptor)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "SkillRegistry":
        self._frozen = True
        logger.debug(f"Skill registry frozen with {len(self._skills)} skills")
        return self

    def register(self, descriptor: SkillDescriptor) -> SkillDescriptor:
        """Add ``descriptor``; identical re-registration is a no-op."""
        if not isinstance(descriptor, SkillDescriptor):
            raise ConfigurationError(
                f"Expected SkillDescriptor, got {type(descriptor).__name__}"
            )
        with self._lock:
            if self._frozen:
                raise ConfigurationError(
                    f"Cannot register '{descriptor.id}': registry is frozen",
                    skill_id=descriptor.id,
                )
            existing = self._skills.get(descriptor.id)
            if existing is not None:
                if existing == descriptor:
                    return existing
                if existing.handler != descriptor.handler:
                    reason = "a different handler"
                else:
                    reason = "conflicting settings"
                raise ConfigurationError(
                    f"Skill '{descriptor.id}' is already registered with {reason}",
                    skill_id=descriptor.id,
                )
            self._skills[descriptor.id] = descriptor
        logger.info(f"Registered skill: {descriptor.id} (v{descriptor.version})")
        return descriptor

    def unregister(self, skill_id: str) -> bool:
        with self._lock:
            if self._frozen:
                raise ConfigurationError(
                    f"Cannot unregister '{skill_id}': registry is frozen",
                    skill_id=skill_id,
                )
            existed = self._skills.pop(skill_id, None) is not None
        if existed:
            logger.info(f"Unregistered skill: {skill_id}")
        return existed

    def resolve(self, skill_id: str) -> SkillDescriptor:
        try:
            return self._skills[skill_id]
        except KeyError:
            raise NotFound(f"Skill '{skill_id}' not found", skill_id=skill_id) from None

    def has(self, skill_id: str) -> bool:
        return skill_id in self._skills

    def list(
        self,
        category: Optional[SkillCategory | str] = None,
        active: Optional[bool] = None,
        provider: Optional[str] = None,
    ) -> List[SkillDescriptor]:
        skills = list(self._skills.values())
        if category is not None:
            category = SkillCategory(category)
            skills = [s for s in skills if s.category == category]
        if active is not None:
            skills = [s for s in skills if s.active is active]
        if provider is not None:
            skills = [s for s in skills if s.provider == provider]
        return sorted(skills, key=lambda s: s.id)

    async def estimate_cost(self, skill_id: str, input: Any = None) -> float:
        """Expected USD cost of running ``skill_id`` once on ``input``.

        Uses the descriptor's ``estimate_cost`` hook when it has one, else a
        flat per-call price for its provider.
        """
        descriptor = self.resolve(skill_id)
        if descriptor.estimate_cost is not None:
            cost = descriptor.estimate_cost(input)
            if inspect.isawaitable(cost):
                cost = await cost
            return float(cost)
        provider = descriptor.provider or DEFAULT_PROVIDER
        return PROVIDER_COST_USD.get(provider, DEFAULT_CALL_COST_USD)

    def stats(self) -> dict:
        skills = list(self._skills.values())
        by_category = {c.value: 0 for c in SkillCategory}
        by_category.update(Counter(s.category.value for s in skills))
        by_provider = dict(Counter(s.provider for s in skills if s.provider))
        return {
            "total_skills": len(skills),
            "active_skills": sum(1 for s in skills if s.active),
            "by_category": by_category,
            "by_provider": by_provider,
        }

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._skills

    def __len__(self) -> int:
        return len(self._skills)


__all__ = [
    "ExecutionContext",
    "FunctionSkill",
    "Skill",
    "SkillCategory",
    "SkillDescriptor",
    "SkillRegistry",
    "skill",
]
