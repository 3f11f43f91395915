"""Skill adapters for external providers."""

from .agent import AgentSkill, agent_skill

__all__ = ["AgentSkill", "agent_skill"]
