"""Plan generation: planner prompt, step validation and auto-correction."""

from .engine import PlanEngine, PlanResult, fallback_plan, needs_clarification, parse_steps

__all__ = ["PlanEngine", "PlanResult", "fallback_plan", "needs_clarification", "parse_steps"]
