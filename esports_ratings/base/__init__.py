"""Base classes for rating systems."""

from .rating_system import RatingSystem
from .skill_state import SkillBelief, SkillState

__all__ = ["RatingSystem", "SkillBelief", "SkillState"]
