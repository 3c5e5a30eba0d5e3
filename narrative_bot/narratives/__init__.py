"""Concrete onboarding tracks."""

from .advanced_user import AdvancedUserNarrative
from .new_user import NewUserNarrative

__all__ = ["AdvancedUserNarrative", "NewUserNarrative"]
