"""
Subscription plan tiers.

Tiers are totally ordered; upgrade and downgrade decisions compare tiers on
this order only, never on price or features.
"""

from enum import Enum
from functools import total_ordering


@total_ordering
class PlanTier(Enum):
    """Subscriber plan tiers, lowest first."""
    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    AGENCY = "agency"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank < other.rank

    def is_upgrade_from(self, other: "PlanTier") -> bool:
        return self > other

    def next_tier(self):
        """Return the tier above this one, or None for the top tier."""
        index = self.rank + 1
        return _ORDER[index] if index < len(_ORDER) else None

    @classmethod
    def parse(cls, value: str) -> "PlanTier":
        """Parse a plan name case-insensitively.

        Raises:
            ValueError: If the name is not a known tier
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = [tier.value for tier in cls]
            raise ValueError(f"Unknown plan '{value}'. Must be one of: {valid}")


_ORDER = [PlanTier.TRIAL, PlanTier.STARTER, PlanTier.PRO, PlanTier.AGENCY]
