"""Origin tags -- how a change notification is recognised as self-caused.

Each system client declares the identity its own writes carry on that
system: HubSpot records writes made with the private-app token under the
``INTEGRATION`` / ``API`` change sources, Rentman attributes them to the
integration user. The dispatcher asks the tags of both clients before routing
an event, so a replay never triggers a replay of itself.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from src.crmsync.sync.kinds import SystemName


@dataclass(frozen=True)
class OriginTag:
    """Identities stamped on writes this integration performs on ``system``."""

    system: SystemName
    identities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, system: SystemName, identities: Iterable[object]) -> OriginTag:
        return cls(system=system, identities=frozenset(str(i) for i in identities if i is not None))

    def matches(self, value: object) -> bool:
        """True if ``value`` (a change source or user id) is one of ours."""
        if value is None:
            return False
        return str(value) in self.identities
