"""Entity kinds, system names and the per-system identifiers for each kind.

Every routing decision goes through the lookup tables here instead of
comparing raw ``objectTypeId`` / ``itemType`` strings at the call site.
"""

from __future__ import annotations

from enum import Enum


class EntityKind(str, Enum):
    """The four entity kinds kept in sync between HubSpot and Rentman."""

    ORGANIZATION = "organization"
    PERSON = "person"
    DEAL = "deal"
    ORDER = "order"


class SystemName(str, Enum):
    """External systems on either side of the integration."""

    HUBSPOT = "hubspot"
    RENTMAN = "rentman"

    @property
    def counterpart(self) -> SystemName:
        return SystemName.RENTMAN if self is SystemName.HUBSPOT else SystemName.HUBSPOT


class SyncDirection(str, Enum):
    """Direction of a batch synchronization pass."""

    HUBSPOT_TO_RENTMAN = "hubspot_to_rentman"
    RENTMAN_TO_HUBSPOT = "rentman_to_hubspot"
    BIDIRECTIONAL = "bidirectional"

    def includes(self, origin: SystemName) -> bool:
        """Return True if records originating in ``origin`` are replayed."""
        if self is SyncDirection.BIDIRECTIONAL:
            return True
        if origin is SystemName.HUBSPOT:
            return self is SyncDirection.HUBSPOT_TO_RENTMAN
        return self is SyncDirection.RENTMAN_TO_HUBSPOT


# Parents before children, so batch runs find their parents correlated.
SYNC_ORDER: tuple[EntityKind, ...] = (
    EntityKind.ORGANIZATION,
    EntityKind.PERSON,
    EntityKind.DEAL,
    EntityKind.ORDER,
)


# ── HubSpot identifiers ─────────────────────────────────────────────────────

HUBSPOT_OBJECT_TYPES: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "companies",
    EntityKind.PERSON: "contacts",
    EntityKind.DEAL: "deals",
    EntityKind.ORDER: "orders",
}

HUBSPOT_OBJECT_TYPE_IDS: dict[str, EntityKind] = {
    "0-2": EntityKind.ORGANIZATION,
    "0-1": EntityKind.PERSON,
    "0-3": EntityKind.DEAL,
    "0-123": EntityKind.ORDER,
}

# Labels used in associationType values such as "CONTACT_TO_COMPANY"
HUBSPOT_ASSOCIATION_LABELS: dict[str, EntityKind] = {
    "COMPANY": EntityKind.ORGANIZATION,
    "CONTACT": EntityKind.PERSON,
    "DEAL": EntityKind.DEAL,
    "ORDER": EntityKind.ORDER,
}

# HUBSPOT_DEFINED association type ids, keyed (from_kind, to_kind)
HUBSPOT_ASSOCIATION_TYPES: dict[tuple[EntityKind, EntityKind], int] = {
    (EntityKind.PERSON, EntityKind.ORGANIZATION): 1,
    (EntityKind.DEAL, EntityKind.PERSON): 3,
    (EntityKind.DEAL, EntityKind.ORGANIZATION): 5,
    (EntityKind.ORDER, EntityKind.PERSON): 507,
    (EntityKind.ORDER, EntityKind.ORGANIZATION): 509,
    (EntityKind.ORDER, EntityKind.DEAL): 512,
}


# ── Rentman identifiers ─────────────────────────────────────────────────────

RENTMAN_COLLECTIONS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "contacts",
    EntityKind.PERSON: "contactpersons",
    EntityKind.DEAL: "projects",
    EntityKind.ORDER: "subprojects",
}

RENTMAN_ITEM_TYPES: dict[str, EntityKind] = {
    "Contact": EntityKind.ORGANIZATION,
    "ContactPerson": EntityKind.PERSON,
    "Project": EntityKind.DEAL,
    "Subproject": EntityKind.ORDER,
}


def kind_for_hubspot_object_type(object_type_id: str | None) -> EntityKind | None:
    """Resolve a webhook ``objectTypeId`` to an entity kind."""
    if object_type_id is None:
        return None
    return HUBSPOT_OBJECT_TYPE_IDS.get(str(object_type_id))


def kind_for_rentman_item_type(item_type: str | None) -> EntityKind | None:
    """Resolve a webhook ``itemType`` to an entity kind."""
    if item_type is None:
        return None
    return RENTMAN_ITEM_TYPES.get(item_type)


def parse_association_type(association_type: str | None) -> tuple[EntityKind, EntityKind] | None:
    """Split ``CONTACT_TO_COMPANY`` style labels into (from_kind, to_kind)."""
    if not association_type or "_TO_" not in association_type:
        return None
    left, _, right = association_type.partition("_TO_")
    from_kind = HUBSPOT_ASSOCIATION_LABELS.get(left)
    to_kind = HUBSPOT_ASSOCIATION_LABELS.get(right)
    if from_kind is None or to_kind is None:
        return None
    return from_kind, to_kind


def hubspot_association_type(from_kind: EntityKind, to_kind: EntityKind) -> int:
    """Return the HUBSPOT_DEFINED association type id for a kind pair.

    Raises:
        KeyError: If HubSpot has no default association for the pair.
    """
    if (from_kind, to_kind) in HUBSPOT_ASSOCIATION_TYPES:
        return HUBSPOT_ASSOCIATION_TYPES[(from_kind, to_kind)]
    raise KeyError(f"No HubSpot association type for {from_kind.value} -> {to_kind.value}")


# Owning kind of each child kind (Person -> Organization, Deal -> customer
# Organization, Order -> Deal)
PARENT_KINDS: dict[EntityKind, EntityKind] = {
    EntityKind.PERSON: EntityKind.ORGANIZATION,
    EntityKind.DEAL: EntityKind.ORGANIZATION,
    EntityKind.ORDER: EntityKind.DEAL,
}
