"""Pure field mappings between HubSpot and Rentman records.

Every mapping is deterministic and total: each destination field gets a
default when the origin value is missing, so replaying the same origin state
twice produces the same destination properties.

Also holds the stage tables used by the status aggregator:
- RENTMAN_STATUS_TO_ORDER_STAGE: Rentman subproject status id -> OrderStage
- ORDER_STAGE_IDS: OrderStage -> HubSpot order pipeline stage id
- DEAL_STAGE_IDS: OrderStage -> HubSpot deal stage id
- STAGE_PRIORITY: highest priority first
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from src.crmsync.sync.kinds import EntityKind, SystemName

_TLD_RE = re.compile(r"\.[a-zA-Z]{2,}$")
_WHITESPACE_RE = re.compile(r"\s+")

EPSILON = 1e-6

DEFAULT_TLD = "dk"
PROJECT_REQUEST_START_HOUR = 13
PROJECT_REQUEST_END_HOUR = 11

REQUEST_RETRY_VALUE = "Proev Igen"
REQUEST_CREATED_VALUE = "Ja"


# ── Value Sanitizers ────────────────────────────────────────────────────────


def sanitize_email(email: str | None) -> str:
    """Trim, drop inner whitespace and append ``.dk`` to a TLD-less domain.

    >>> sanitize_email(" jane @ example ")
    'jane@example.dk'
    """
    if not email:
        return ""
    cleaned = _WHITESPACE_RE.sub("", email.strip())
    if "@" not in cleaned:
        return cleaned
    local_part, _, domain = cleaned.partition("@")
    if not domain:
        return cleaned
    if not _TLD_RE.search(domain):
        return f"{local_part}@{domain}.{DEFAULT_TLD}"
    return cleaned


def sanitize_number(value: Any, decimals: int = 2) -> float:
    """Round to ``decimals``; near-zero, missing and invalid values become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or abs(number) < EPSILON:
        return 0.0
    return round(number, decimals)


def extract_id_from_ref(ref: str | None) -> int | None:
    """Return the trailing numeric id of a Rentman ref such as ``/contacts/12``."""
    if not ref:
        return None
    tail = str(ref).rstrip("/").rsplit("/", 1)[-1]
    try:
        value = int(tail)
    except ValueError:
        return None
    return value or None


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) or str(value).isdigit():
        return datetime.fromtimestamp(int(value) / 1000)
    text = str(value).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def previous_weekday(moment: datetime) -> datetime:
    """The closest earlier Monday-Friday day, at 13:00."""
    day = moment - timedelta(days=1)
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day.replace(hour=PROJECT_REQUEST_START_HOUR, minute=0, second=0, microsecond=0)


def next_weekday(moment: datetime) -> datetime:
    """The closest later Monday-Friday day, at 11:00."""
    day = moment + timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day.replace(hour=PROJECT_REQUEST_END_HOUR, minute=0, second=0, microsecond=0)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _properties(record: dict[str, Any] | None) -> dict[str, Any]:
    if not record:
        return {}
    return record.get("properties") or {}


def split_full_name(full_name: str | None) -> tuple[str, str]:
    """Split ``"Jane van Dijk"`` into ``("Jane", "van Dijk")``."""
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


# ── Organization ────────────────────────────────────────────────────────────


def organization_to_hubspot(contact: dict[str, Any]) -> dict[str, str]:
    """Rentman contact -> HubSpot company properties."""
    return {
        "name": _text(contact.get("displayname") or contact.get("name") or "Unknown"),
        "cvrnummer": _text(contact.get("VAT_code")),
        "address": _text(contact.get("street")),
        "city": _text(contact.get("city")),
        "zip": _text(contact.get("postalcode")),
        "country": _text(contact.get("country")),
        "phone": _text(contact.get("phone")),
        "website": _text(contact.get("website")),
    }


def organization_to_rentman(company: dict[str, Any]) -> dict[str, str]:
    """HubSpot company -> Rentman contact fields."""
    props = _properties(company)
    return {
        "name": _text(props.get("name") or "Unknown"),
        "VAT_code": _text(props.get("cvrnummer")),
        "street": _text(props.get("address")),
        "city": _text(props.get("city")),
        "postalcode": _text(props.get("zip")),
        "country": _text(props.get("country")),
        "phone": _text(props.get("phone")),
        "website": _text(props.get("website") or props.get("domain")),
    }


# ── Person ──────────────────────────────────────────────────────────────────


def person_to_hubspot(person: dict[str, Any]) -> dict[str, str]:
    """Rentman contact person -> HubSpot contact properties."""
    first, last = split_full_name(person.get("displayname"))
    return {
        "firstname": _text(person.get("firstname") or first),
        "lastname": _text(person.get("lastname") or last),
        "email": sanitize_email(person.get("email")),
        "phone": _text(person.get("phone")),
        "mobilephone": _text(person.get("mobilephone")),
        "jobtitle": _text(person.get("function")),
    }


def person_to_rentman(contact: dict[str, Any]) -> dict[str, str]:
    """HubSpot contact -> Rentman contact person fields."""
    props = _properties(contact)
    return {
        "firstname": _text(props.get("firstname")),
        "lastname": _text(props.get("lastname")),
        "email": sanitize_email(props.get("email")),
        "phone": _text(props.get("phone")),
        "mobilephone": _text(props.get("mobilephone")),
        "function": _text(props.get("jobtitle")),
    }


# ── Stages ──────────────────────────────────────────────────────────────────


class OrderStage(str, Enum):
    """Lifecycle stage shared by orders and the deals they roll up into."""

    CONCEPT = "concept"
    PENDING = "pending"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    TO_BE_INVOICED = "to_be_invoiced"
    INVOICED = "invoiced"
    RETURNED = "returned"
    MISSING_EQUIPMENT = "missing_equipment"


RENTMAN_STATUS_TO_ORDER_STAGE: dict[int, OrderStage] = {
    1: OrderStage.PENDING,
    2: OrderStage.CANCELLED,
    3: OrderStage.CONFIRMED,
    4: OrderStage.CONFIRMED,
    5: OrderStage.CONFIRMED,
    6: OrderStage.RETURNED,
    7: OrderStage.CONCEPT,
    8: OrderStage.CONCEPT,
    9: OrderStage.TO_BE_INVOICED,
    11: OrderStage.INVOICED,
    12: OrderStage.MISSING_EQUIPMENT,
}

# HubSpot order pipeline stage ids
ORDER_STAGE_IDS: dict[OrderStage, str] = {
    OrderStage.CONCEPT: "4b27b500-f031-4927-9811-68a0b525cbae",
    OrderStage.PENDING: "937ea84d-0a4f-4dcf-9028-3f9c2aafbf03",
    OrderStage.CANCELLED: "3725360f-519b-4b18-a593-494d60a29c9f",
    OrderStage.CONFIRMED: "aa99e8d0-c1d5-4071-b915-d240bbb1aed9",
    OrderStage.COMPLETED: "3852081363",
    OrderStage.TO_BE_INVOICED: "3531598027",
    OrderStage.INVOICED: "3c85a297-e9ce-400b-b42e-9f16853d69d6",
    OrderStage.RETURNED: "3986020540",
    OrderStage.MISSING_EQUIPMENT: "4012316916",
}

ORDER_STAGE_BY_ID: dict[str, OrderStage] = {value: key for key, value in ORDER_STAGE_IDS.items()}

# HubSpot deal pipeline stage ids
DEAL_STAGE_IDS: dict[OrderStage, str] = {
    OrderStage.CONCEPT: "appointmentscheduled",
    OrderStage.PENDING: "qualifiedtobuy",
    OrderStage.CANCELLED: "decisionmakerboughtin",
    OrderStage.CONFIRMED: "presentationscheduled",
    OrderStage.COMPLETED: "3851496691",
    OrderStage.TO_BE_INVOICED: "3852552384",
    OrderStage.INVOICED: "3852552385",
    OrderStage.RETURNED: "3986019567",
    OrderStage.MISSING_EQUIPMENT: "4003784908",
}

# Highest priority first. Returned and missing-equipment orders only decide
# the deal stage when every order shares them.
STAGE_PRIORITY: tuple[OrderStage, ...] = (
    OrderStage.TO_BE_INVOICED,
    OrderStage.CONFIRMED,
    OrderStage.INVOICED,
    OrderStage.COMPLETED,
    OrderStage.PENDING,
    OrderStage.CONCEPT,
    OrderStage.CANCELLED,
)

INITIAL_DEAL_STAGE = OrderStage.CONCEPT
DEFAULT_ORDER_STAGE = OrderStage.CONCEPT


def order_stage_for_status(status: Any) -> OrderStage | None:
    """Resolve a Rentman status (id, ref or ``{"id": n}``) to an OrderStage."""
    if isinstance(status, dict):
        status = status.get("id")
    if isinstance(status, str) and not status.isdigit():
        status = extract_id_from_ref(status)
    if status is None:
        return None
    try:
        return RENTMAN_STATUS_TO_ORDER_STAGE.get(int(status))
    except (TypeError, ValueError):
        return None


# ── Deal ────────────────────────────────────────────────────────────────────


def deal_to_hubspot(
    project: dict[str, Any],
    *,
    pipeline: str,
    project_url: str | None = None,
    create: bool = False,
) -> dict[str, Any]:
    """Rentman project -> HubSpot deal properties.

    The deal stage is only set on create; afterwards it is owned by the
    status aggregator.
    """
    properties: dict[str, Any] = {
        "dealname": _text(project.get("displayname") or project.get("name") or "Unnamed Project"),
        "amount": sanitize_number(project.get("project_total_price")),
        "pipeline": pipeline,
        "usage_period": _text(project.get("usageperiod_start")),
        "slut_projekt_period": _text(project.get("usageperiod_end")),
        "start_planning_period": _text(project.get("planperiod_start")),
        "slut_planning_period": _text(project.get("planperiod_end")),
    }
    if project_url:
        properties["rentman_projekt"] = project_url
    if create:
        properties["dealstage"] = DEAL_STAGE_IDS[INITIAL_DEAL_STAGE]
    return properties


def project_request_from_deal(
    deal: dict[str, Any],
    *,
    linked_contact_ref: str | None = None,
) -> dict[str, Any] | None:
    """HubSpot deal -> Rentman project request body.

    Returns None when the deal has no complete usage period. The planning
    period opens the weekday before the usage period and closes the weekday
    after it.
    """
    props = _properties(deal)
    start = parse_datetime(props.get("usage_period"))
    end = parse_datetime(props.get("slut_projekt_period"))
    if start is None or end is None:
        return None
    body: dict[str, Any] = {
        "name": _text(props.get("dealname") or "Unnamed Deal"),
        "usageperiod_start": start.isoformat(),
        "usageperiod_end": end.isoformat(),
        "planperiod_start": previous_weekday(start).isoformat(),
        "planperiod_end": next_weekday(end).isoformat(),
    }
    if linked_contact_ref:
        body["linked_contact"] = linked_contact_ref
    return body


def deal_request_properties(request: dict[str, Any], request_url: str) -> dict[str, Any]:
    """HubSpot deal properties recording a freshly created project request."""
    return {
        "hidden_rentman_request": "true",
        "opret_i_rentam_request": REQUEST_CREATED_VALUE,
        "start_planning_period": _text(request.get("planperiod_start")),
        "slut_planning_period": _text(request.get("planperiod_end")),
        "rentman_projekt": request_url,
    }


# ── Order ───────────────────────────────────────────────────────────────────


def order_to_hubspot(subproject: dict[str, Any], *, pipeline: str) -> dict[str, Any]:
    """Rentman subproject -> HubSpot order properties."""
    stage = order_stage_for_status(subproject.get("status")) or DEFAULT_ORDER_STAGE
    return {
        "hs_order_name": _text(
            subproject.get("displayname") or subproject.get("name") or "Unnamed Order"
        ),
        "hs_total_price": sanitize_number(subproject.get("project_total_price")),
        "hs_pipeline": pipeline,
        "hs_pipeline_stage": ORDER_STAGE_IDS[stage],
        "start_projekt_period": _text(subproject.get("usageperiod_start")),
        "slut_projekt_period": _text(subproject.get("usageperiod_end")),
    }


# ── Display Names ───────────────────────────────────────────────────────────

_HUBSPOT_NAME_FIELDS: dict[EntityKind, str] = {
    EntityKind.ORGANIZATION: "name",
    EntityKind.DEAL: "dealname",
    EntityKind.ORDER: "hs_order_name",
}


def display_name(kind: EntityKind, system: SystemName, record: dict[str, Any] | None) -> str | None:
    """Human-readable name cached on the correlation record."""
    if not record:
        return None
    if system is SystemName.RENTMAN:
        if kind is EntityKind.PERSON and not record.get("displayname"):
            name = f"{record.get('firstname') or ''} {record.get('lastname') or ''}".strip()
            return name or None
        return record.get("displayname") or record.get("name")
    props = _properties(record)
    if kind is EntityKind.PERSON:
        name = f"{props.get('firstname') or ''} {props.get('lastname') or ''}".strip()
        return name or props.get("email") or None
    return props.get(_HUBSPOT_NAME_FIELDS[kind])


def rentman_app_url(app_url: str, collection: str, object_id: Any) -> str:
    """Link to a project or project request in the Rentman web app."""
    return f"{app_url.rstrip('/')}/#/{collection}/{object_id}/details"
