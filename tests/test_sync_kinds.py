"""Tests for entity kind lookups, origin tags and error classification."""

from __future__ import annotations

import httpx
import pytest

from src.crmsync.sync.dispatch import association_owner
from src.crmsync.sync.errors import (
    CorrelationConflictError,
    ErrorType,
    ExternalAPIError,
    RateLimitError,
    Severity,
    classify_error,
    error_severity,
    error_status_code,
)
from src.crmsync.sync.kinds import (
    EntityKind,
    SyncDirection,
    SystemName,
    hubspot_association_type,
    kind_for_hubspot_object_type,
    kind_for_rentman_item_type,
    parse_association_type,
)
from src.crmsync.sync.origin import OriginTag


class TestKindLookups:
    def test_hubspot_object_type_ids(self):
        assert kind_for_hubspot_object_type("0-2") is EntityKind.ORGANIZATION
        assert kind_for_hubspot_object_type("0-1") is EntityKind.PERSON
        assert kind_for_hubspot_object_type("0-3") is EntityKind.DEAL
        assert kind_for_hubspot_object_type("0-123") is EntityKind.ORDER
        assert kind_for_hubspot_object_type("0-999") is None
        assert kind_for_hubspot_object_type(None) is None

    def test_rentman_item_types(self):
        assert kind_for_rentman_item_type("Contact") is EntityKind.ORGANIZATION
        assert kind_for_rentman_item_type("ContactPerson") is EntityKind.PERSON
        assert kind_for_rentman_item_type("Project") is EntityKind.DEAL
        assert kind_for_rentman_item_type("Subproject") is EntityKind.ORDER
        assert kind_for_rentman_item_type("Equipment") is None

    def test_parse_association_type(self):
        assert parse_association_type("CONTACT_TO_COMPANY") == (
            EntityKind.PERSON,
            EntityKind.ORGANIZATION,
        )
        assert parse_association_type("DEAL_TO_CONTACT") == (EntityKind.DEAL, EntityKind.PERSON)
        assert parse_association_type("CONTACT_TO_TICKET") is None
        assert parse_association_type(None) is None

    def test_association_owner_is_child(self):
        """Association events route to the child side of the pair."""
        assert association_owner((EntityKind.ORGANIZATION, EntityKind.PERSON)) is EntityKind.PERSON
        assert association_owner((EntityKind.PERSON, EntityKind.ORGANIZATION)) is EntityKind.PERSON
        assert association_owner((EntityKind.DEAL, EntityKind.ORDER)) is EntityKind.ORDER

    def test_hubspot_association_type(self):
        assert hubspot_association_type(EntityKind.PERSON, EntityKind.ORGANIZATION) == 1
        with pytest.raises(KeyError):
            hubspot_association_type(EntityKind.ORGANIZATION, EntityKind.ORDER)

    def test_direction_includes(self):
        assert SyncDirection.BIDIRECTIONAL.includes(SystemName.HUBSPOT)
        assert SyncDirection.HUBSPOT_TO_RENTMAN.includes(SystemName.HUBSPOT)
        assert not SyncDirection.HUBSPOT_TO_RENTMAN.includes(SystemName.RENTMAN)
        assert SyncDirection.RENTMAN_TO_HUBSPOT.includes(SystemName.RENTMAN)

    def test_counterpart(self):
        assert SystemName.HUBSPOT.counterpart is SystemName.RENTMAN
        assert SystemName.RENTMAN.counterpart is SystemName.HUBSPOT


class TestOriginTag:
    def test_matches_stringified_identities(self):
        """Rentman user ids arrive as ints; tags compare as strings."""
        tag = OriginTag.of(SystemName.RENTMAN, [235])
        assert tag.matches(235)
        assert tag.matches("235")
        assert not tag.matches(236)
        assert not tag.matches(None)

    def test_change_sources(self):
        tag = OriginTag.of(SystemName.HUBSPOT, ["INTEGRATION", "API", None])
        assert tag.identities == frozenset({"INTEGRATION", "API"})
        assert not tag.matches("CRM_UI")


class TestErrorClassification:
    def test_rate_limit(self):
        exc = RateLimitError("hubspot", 429, "slow down")
        assert classify_error(exc) is ErrorType.RATE_LIMIT
        assert error_status_code(exc) == "429"

    def test_server_error_is_high_severity(self):
        exc = ExternalAPIError("rentman", 502, "bad gateway")
        assert classify_error(exc) is ErrorType.API_ERROR
        assert error_severity(exc) is Severity.HIGH

    def test_client_error_is_validation(self):
        exc = ExternalAPIError("hubspot", 400, "bad property")
        assert classify_error(exc) is ErrorType.VALIDATION_ERROR
        assert error_severity(exc) is Severity.MEDIUM

    def test_transport_errors(self):
        request = httpx.Request("GET", "https://api.rentman.net/contacts")
        assert classify_error(httpx.ReadTimeout("slow", request=request)) is ErrorType.TIMEOUT
        assert classify_error(httpx.ConnectError("refused", request=request)) is ErrorType.CONNECTION_ERROR

    def test_conflict_and_unknown(self):
        assert classify_error(CorrelationConflictError("two rows")) is ErrorType.VALIDATION_ERROR
        assert classify_error(RuntimeError("?")) is ErrorType.UNKNOWN
        assert error_status_code(RuntimeError("?")) is None
