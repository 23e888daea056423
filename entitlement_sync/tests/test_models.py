"""
Tests for entitlement models and id helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from entitlement_sync.app.ids import is_legacy_id_match, normalize_content_id, require_identity
from entitlement_sync.app.models import (
    AccessType,
    AccessUpdate,
    Acquisition,
    ContentBundle,
    EntitlementRecord,
    PurchaseRecord,
    RedemptionRecord,
    remaining_days_until,
)
from shared.errors import AuthenticationError
from shared.test_helpers import TestDataFactory


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestEntitlementRecord:
    """Test cases for EntitlementRecord."""

    def test_non_positive_remaining_days_forces_denial(self):
        record = EntitlementRecord(content_id="Q1", has_access=True, remaining_days=0,
                                   acquired_via=Acquisition.PURCHASE)

        assert record.has_access is False
        assert record.access_type == AccessType.EXPIRED

    @pytest.mark.parametrize("via, expected", [
        (Acquisition.REDEMPTION, AccessType.REDEEMED),
        (Acquisition.PURCHASE, AccessType.PURCHASED),
        (Acquisition.NONE, AccessType.TRIAL),
    ])
    def test_access_type_follows_acquisition(self, via, expected):
        record = EntitlementRecord(content_id="Q1", has_access=True, remaining_days=5, acquired_via=via)
        assert record.access_type == expected

    def test_expiry_dominates_redemption(self):
        record = EntitlementRecord(content_id="Q1", has_access=True, remaining_days=-3,
                                   acquired_via=Acquisition.REDEMPTION)
        assert record.access_type == AccessType.EXPIRED

    def test_content_id_is_normalized(self):
        assert EntitlementRecord(content_id=42, has_access=False).content_id == "42"
        assert EntitlementRecord(content_id="  Q1 ", has_access=False).content_id == "Q1"

    def test_is_active_respects_expiry(self):
        record = EntitlementRecord(content_id="Q1", has_access=True, remaining_days=1,
                                   expires_at=NOW + timedelta(hours=2))

        assert record.is_active(NOW)
        assert not record.is_active(NOW + timedelta(hours=3))

    def test_at_recomputes_remaining_days(self):
        record = EntitlementRecord(content_id="Q1", has_access=True, remaining_days=30,
                                   expires_at=NOW + timedelta(days=30), acquired_via=Acquisition.PURCHASE)

        later = record.at(NOW + timedelta(days=29, hours=12))
        assert later.remaining_days == 1
        assert later.has_access is True

        expired = record.at(NOW + timedelta(days=31))
        assert expired.has_access is False
        assert expired.access_type == AccessType.EXPIRED

    def test_naive_datetimes_become_utc(self):
        record = EntitlementRecord(content_id="Q1", has_access=True, expires_at=datetime(2030, 1, 1))
        assert record.expires_at.tzinfo == timezone.utc


class TestWireModels:
    """Test cases for wire payload parsing."""

    def test_purchase_accepts_legacy_aliases(self):
        purchase = PurchaseRecord.model_validate(TestDataFactory.create_purchase("u1", "Q1", now=NOW))

        assert purchase.content_id == "Q1"
        assert purchase.user_id == "u1"
        assert purchase.acquisition == Acquisition.PURCHASE
        assert purchase.has_valid_status()
        assert not purchase.is_expired(NOW)

    def test_redeem_purchase_is_a_redemption(self):
        data = TestDataFactory.create_purchase("u1", "Q1", now=NOW, payment_method="redeem")
        assert PurchaseRecord.model_validate(data).acquisition == Acquisition.REDEMPTION

    def test_expired_purchase(self):
        purchase = PurchaseRecord.model_validate(TestDataFactory.create_expired_purchase("u1", "Q1", now=NOW))
        assert purchase.is_expired(NOW)

    def test_unknown_status_is_invalid(self):
        data = TestDataFactory.create_purchase("u1", "Q1", now=NOW, status="refunded")
        assert not PurchaseRecord.model_validate(data).has_valid_status()

    def test_redemption_accepts_used_at(self):
        record = RedemptionRecord.model_validate({"code": "ABC", "questionSetId": "Q1",
                                                  "usedAt": "2024-06-01T00:00:00Z"})
        assert record.redeemed_at == datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_bundle_accepts_mongo_id(self):
        bundle = ContentBundle.model_validate({"_id": "Q1", "isPaid": False})
        assert bundle.id == "Q1"
        assert bundle.is_paid is False

    def test_access_update_requires_content_id(self):
        with pytest.raises(ValidationError):
            AccessUpdate.model_validate({"questionSetId": " ", "hasAccess": True})
        with pytest.raises(ValidationError):
            AccessUpdate.model_validate({"questionSetId": "Q1"})

    def test_access_update_wire_form(self):
        update = AccessUpdate(content_id="Q1", has_access=True, remaining_days=30,
                              user_id="u1", source="redemption", payment_method="redeem")

        wire = update.to_wire()
        assert wire["questionSetId"] == "Q1"
        assert wire["contentId"] == "Q1"
        assert wire["hasAccess"] is True
        assert wire["paymentMethod"] == "redeem"
        assert "expiryDate" not in wire


class TestIds:
    """Test cases for id helpers."""

    def test_normalize(self):
        assert normalize_content_id(None) == ""
        assert normalize_content_id(7) == "7"

    def test_require_identity(self):
        assert require_identity(" u1 ") == "u1"
        with pytest.raises(AuthenticationError):
            require_identity(None)
        with pytest.raises(AuthenticationError):
            require_identity("")

    @pytest.mark.parametrize("stored, requested, expected", [
        ("5f8d0d55", "5f8d0d55b54764421b7156c3", True),
        ("5f8d0d5", "5f8d0d55b54764421b7156c3", False),
        ("5f8d0d55b54764421b7156c3", "5f8d0d55b54764421b7156c3", False),
        ("5f8d0d56", "5f8d0d55b54764421b7156c3", False),
    ])
    def test_legacy_prefix_match(self, stored, requested, expected):
        assert is_legacy_id_match(stored, requested) is expected

    def test_remaining_days_rounds_up(self):
        assert remaining_days_until(NOW + timedelta(hours=1), NOW) == 1
        assert remaining_days_until(NOW, NOW) == 0
        assert remaining_days_until(NOW - timedelta(days=2), NOW) == -2
