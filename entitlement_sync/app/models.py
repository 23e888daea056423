"""
Entitlement data models.

Wire payloads use camelCase (and the legacy ``questionSetId`` for content
ids); every model accepts those aliases as well as the snake_case names.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .ids import normalize_content_id


VALID_PURCHASE_STATUSES = frozenset({"active", "completed", "success"})
REDEEM_PAYMENT_METHOD = "redeem"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def remaining_days_until(expiry: datetime, now: datetime) -> int:
    """Whole days left until ``expiry``, rounded up; zero or less once passed."""
    seconds = (ensure_utc(expiry) - ensure_utc(now)).total_seconds()
    return math.ceil(seconds / 86400)


class AccessType(str, Enum):
    """How access to a content bundle was obtained."""
    TRIAL = "trial"
    PURCHASED = "purchased"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class Acquisition(str, Enum):
    """Channel through which an entitlement was acquired."""
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    NONE = "none"


class ResolutionState(str, Enum):
    """Per-content progress of access resolution."""
    UNKNOWN = "unknown"
    CHECKING = "checking"
    RESOLVED = "resolved"
    DEGRADED = "degraded"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def determine_access_type(record: "EntitlementRecord") -> AccessType:
    """Derive the access type of a record.

    Expiry dominates every other field; otherwise redemption beats purchase
    and anything else is a trial.
    """
    if record.remaining_days is not None and record.remaining_days <= 0:
        return AccessType.EXPIRED
    if record.acquired_via == Acquisition.REDEMPTION:
        return AccessType.REDEEMED
    if record.acquired_via == Acquisition.PURCHASE:
        return AccessType.PURCHASED
    return AccessType.TRIAL


class EntitlementRecord(BaseModel):
    """Cached access decision for one (identity, content) pair."""

    content_id: str
    has_access: bool
    remaining_days: Optional[int] = None
    access_type: AccessType = AccessType.TRIAL
    acquired_via: Acquisition = Acquisition.NONE
    expires_at: Optional[datetime] = None
    cached_at: datetime = Field(default_factory=utcnow)
    source: str = "remote"

    @field_validator("content_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return normalize_content_id(value)

    @field_validator("expires_at", "cached_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _derive_access_type(self) -> "EntitlementRecord":
        if self.remaining_days is not None and self.remaining_days <= 0:
            self.has_access = False
        self.access_type = determine_access_type(self)
        return self

    def is_active(self, now: datetime) -> bool:
        """Positive and not past its expiry at ``now``."""
        if not self.has_access:
            return False
        return self.expires_at is None or self.expires_at > ensure_utc(now)

    def at(self, now: datetime) -> "EntitlementRecord":
        """The same record with remaining days recomputed for ``now``."""
        if self.expires_at is None:
            return self
        data = self.model_dump()
        data["remaining_days"] = remaining_days_until(self.expires_at, now)
        return EntitlementRecord(**data)


class PurchaseRecord(_WireModel):
    """Server-owned purchase of a content bundle."""

    id: str = ""
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))
    content_id: str = Field(
        ..., validation_alias=AliasChoices("content_id", "contentId", "questionSetId")
    )
    purchase_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("purchase_date", "purchaseDate")
    )
    expiry_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("expiry_date", "expiryDate")
    )
    status: str = "active"
    payment_method: Optional[str] = Field(
        None, validation_alias=AliasChoices("payment_method", "paymentMethod")
    )

    @field_validator("id", "content_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> str:
        return normalize_content_id(value)

    @field_validator("purchase_date", "expiry_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def acquisition(self) -> Acquisition:
        if self.payment_method == REDEEM_PAYMENT_METHOD:
            return Acquisition.REDEMPTION
        return Acquisition.PURCHASE

    def has_valid_status(self) -> bool:
        return (self.status or "").lower() in VALID_PURCHASE_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date is not None and self.expiry_date <= ensure_utc(now)


class RedemptionRecord(_WireModel):
    """Server-owned redemption of a code for a content bundle."""

    code: str = ""
    content_id: str = Field(
        ..., validation_alias=AliasChoices("content_id", "contentId", "questionSetId")
    )
    redeemed_at: datetime = Field(
        default_factory=utcnow, validation_alias=AliasChoices("redeemed_at", "redeemedAt", "usedAt")
    )
    expiry_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("expiry_date", "expiryDate")
    )

    @field_validator("content_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return normalize_content_id(value)

    @field_validator("redeemed_at", "expiry_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date is not None and self.expiry_date <= ensure_utc(now)


class ContentBundle(_WireModel):
    """Catalog entry, optionally pre-annotated with access flags."""

    id: str = Field(..., validation_alias=AliasChoices("id", "_id"))
    title: str = ""
    is_paid: bool = Field(True, validation_alias=AliasChoices("is_paid", "isPaid"))
    has_access: Optional[bool] = Field(None, validation_alias=AliasChoices("has_access", "hasAccess"))
    remaining_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("remaining_days", "remainingDays")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return normalize_content_id(value)


class AccessUpdate(_WireModel):
    """Access change carried by a push event."""

    content_id: str = Field(
        ..., validation_alias=AliasChoices("content_id", "contentId", "questionSetId")
    )
    has_access: bool = Field(..., validation_alias=AliasChoices("has_access", "hasAccess"))
    remaining_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("remaining_days", "remainingDays")
    )
    expiry_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("expiry_date", "expiryDate")
    )
    payment_method: Optional[str] = Field(
        None, validation_alias=AliasChoices("payment_method", "paymentMethod")
    )
    source: Optional[str] = None
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))

    @field_validator("content_id", mode="before")
    @classmethod
    def _require_id(cls, value: Any) -> str:
        normalized = normalize_content_id(value)
        if not normalized:
            raise ValueError("content id is empty")
        return normalized

    @field_validator("user_id", mode="before")
    @classmethod
    def _normalize_user(cls, value: Any) -> Optional[str]:
        return normalize_content_id(value) or None

    @field_validator("expiry_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def to_wire(self) -> dict:
        """Client-originated ``questionSet:accessUpdate`` payload."""
        payload = {
            "userId": self.user_id,
            "contentId": self.content_id,
            "questionSetId": self.content_id,
            "hasAccess": self.has_access,
            "remainingDays": self.remaining_days,
            "source": self.source,
        }
        if self.expiry_date is not None:
            payload["expiryDate"] = self.expiry_date.isoformat()
        if self.payment_method is not None:
            payload["paymentMethod"] = self.payment_method
        return payload


class RemoteAccess(_WireModel):
    """Answer of the authoritative access check."""

    content_id: str
    has_access: bool = Field(False, validation_alias=AliasChoices("has_access", "hasAccess"))
    remaining_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("remaining_days", "remainingDays")
    )
    expiry_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("expiry_date", "expiryDate")
    )
    payment_method: Optional[str] = Field(
        None, validation_alias=AliasChoices("payment_method", "paymentMethod")
    )
    stale: bool = False

    @field_validator("content_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return normalize_content_id(value)

    @field_validator("expiry_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)
