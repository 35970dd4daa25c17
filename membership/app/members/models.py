"""Domain models for members and the inputs of lifecycle operations."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..billing.models import ExternalCustomer, Subscription
from ..billing.status import MemberStatus


class EventSource(str, Enum):
    """Origin of a mutation, resolved once at the transport boundary."""

    IMPORT = "import"
    SYSTEM = "system"
    API = "api"
    ADMIN = "admin"
    MEMBER = "member"


class Member(BaseModel):
    """A member record; related collections are loaded through the store."""

    id: str
    email: str
    name: Optional[str] = None
    note: Optional[str] = None
    status: MemberStatus = MemberStatus.FREE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value


class MemberCreate(BaseModel):
    email: str
    name: Optional[str] = None
    note: Optional[str] = None
    subscribed: Optional[bool] = None
    newsletter_ids: Optional[Sequence[str]] = None
    product_ids: Sequence[str] = Field(default_factory=tuple)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class MemberUpdate(BaseModel):
    """Partial update; ``None`` leaves a field untouched."""

    email: Optional[str] = None
    name: Optional[str] = None
    note: Optional[str] = None
    subscribed: Optional[bool] = None
    newsletter_ids: Optional[Sequence[str]] = None
    product_ids: Optional[Sequence[str]] = None

    model_config = ConfigDict(frozen=True)

    def member_fields(self) -> Dict[str, object]:
        return {
            key: value
            for key, value in {"email": self.email, "name": self.name, "note": self.note}.items()
            if value is not None
        }


class MemberDetails(BaseModel):
    """A member together with the collections the store keeps for it."""

    member: Member
    product_ids: Tuple[str, ...] = Field(default_factory=tuple)
    newsletter_ids: Tuple[str, ...] = Field(default_factory=tuple)
    customers: Tuple[ExternalCustomer, ...] = Field(default_factory=tuple)
    subscriptions: Tuple[Subscription, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)
