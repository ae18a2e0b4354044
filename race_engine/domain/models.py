from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Type, TypeVar

from race_engine.clock import parse_iso, to_iso
from race_engine.domain.specifications import Specification, parse_specification, specification_to_payload
from race_engine.errors import ValidationError


class RfqType(str, Enum):
    COMMODITY = "commodity"
    CUSTOM = "custom"
    SERVICE = "service"


class RfqStatus(str, Enum):
    OPEN = "Open"
    BIDDING = "Bidding"
    PRIORITY_HOLD = "priority_hold"
    AWARDED = "Awarded"
    CLOSED = "Closed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RfqStatus.AWARDED, RfqStatus.CLOSED, RfqStatus.CANCELLED})
ACCEPTING_STATUSES = frozenset({RfqStatus.BIDDING, RfqStatus.PRIORITY_HOLD})


class ResponseType(str, Enum):
    ACCEPT = "accept"
    INFO_REQUEST = "info_request"
    DECLINE = "decline"


class SupplierTier(str, Enum):
    VERIFIED_PARTNER = "verified_partner"
    APPROVED = "approved"
    PENDING = "pending"
    SUSPENDED = "suspended"


class Urgency(str, Enum):
    URGENT = "urgent"
    STANDARD = "standard"


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip()
    for member in enum_cls:
        if member.value == raw or member.value.lower() == raw.lower():
            return member
    allowed = ", ".join(member.value for member in enum_cls)
    raise ValidationError(details=f"{field_name} must be one of: {allowed} (got {value!r})")


def _optional_float(value: Any, field_name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(details=f"{field_name} must be numeric") from exc


def _optional_timestamp(value: Any, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    parsed = parse_iso(value)
    if parsed is None:
        raise ValidationError(details=f"{field_name} must be an ISO-8601 timestamp")
    return parsed


@dataclass(frozen=True)
class Rfq:
    id: str
    tenant_id: str
    buyer_id: str
    rfq_type: RfqType
    title: str
    specifications: Specification
    status: RfqStatus = RfqStatus.OPEN
    urgency: Urgency = Urgency.STANDARD
    budget_min: float | None = None
    budget_max: float | None = None
    deadline: datetime | None = None
    category: str | None = None
    priority_holder_id: str | None = None
    priority_hold_expires_at: datetime | None = None
    awarded_to: str | None = None
    race_opens_at: datetime | None = None
    created_at: datetime | None = None
    version: int = 0

    @classmethod
    def new(
        cls,
        *,
        rfq_id: str,
        tenant_id: str,
        buyer_id: str,
        rfq_type: Any,
        title: str,
        specifications: Dict[str, Any] | None = None,
        urgency: Any = Urgency.STANDARD,
        budget_min: Any = None,
        budget_max: Any = None,
        deadline: Any = None,
        category: str | None = None,
    ) -> "Rfq":
        identifier = str(rfq_id or "").strip()
        if not identifier:
            raise ValidationError(details="rfq id is required")
        buyer = str(buyer_id or "").strip()
        if not buyer:
            raise ValidationError(details="buyer_id is required")
        clean_title = str(title or "").strip()
        if not clean_title:
            raise ValidationError(details="title is required")

        resolved_type = coerce_enum(RfqType, rfq_type, "rfq_type")
        low = _optional_float(budget_min, "budget_min")
        high = _optional_float(budget_max, "budget_max")
        if low is not None and high is not None and low > high:
            raise ValidationError(details="budget_min cannot exceed budget_max")

        return cls(
            id=identifier,
            tenant_id=tenant_id,
            buyer_id=buyer,
            rfq_type=resolved_type,
            title=clean_title,
            specifications=parse_specification(resolved_type.value, specifications),
            urgency=coerce_enum(Urgency, urgency or Urgency.STANDARD, "urgency"),
            budget_min=low,
            budget_max=high,
            deadline=_optional_timestamp(deadline, "deadline"),
            category=str(category or "").strip() or None,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Rfq":
        data = dict(row)
        rfq_type = RfqType(data["rfq_type"])
        return cls(
            id=str(data["id"]),
            tenant_id=str(data["tenant_id"]),
            buyer_id=str(data["buyer_id"]),
            rfq_type=rfq_type,
            title=str(data["title"]),
            specifications=parse_specification(rfq_type.value, data.get("specifications") or "{}"),
            status=RfqStatus(data["status"]),
            urgency=Urgency(data.get("urgency") or Urgency.STANDARD.value),
            budget_min=data.get("budget_min"),
            budget_max=data.get("budget_max"),
            deadline=parse_iso(data.get("deadline")),
            category=data.get("category"),
            priority_holder_id=data.get("priority_holder_id"),
            priority_hold_expires_at=parse_iso(data.get("priority_hold_expires_at")),
            awarded_to=data.get("awarded_to"),
            race_opens_at=parse_iso(data.get("race_opens_at")),
            created_at=parse_iso(data.get("created_at")),
            version=int(data.get("version") or 0),
        )

    @property
    def specifications_json(self) -> str:
        return json.dumps(specification_to_payload(self.specifications), sort_keys=True)

    def with_changes(self, **changes: Any) -> "Rfq":
        return replace(self, **changes)

    def invariant_violations(self) -> List[str]:
        problems: List[str] = []
        held = self.status is RfqStatus.PRIORITY_HOLD
        if held != (self.priority_holder_id is not None):
            problems.append("priority_holder_id must be set iff status is priority_hold")
        if held != (self.priority_hold_expires_at is not None):
            problems.append("priority_hold_expires_at must be set iff status is priority_hold")
        if (self.status is RfqStatus.AWARDED) != (self.awarded_to is not None):
            problems.append("awarded_to must be set iff status is Awarded")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "buyer_id": self.buyer_id,
            "rfq_type": self.rfq_type.value,
            "title": self.title,
            "specifications": specification_to_payload(self.specifications),
            "status": self.status.value,
            "urgency": self.urgency.value,
            "budget_min": self.budget_min,
            "budget_max": self.budget_max,
            "deadline": to_iso(self.deadline),
            "category": self.category,
            "priority_holder_id": self.priority_holder_id,
            "priority_hold_expires_at": to_iso(self.priority_hold_expires_at),
            "awarded_to": self.awarded_to,
            "race_opens_at": to_iso(self.race_opens_at),
            "created_at": to_iso(self.created_at),
            "version": self.version,
        }


@dataclass(frozen=True)
class EligibleSupplier:
    supplier_id: str
    tier: SupplierTier
    timezone: str = "UTC"

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "EligibleSupplier":
        supplier_id = str(raw.get("supplier_id") or raw.get("id") or "").strip()
        if not supplier_id:
            raise ValidationError(details="supplier_id is required for every eligible supplier")
        return cls(
            supplier_id=supplier_id,
            tier=coerce_enum(SupplierTier, raw.get("tier") or SupplierTier.APPROVED, "tier"),
            timezone=str(raw.get("timezone") or "UTC").strip() or "UTC",
        )


@dataclass(frozen=True)
class RfqResponse:
    rfq_id: str
    supplier_id: str
    response_type: ResponseType
    quoted_price: float | None = None
    message: str | None = None
    responded_at: datetime | None = None
    outcome: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RfqResponse":
        data = dict(row)
        return cls(
            id=int(data["id"]) if data.get("id") is not None else None,
            rfq_id=str(data["rfq_id"]),
            supplier_id=str(data["supplier_id"]),
            response_type=ResponseType(data["response_type"]),
            quoted_price=data.get("quoted_price"),
            message=data.get("message"),
            responded_at=parse_iso(data.get("responded_at")),
            outcome=data.get("outcome"),
        )


@dataclass(frozen=True)
class RfqBroadcast:
    rfq_id: str
    supplier_id: str
    scheduled_at: datetime
    tier: SupplierTier = SupplierTier.APPROVED
    timezone: str = "UTC"
    delivered_at: datetime | None = None
    viewed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RfqBroadcast":
        data = dict(row)
        return cls(
            rfq_id=str(data["rfq_id"]),
            supplier_id=str(data["supplier_id"]),
            scheduled_at=parse_iso(data["scheduled_at"]),
            tier=SupplierTier(data.get("tier") or SupplierTier.APPROVED.value),
            timezone=str(data.get("timezone") or "UTC"),
            delivered_at=parse_iso(data.get("delivered_at")),
            viewed_at=parse_iso(data.get("viewed_at")),
        )

    def is_visible_at(self, now: datetime) -> bool:
        return self.delivered_at is not None and self.delivered_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rfq_id": self.rfq_id,
            "supplier_id": self.supplier_id,
            "tier": self.tier.value,
            "timezone": self.timezone,
            "scheduled_at": to_iso(self.scheduled_at),
            "delivered_at": to_iso(self.delivered_at),
            "viewed_at": to_iso(self.viewed_at),
        }
