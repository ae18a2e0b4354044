from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from race_engine.clock import to_iso
from race_engine.domain.models import ResponseType, coerce_enum
from race_engine.errors import RaceErrorKind, ValidationError
from race_engine.messages import error_message, success_message


class OutcomeKind(str, Enum):
    AWARDED = "awarded"
    HOLD_GRANTED = "hold_granted"
    RECORDED = "recorded"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ResponseSubmission:
    rfq_id: str
    supplier_id: str
    response_type: ResponseType
    quoted_price: float | None = None
    message: str | None = None

    @classmethod
    def build(
        cls,
        *,
        rfq_id: str,
        supplier_id: str,
        response_type: Any,
        quoted_price: Any = None,
        message: str | None = None,
    ) -> "ResponseSubmission":
        supplier = str(supplier_id or "").strip()
        if not supplier:
            raise ValidationError(details="supplier_id is required")
        price = None
        if quoted_price is not None and quoted_price != "":
            try:
                price = float(quoted_price)
            except (TypeError, ValueError) as exc:
                raise ValidationError(details="quoted_price must be numeric") from exc
            if price < 0:
                raise ValidationError(details="quoted_price cannot be negative")
        return cls(
            rfq_id=str(rfq_id),
            supplier_id=supplier,
            response_type=coerce_enum(ResponseType, response_type, "response_type"),
            quoted_price=price,
            message=str(message).strip() if message else None,
        )


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    rfq_id: str
    supplier_id: str
    expires_at: datetime | None = None
    reason: RaceErrorKind | None = None
    response_id: int | None = None

    @classmethod
    def awarded(cls, rfq_id: str, supplier_id: str) -> "Outcome":
        return cls(OutcomeKind.AWARDED, rfq_id, supplier_id)

    @classmethod
    def hold_granted(cls, rfq_id: str, supplier_id: str, expires_at: datetime) -> "Outcome":
        return cls(OutcomeKind.HOLD_GRANTED, rfq_id, supplier_id, expires_at=expires_at)

    @classmethod
    def recorded(cls, rfq_id: str, supplier_id: str) -> "Outcome":
        return cls(OutcomeKind.RECORDED, rfq_id, supplier_id)

    @classmethod
    def rejected(cls, rfq_id: str, supplier_id: str, reason: RaceErrorKind) -> "Outcome":
        return cls(OutcomeKind.REJECTED, rfq_id, supplier_id, reason=RaceErrorKind(reason))

    @property
    def label(self) -> str:
        if self.reason is not None:
            return f"{self.kind.value}:{self.reason.value}"
        return self.kind.value

    def with_response_id(self, response_id: int | None) -> "Outcome":
        return Outcome(self.kind, self.rfq_id, self.supplier_id, self.expires_at, self.reason, response_id)

    def message(self) -> str:
        if self.reason is not None:
            return error_message(self.reason.value)
        if self.kind is OutcomeKind.AWARDED:
            return success_message("rfq_awarded")
        if self.kind is OutcomeKind.HOLD_GRANTED:
            return success_message("hold_granted")
        return success_message("response_recorded")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.kind.value,
            "rfq_id": self.rfq_id,
            "supplier_id": self.supplier_id,
            "expires_at": to_iso(self.expires_at),
            "reason": self.reason.value if self.reason else None,
            "response_id": self.response_id,
            "message": self.message(),
        }
