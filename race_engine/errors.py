from __future__ import annotations

from enum import Enum
from typing import Any, Dict

from race_engine.messages import error_message


class RaceErrorKind(str, Enum):
    INVALID_STATE = "invalid_state"
    ALREADY_AWARDED = "already_awarded"
    HOLD_ACTIVE = "hold_active"
    DEADLINE_PASSED = "deadline_passed"
    NOT_YET_VISIBLE = "not_yet_visible"
    STORAGE_CONFLICT = "storage_conflict"
    RFQ_NOT_FOUND = "rfq_not_found"

    @property
    def retryable(self) -> bool:
        return self is RaceErrorKind.STORAGE_CONFLICT


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class RfqNotFoundError(UserActionError):
    default_code = "rfq_not_found"
    default_message_key = "rfq_not_found"
    default_http_status = 404
    default_critical = False


_KIND_HTTP_STATUS = {
    RaceErrorKind.DEADLINE_PASSED: 422,
    RaceErrorKind.NOT_YET_VISIBLE: 403,
    RaceErrorKind.RFQ_NOT_FOUND: 404,
}


class TransitionError(UserActionError):
    """A race transition that is not legal for the current RFQ snapshot.

    Never retried by callers: the same snapshot always yields the same error.
    """

    default_code = "invalid_state"
    default_message_key = "invalid_state"
    default_http_status = 409
    default_critical = False

    def __init__(
        self,
        kind: RaceErrorKind = RaceErrorKind.INVALID_STATE,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.kind = RaceErrorKind(kind)
        super().__init__(
            code=self.kind.value,
            message_key=self.kind.value,
            http_status=_KIND_HTTP_STATUS.get(self.kind, self.default_http_status),
            details=details,
            payload=payload,
        )


class StorageConflictError(AppError):
    """The conditional write lost against a concurrent writer of the same row."""

    default_code = "storage_conflict"
    default_message_key = "storage_conflict"
    default_http_status = 409
    default_critical = False

    def __init__(self, rfq_id: str, expected_version: int | None = None) -> None:
        self.rfq_id = rfq_id
        self.expected_version = expected_version
        self.kind = RaceErrorKind.STORAGE_CONFLICT
        super().__init__(
            details=f"conditional write lost for rfq {rfq_id} at version {expected_version}",
            payload={"rfq_id": rfq_id},
        )


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class SupplierNotAcceptedError(UserActionError):
    default_code = "supplier_not_accepted"
    default_message_key = "supplier_not_accepted"
    default_http_status = 409
    default_critical = False


class RfqIdConflictError(UserActionError):
    default_code = "rfq_id_conflict"
    default_message_key = "rfq_id_conflict"
    default_http_status = 409
    default_critical = False


class BroadcastNotFoundError(UserActionError):
    default_code = "broadcast_not_found"
    default_message_key = "broadcast_not_found"
    default_http_status = 404
    default_critical = False


class BroadcastNotDueError(UserActionError):
    default_code = "broadcast_not_due"
    default_message_key = "broadcast_not_due"
    default_http_status = 409
    default_critical = False
