from __future__ import annotations

from typing import Dict


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "unexpected_error": "The operation could not be completed.",
        "action_invalid": "This action is not allowed right now.",
        "validation_error": "The request payload is invalid.",
        "rfq_not_found": "RFQ not found.",
        "invalid_state": "The RFQ is not in a state that allows this action.",
        "already_awarded": "This opportunity is closed: the RFQ was already awarded.",
        "hold_active": "This opportunity is closed: another supplier holds priority on this RFQ.",
        "deadline_passed": "The response deadline for this RFQ has passed.",
        "not_yet_visible": "This RFQ is not visible to you yet.",
        "storage_conflict": "The RFQ changed while your request was processed. Please retry.",
        "supplier_not_accepted": "The selected supplier has no standing accept for this RFQ.",
        "broadcast_not_found": "No broadcast exists for this supplier on this RFQ.",
        "broadcast_not_due": "The broadcast is scheduled for a later instant.",
        "rfq_id_conflict": "An RFQ with this id already exists with different details.",
    },
    "success": {
        "race_created": "Race scheduled.",
        "response_recorded": "Response recorded.",
        "rfq_awarded": "RFQ awarded.",
        "hold_granted": "Priority hold granted.",
        "hold_released": "Priority hold released.",
        "rfq_cancelled": "RFQ cancelled.",
        "rfq_closed": "RFQ closed.",
        "broadcast_delivered": "Broadcast delivered.",
        "broadcast_viewed": "Broadcast viewed.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
