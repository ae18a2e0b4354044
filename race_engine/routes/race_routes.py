from __future__ import annotations

from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify, request

from race_engine.application.race_service import RaceService
from race_engine.clock import to_iso
from race_engine.db import get_db, get_read_db
from race_engine.domain.models import EligibleSupplier, Rfq
from race_engine.errors import ValidationError
from race_engine.messages import success_message
from race_engine.tenant import current_tenant_id, scoped_tenant_id


race_bp = Blueprint("races", __name__, url_prefix="/api/races")


def _service() -> RaceService:
    return current_app.extensions["race_service"]


def _tenant_id() -> str:
    return scoped_tenant_id(current_tenant_id())


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(details="request body must be a JSON object")
    return payload


def _parse_suppliers(raw: Any) -> List[EligibleSupplier]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(details="suppliers must be a list")
    suppliers = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError(details="each supplier must be an object")
        suppliers.append(EligibleSupplier.from_payload(item))
    return suppliers


def _rfq_payload(rfq: Rfq) -> Dict[str, Any]:
    return rfq.to_dict()


@race_bp.route("", methods=["POST"])
def create_race():
    payload = _json_payload()
    tenant_id = _tenant_id()
    rfq = Rfq.new(
        rfq_id=payload.get("id") or payload.get("rfq_id"),
        tenant_id=tenant_id,
        buyer_id=payload.get("buyer_id"),
        rfq_type=payload.get("rfq_type"),
        title=payload.get("title"),
        specifications=payload.get("specifications"),
        urgency=payload.get("urgency"),
        budget_min=payload.get("budget_min"),
        budget_max=payload.get("budget_max"),
        deadline=payload.get("deadline"),
        category=payload.get("category"),
    )
    result = _service().create_race(
        get_db(),
        tenant_id=tenant_id,
        rfq=rfq,
        suppliers=_parse_suppliers(payload.get("suppliers")),
    )
    body = {
        "rfq": _rfq_payload(result.rfq),
        "race_opens_at": to_iso(result.race_opens_at),
        "created": result.created,
        "broadcasts_added": result.broadcasts_added,
        "broadcasts": [broadcast.to_dict() for broadcast in result.broadcasts],
        "message": success_message("race_created"),
    }
    if result.plan is not None:
        body["schedule"] = [
            {
                "supplier_id": item.supplier_id,
                "scheduled_at": to_iso(item.scheduled_at),
                "local_time": item.local_time,
                "delay_seconds": item.delay_seconds,
            }
            for item in result.plan.schedules
        ]
    return jsonify(body), 201 if result.created else 200


@race_bp.route("/<rfq_id>/responses", methods=["POST"])
def submit_response(rfq_id: str):
    payload = _json_payload()
    outcome = _service().submit_response(
        get_db(),
        tenant_id=_tenant_id(),
        rfq_id=rfq_id,
        supplier_id=payload.get("supplier_id"),
        response_type=payload.get("response_type"),
        quoted_price=payload.get("quoted_price"),
        message=payload.get("message"),
    )
    return jsonify(outcome.to_dict()), 200


@race_bp.route("/<rfq_id>/hold/confirm", methods=["POST"])
def confirm_hold(rfq_id: str):
    payload = _json_payload()
    expected_holder = str(payload.get("expected_holder_id") or "").strip() or None
    rfq = _service().confirm_hold(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id, expected_holder_id=expected_holder)
    return jsonify({"rfq": _rfq_payload(rfq), "message": success_message("rfq_awarded")}), 200


@race_bp.route("/<rfq_id>/hold/release", methods=["POST"])
def release_hold(rfq_id: str):
    rfq = _service().release_hold(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify({"rfq": _rfq_payload(rfq), "message": success_message("hold_released")}), 200


@race_bp.route("/<rfq_id>/winner", methods=["POST"])
def select_winner(rfq_id: str):
    payload = _json_payload()
    rfq = _service().select_winner(
        get_db(),
        tenant_id=_tenant_id(),
        rfq_id=rfq_id,
        supplier_id=payload.get("supplier_id"),
    )
    return jsonify({"rfq": _rfq_payload(rfq), "message": success_message("rfq_awarded")}), 200


@race_bp.route("/<rfq_id>/cancel", methods=["POST"])
def cancel_race(rfq_id: str):
    rfq = _service().cancel(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify({"rfq": _rfq_payload(rfq), "message": success_message("rfq_cancelled")}), 200


@race_bp.route("/<rfq_id>/close", methods=["POST"])
def close_race(rfq_id: str):
    rfq = _service().close(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify({"rfq": _rfq_payload(rfq), "message": success_message("rfq_closed")}), 200


@race_bp.route("/<rfq_id>/status", methods=["GET"])
def race_status(rfq_id: str):
    status = _service().get_race_status(get_read_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify(status.to_dict()), 200


@race_bp.route("/<rfq_id>/events", methods=["GET"])
def race_events(rfq_id: str):
    events = _service().list_status_events(get_read_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify({"rfq_id": rfq_id, "items": events}), 200


@race_bp.route("/<rfq_id>/broadcasts", methods=["GET"])
def list_broadcasts(rfq_id: str):
    broadcasts = _service().list_broadcasts(get_read_db(), tenant_id=_tenant_id(), rfq_id=rfq_id)
    return jsonify({"rfq_id": rfq_id, "items": [broadcast.to_dict() for broadcast in broadcasts]}), 200


@race_bp.route("/<rfq_id>/broadcasts/<supplier_id>/delivered", methods=["POST"])
def mark_delivered(rfq_id: str, supplier_id: str):
    broadcast = _service().mark_delivered(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id, supplier_id=supplier_id)
    return jsonify({"broadcast": broadcast.to_dict(), "message": success_message("broadcast_delivered")}), 200


@race_bp.route("/<rfq_id>/broadcasts/<supplier_id>/viewed", methods=["POST"])
def mark_viewed(rfq_id: str, supplier_id: str):
    broadcast = _service().mark_viewed(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id, supplier_id=supplier_id)
    return jsonify({"broadcast": broadcast.to_dict(), "message": success_message("broadcast_viewed")}), 200
