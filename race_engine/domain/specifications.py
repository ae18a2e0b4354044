from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Union

from race_engine.errors import ValidationError


def _optional_float(value: Any, key: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(details=f"specifications.{key} must be numeric") from exc


def _optional_int(value: Any, key: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(details=f"specifications.{key} must be an integer") from exc


def _optional_str(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def _str_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(details=f"specifications.{key} must be a list")
    return [str(item) for item in value if str(item).strip()]


@dataclass(frozen=True)
class Dimensions:
    length: float | None = None
    width: float | None = None
    height: float | None = None
    unit: str | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "Dimensions | None":
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ValidationError(details="specifications.dimensions must be an object")
        return cls(
            length=_optional_float(raw.get("length"), "dimensions.length"),
            width=_optional_float(raw.get("width"), "dimensions.width"),
            height=_optional_float(raw.get("height"), "dimensions.height"),
            unit=_optional_str(raw.get("unit")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


@dataclass(frozen=True)
class CommoditySpecification:
    kind = "commodity"

    description: str | None = None
    quantity: float | None = None
    unit: str | None = None
    materials: List[str] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], extensions: Dict[str, Any]) -> "CommoditySpecification":
        return cls(
            description=_optional_str(raw.get("description")),
            quantity=_optional_float(raw.get("quantity"), "quantity"),
            unit=_optional_str(raw.get("unit")),
            materials=_str_list(raw.get("materials"), "materials"),
            extensions=extensions,
        )


@dataclass(frozen=True)
class CustomSpecification:
    kind = "custom"

    description: str | None = None
    quantity: float | None = None
    unit: str | None = None
    materials: List[str] = field(default_factory=list)
    dimensions: Dimensions | None = None
    attachments: List[str] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], extensions: Dict[str, Any]) -> "CustomSpecification":
        return cls(
            description=_optional_str(raw.get("description")),
            quantity=_optional_float(raw.get("quantity"), "quantity"),
            unit=_optional_str(raw.get("unit")),
            materials=_str_list(raw.get("materials"), "materials"),
            dimensions=Dimensions.from_payload(raw.get("dimensions")),
            attachments=_str_list(raw.get("attachments"), "attachments"),
            extensions=extensions,
        )


@dataclass(frozen=True)
class ServiceSpecification:
    kind = "service"

    description: str | None = None
    scope: str | None = None
    duration_days: int | None = None
    attachments: List[str] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], extensions: Dict[str, Any]) -> "ServiceSpecification":
        return cls(
            description=_optional_str(raw.get("description")),
            scope=_optional_str(raw.get("scope")),
            duration_days=_optional_int(raw.get("duration_days"), "duration_days"),
            attachments=_str_list(raw.get("attachments"), "attachments"),
            extensions=extensions,
        )


Specification = Union[CommoditySpecification, CustomSpecification, ServiceSpecification]

_SPECIFICATION_TYPES: Dict[str, type] = {
    "commodity": CommoditySpecification,
    "custom": CustomSpecification,
    "service": ServiceSpecification,
}


def _known_keys(spec_cls: type) -> set[str]:
    return {item.name for item in fields(spec_cls) if item.name != "extensions"}


def parse_specification(rfq_type: str, payload: Dict[str, Any] | str | None) -> Specification:
    spec_cls = _SPECIFICATION_TYPES.get(str(rfq_type or "").strip().lower())
    if spec_cls is None:
        raise ValidationError(details=f"unknown rfq_type for specifications: {rfq_type!r}")

    if isinstance(payload, str):
        try:
            payload = json.loads(payload) if payload.strip() else {}
        except json.JSONDecodeError as exc:
            raise ValidationError(details="specifications must be a JSON object") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(details="specifications must be a JSON object")
    raw = dict(payload)

    known = _known_keys(spec_cls)
    # "custom_fields" is the legacy name of the extension bag.
    extensions = dict(raw.pop("extensions", None) or raw.pop("custom_fields", None) or {})
    for key in list(raw):
        if key not in known:
            extensions[key] = raw.pop(key)
    return spec_cls.from_payload(raw, extensions)


def specification_to_payload(spec: Specification) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for item in fields(spec):
        value = getattr(spec, item.name)
        if item.name == "extensions":
            continue
        if isinstance(value, Dimensions):
            value = value.to_payload()
        if value is None or value == []:
            continue
        payload[item.name] = value
    if spec.extensions:
        payload["extensions"] = dict(spec.extensions)
    return payload
