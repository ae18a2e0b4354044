import unittest

from race_engine.domain.models import Rfq
from race_engine.domain.specifications import (
    CommoditySpecification,
    CustomSpecification,
    Dimensions,
    ServiceSpecification,
    parse_specification,
    specification_to_payload,
)
from race_engine.errors import ValidationError


class SpecificationParsingTest(unittest.TestCase):
    def test_commodity_fields_are_typed(self) -> None:
        spec = parse_specification("commodity", {"description": "bolts", "quantity": "250", "materials": "steel"})

        self.assertIsInstance(spec, CommoditySpecification)
        self.assertEqual(spec.quantity, 250.0)
        self.assertEqual(spec.materials, ["steel"])
        self.assertEqual(spec.extensions, {})

    def test_custom_dimensions_and_attachments(self) -> None:
        spec = parse_specification(
            "custom",
            {
                "description": "machined housing",
                "dimensions": {"length": 10, "width": "4.5", "unit": "cm"},
                "attachments": ["drawing.pdf"],
            },
        )

        self.assertIsInstance(spec, CustomSpecification)
        self.assertEqual(spec.dimensions, Dimensions(length=10.0, width=4.5, height=None, unit="cm"))
        self.assertEqual(spec.attachments, ["drawing.pdf"])

    def test_service_duration_is_integer(self) -> None:
        spec = parse_specification("service", {"scope": "HVAC maintenance", "duration_days": "30"})

        self.assertIsInstance(spec, ServiceSpecification)
        self.assertEqual(spec.duration_days, 30)
        with self.assertRaises(ValidationError):
            parse_specification("service", {"duration_days": "a month"})

    def test_unknown_keys_land_in_extensions(self) -> None:
        spec = parse_specification(
            "commodity",
            {"description": "bolts", "finish": "zinc", "extensions": {"grade": "8.8"}},
        )

        self.assertEqual(spec.extensions, {"grade": "8.8", "finish": "zinc"})
        payload = specification_to_payload(spec)
        self.assertEqual(payload["extensions"], {"grade": "8.8", "finish": "zinc"})
        self.assertNotIn("finish", payload)

    def test_legacy_custom_fields_bag_is_accepted(self) -> None:
        spec = parse_specification("custom", {"custom_fields": {"tolerance": "0.1mm"}})
        self.assertEqual(spec.extensions, {"tolerance": "0.1mm"})

    def test_json_text_payload_as_stored(self) -> None:
        spec = parse_specification("commodity", '{"description": "nuts", "quantity": 10}')
        self.assertEqual(spec.description, "nuts")
        self.assertIsInstance(parse_specification("commodity", ""), CommoditySpecification)

    def test_invalid_payloads(self) -> None:
        cases = [
            ("commodity", ["not", "an", "object"]),
            ("commodity", "{broken json"),
            ("commodity", {"quantity": "many"}),
            ("custom", {"dimensions": "10x4"}),
            ("auction", {}),
        ]
        for rfq_type, payload in cases:
            with self.subTest(rfq_type=rfq_type, payload=payload):
                with self.assertRaises(ValidationError):
                    parse_specification(rfq_type, payload)

    def test_rfq_round_trips_specification_through_storage_row(self) -> None:
        rfq = Rfq.new(
            rfq_id="rfq-spec",
            tenant_id="tenant-a",
            buyer_id="buyer-1",
            rfq_type="custom",
            title="Housing",
            specifications={"dimensions": {"height": 2}, "finish": "anodized"},
        )
        row = rfq.to_dict() | {
            "specifications": rfq.specifications_json,
            "rfq_type": "custom",
            "status": "Open",
            "urgency": "standard",
        }

        restored = Rfq.from_row(row)
        self.assertEqual(restored.specifications, rfq.specifications)


class RfqValidationTest(unittest.TestCase):
    def _new(self, **overrides):
        fields = {
            "rfq_id": "rfq-1",
            "tenant_id": "tenant-a",
            "buyer_id": "buyer-1",
            "rfq_type": "commodity",
            "title": "Bolts",
        }
        fields.update(overrides)
        return Rfq.new(**fields)

    def test_required_fields_and_enums(self) -> None:
        for overrides in (
            {"rfq_id": " "},
            {"buyer_id": ""},
            {"title": None},
            {"rfq_type": "auction"},
            {"urgency": "whenever"},
            {"budget_min": 10, "budget_max": 5},
            {"deadline": "next tuesday"},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    self._new(**overrides)

    def test_enum_values_are_case_insensitive(self) -> None:
        rfq = self._new(rfq_type="Commodity", urgency="URGENT")
        self.assertEqual(rfq.rfq_type.value, "commodity")
        self.assertEqual(rfq.urgency.value, "urgent")


if __name__ == "__main__":
    unittest.main()
