import pytest

from errors import SchemaViolation
from schema import (
    ArraySchema,
    BooleanSchema,
    IntegerSchema,
    NumberSchema,
    StringSchema,
    date_string,
    object_schema,
)

INVOICE_ARGS = object_schema(
    {
        "status": StringSchema(enum=("DRAFT", "AUTHORISED")),
        "fromDate": date_string("Start date"),
        "limit": IntegerSchema(minimum=1, maximum=50, default=10),
        "detail": BooleanSchema(default=False),
        "lines": ArraySchema(items=object_schema({"amount": NumberSchema(minimum=0)}, required=("amount",))),
    },
)


def test_defaults_filled_and_none_treated_as_empty():
    assert INVOICE_ARGS.validate(None) == {"limit": 10, "detail": False}


def test_integral_float_coerced_to_int():
    assert INVOICE_ARGS.validate({"limit": 20.0})["limit"] == 20


@pytest.mark.parametrize(
    "args, where",
    [
        ({"status": "PAID"}, "status"),
        ({"fromDate": "2024-13-01"}, "fromDate"),
        ({"fromDate": "01/02/2024"}, "fromDate"),
        ({"limit": 0}, "limit"),
        ({"limit": 2.5}, "limit"),
        ({"detail": "yes"}, "detail"),
        ({"lines": [{"amount": -1}]}, "lines[0].amount"),
        ({"lines": [{}]}, "lines[0].amount"),
    ],
)
def test_violations_name_the_field(args, where):
    with pytest.raises(SchemaViolation) as excinfo:
        INVOICE_ARGS.validate(args)
    assert excinfo.value.path == where
    assert where in excinfo.value.message


def test_unexpected_property_rejected():
    with pytest.raises(SchemaViolation) as excinfo:
        INVOICE_ARGS.validate({"stauts": "DRAFT"})
    assert "stauts" in excinfo.value.message


def test_booleans_are_not_integers():
    with pytest.raises(SchemaViolation):
        IntegerSchema().validate(True)


def test_required_field():
    schema = object_schema({"invoiceId": StringSchema()}, required=("invoiceId",))
    with pytest.raises(SchemaViolation) as excinfo:
        schema.validate({})
    assert excinfo.value.message == "Invalid arguments: invoiceId is required"


def test_additional_properties_pass_through():
    schema = object_schema({"name": StringSchema()}, additional_properties=True)
    assert schema.validate({"name": "x", "anything": [1]}) == {"name": "x", "anything": [1]}


def test_to_json_shape():
    rendered = INVOICE_ARGS.to_json()
    assert rendered["type"] == "object"
    assert rendered["properties"]["status"] == {"type": "string", "enum": ["DRAFT", "AUTHORISED"]}
    assert rendered["properties"]["limit"] == {"type": "integer", "minimum": 1, "maximum": 50}
    assert rendered["properties"]["lines"]["items"]["required"] == ["amount"]
    assert "required" not in rendered


def test_explicit_null_counts_as_omitted():
    assert INVOICE_ARGS.validate({"status": None, "limit": None}) == {"limit": 10, "detail": False}


def test_closed_objects_advertise_no_additional_properties():
    assert INVOICE_ARGS.to_json()["additionalProperties"] is False
    open_schema = object_schema({"name": StringSchema()}, additional_properties=True)
    assert "additionalProperties" not in open_schema.to_json()
