"""
Unit tests for payload JSON serialization.

Tests for:
- UUID, datetime, Decimal and Enum encoding
- Compact output
- Rejection of non-finite numbers
- Round trip through json_loads
"""

import json
import math
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

import pytest

from ticketflow.serialization import TicketFlowJSONEncoder, json_dumps, json_loads


class Fare(Enum):
    STANDARD = "standard"
    REDUCED = 2


class TestTicketFlowJSONEncoder:
    def test_encode_uuid(self):
        value = UUID("12345678-1234-5678-1234-567812345678")

        assert json.dumps({"id": value}, cls=TicketFlowJSONEncoder) == (
            '{"id": "12345678-1234-5678-1234-567812345678"}'
        )

    def test_encode_datetime(self):
        value = datetime(2024, 1, 15, 10, 30, 45, tzinfo=UTC)

        assert "2024-01-15T10:30:45+00:00" in json.dumps({"at": value}, cls=TicketFlowJSONEncoder)

    def test_encode_decimal_as_exact_string(self):
        assert json_dumps({"amount": Decimal("20")}) == '{"amount":"20"}'
        assert json_dumps({"amount": Decimal("0.10")}) == '{"amount":"0.10"}'

    def test_encode_enum_as_value(self):
        assert json_dumps({"fare": Fare.STANDARD, "zone": Fare.REDUCED}) == (
            '{"fare":"standard","zone":2}'
        )

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            json_dumps({"value": {1, 2}})


class TestConvenienceFunctions:
    def test_json_dumps_is_compact(self):
        assert json_dumps({"ticketId": 1, "amount": 20}) == '{"ticketId":1,"amount":20}'

    @pytest.mark.parametrize("value", [math.inf, -math.inf, math.nan])
    def test_json_dumps_rejects_non_finite_numbers(self, value):
        with pytest.raises(ValueError):
            json_dumps({"ticketId": 1, "amount": value})

    def test_json_loads_accepts_bytes(self):
        assert json_loads(b'{"tripId": 101}') == {"tripId": 101}

    def test_json_loads_invalid(self):
        with pytest.raises(ValueError):
            json_loads("{not json")

    @pytest.mark.parametrize("text", ["Infinity", "-Infinity", "NaN"])
    def test_json_loads_rejects_non_finite_constants(self, text):
        with pytest.raises(ValueError):
            json_loads('{"ticketId": 1, "amount": ' + text + "}")
