"""
JSON serialization utilities for envelope payloads.

Payloads travel as UTF-8 JSON objects. This module converts the common
non-JSON types a reaction may put into a payload (UUID, datetime, Decimal,
Enum). Non-finite numbers are not JSON and are rejected in both directions.

Example:
    >>> from ticketflow.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> data = {"id": uuid4()}
    >>> json_str = json_dumps(data)
    >>> parsed = json_loads(json_str)
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class TicketFlowJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID, datetime, Decimal and Enum objects.

    - UUID objects: Converted to string representation
    - datetime objects: Converted to ISO 8601 format string
    - Decimal objects: Converted to their exact string form
    - Enum members: Converted to their value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def json_dumps(obj: Any) -> str:
    """
    Serialize object to a compact JSON string.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation

    Raises:
        TypeError: If obj holds a type the encoder cannot convert
        ValueError: If obj holds NaN or an infinity
    """
    return json.dumps(obj, cls=TicketFlowJSONEncoder, separators=(",", ":"), allow_nan=False)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON text to a Python object.

    ``NaN``, ``Infinity`` and ``-Infinity`` raise ValueError.

    Note: UUID and datetime strings are NOT converted back to their original
    types - that's the application's responsibility.
    """
    return json.loads(s, parse_constant=_reject_constant)


__all__ = [
    "TicketFlowJSONEncoder",
    "json_dumps",
    "json_loads",
]
