"""Serialization helpers for ticketflow."""

from ticketflow.serialization.json import TicketFlowJSONEncoder, json_dumps, json_loads

__all__ = [
    "TicketFlowJSONEncoder",
    "json_dumps",
    "json_loads",
]
