"""
Shared test helpers for the ticketflow tests.

Usage:
    from tests.fixtures import (
        BlockingHandler,
        FailingHandler,
        RecordingHandler,
        make_envelope,
        wait_until,
    )
"""

from tests.fixtures.envelopes import make_envelope, make_record
from tests.fixtures.handlers import (
    BlockingHandler,
    FailingHandler,
    RecordingHandler,
    wait_until,
)

__all__ = [
    "BlockingHandler",
    "FailingHandler",
    "RecordingHandler",
    "make_envelope",
    "make_record",
    "wait_until",
]
