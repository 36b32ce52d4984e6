"""Unit tests for the command line entry point."""

from unittest.mock import AsyncMock, patch

import pytest

from ticketflow.__main__ import _entity_id, build_parser, main
from ticketflow.exceptions import BrokerConnectionError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "TICKETFLOW_BACKEND",
        "TICKETFLOW_SHUTDOWN_TIMEOUT",
        "TICKETFLOW_MAX_HANDLER_RETRIES",
        "TICKETFLOW_ON_EXHAUSTED",
        "TICKETFLOW_IDEMPOTENCY_TTL",
        "TICKETFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestParser:
    def test_originator_arguments(self):
        args = build_parser().parse_args(["passenger", "--passenger-id", "7", "--name", "Bob"])

        assert args.role == "passenger"
        assert args.passenger_id == "7"
        assert args.name == "Bob"
        assert args.backend is None

    def test_external_is_not_a_process(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["external"])

    def test_on_exhausted_choices(self):
        args = build_parser().parse_args(["payment", "--on-exhausted", "dead_letter"])

        assert args.on_exhausted == "dead_letter"

    @pytest.mark.parametrize(("value", "expected"), [("101", 101), ("T-101", "T-101")])
    def test_entity_id(self, value, expected):
        assert _entity_id(value) == expected


class TestMain:
    def test_originator_on_memory_backend(self):
        assert main(["passenger", "--backend", "memory", "--log-level", "WARNING"]) == 0

    def test_stimulus_forwarded(self):
        with patch("ticketflow.__main__.run_service", new=AsyncMock()) as run:
            code = main(
                ["transport", "--backend", "memory", "--trip-id", "9", "--status", "ON_TIME"]
            )

        assert code == 0
        stimulus = run.await_args.kwargs["stimulus"]
        assert stimulus["trip_id"] == 9
        assert stimulus["status"] == "ON_TIME"

    def test_invalid_configuration(self, monkeypatch, capsys):
        monkeypatch.setenv("TICKETFLOW_ON_EXHAUSTED", "explode")

        assert main(["payment"]) == 2
        assert "ticketflow:" in capsys.readouterr().err

    def test_unreachable_broker(self):
        failure = BrokerConnectionError("kafka:9092", "connection refused")
        with patch("ticketflow.__main__.run_service", new=AsyncMock(side_effect=failure)):
            assert main(["admin", "--log-level", "ERROR"]) == 1

