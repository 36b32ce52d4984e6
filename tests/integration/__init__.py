"""
Integration tests for ticketflow.

The saga tests run every participant against the in-memory broker and always
run. The Kafka tests need Docker and testcontainers[kafka]; they are skipped
automatically when either is missing.

Run integration tests:
    pytest tests/integration/ -v

Run only Kafka tests:
    pytest tests/integration/ -v -m kafka

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
