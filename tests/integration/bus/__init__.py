"""Integration tests for the broker backends."""
