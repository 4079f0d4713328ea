"""
Integration tests for the trade monitor.

These tests run the full fetch -> filter -> dedup -> deliver pipeline
against local HTTP servers. No external network access is needed.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
