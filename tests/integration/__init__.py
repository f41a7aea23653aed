"""Integration tests against a real SQLite ledger database."""
