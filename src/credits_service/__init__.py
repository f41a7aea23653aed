"""Credits service: per-account credit ledger."""
