"""Business services layered on the credit ledger."""
