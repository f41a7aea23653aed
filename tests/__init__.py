"""Credits service tests."""
