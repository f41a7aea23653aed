"""Unit tests for the credits service."""
