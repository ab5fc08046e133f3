"""Shared helpers: logging, validation, notifications and error types."""
